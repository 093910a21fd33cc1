"""Typed configuration loading and access.

The deploy configuration lives in an optional ``rollout.toml``. Every value
has a default taken from the long-standing shell deploy flow, so an empty
file (or no file at all) yields a usable config.

Example:
    root = "/srv/clinic"

    [source]
    repo_url = "https://github.com/example/clinic.git"
    branch = "main"

    [services]
    project_name = "clinic"
    app_services = ["app"]

    [health]
    port = 3000
    partial_timeout = 60
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .result import Err, Ok, Result
from .structured import (
    StrDict,
    as_str_dict,
    get_bool,
    get_float,
    get_int,
    get_str,
    get_str_list,
    get_table,
)

__all__ = [
    "CleanupConfig",
    "ConfigError",
    "DeployConfig",
    "HealthConfig",
    "ServiceConfig",
    "SourceConfig",
    "SwapConfig",
    "DEFAULT_CONFIG_NAME",
    "load_config",
    "load_config_or_default",
]

DEFAULT_CONFIG_NAME = "rollout.toml"

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------

DEFAULT_ROOT = "/srv/rollout"
DEFAULT_BRANCH = "main"
DEFAULT_SERVICE_PORT = 3000
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_PARTIAL_TIMEOUT_SECONDS = 60.0
DEFAULT_FULL_TIMEOUT_SECONDS = 180.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 5.0
DEFAULT_BUILD_TIMEOUT_SECONDS = 15 * 60.0
DEFAULT_SERVICE_TIMEOUT_SECONDS = 5 * 60.0
DEFAULT_LOG_TAIL = 200
DEFAULT_MIN_MEMORY_MB = 2000
DEFAULT_SWAP_SIZE_BYTES = 2 * 1024 * 1024 * 1024
DEFAULT_SWAP_PATH = "/swapfile"


@dataclass(frozen=True, slots=True)
class ConfigError:
    """Error when config cannot be loaded or parsed."""

    message: str
    path: Path | None = None


@dataclass(frozen=True, slots=True)
class SourceConfig:
    """Where releases are cloned from."""

    repo_url: str = ""
    branch: str = DEFAULT_BRANCH


@dataclass(frozen=True, slots=True)
class ServiceConfig:
    """Compose project layout and service command bounds.

    ``app_services`` are the services recreated on the partial-update path;
    everything else in the compose file (database, reverse proxy) is only
    touched by a full rebuild.
    """

    project_name: str = "app"
    compose_file: str = "docker-compose.yml"
    app_services: tuple[str, ...] = ("app",)
    build_timeout: float = DEFAULT_BUILD_TIMEOUT_SECONDS
    service_timeout: float = DEFAULT_SERVICE_TIMEOUT_SECONDS
    log_tail: int = DEFAULT_LOG_TAIL
    proxy_config: str = "nginx-ssl.conf"
    proxy_link: str | None = None


@dataclass(frozen=True, slots=True)
class HealthConfig:
    """Readiness endpoint and wait bounds (seconds)."""

    host: str = "127.0.0.1"
    port: int = DEFAULT_SERVICE_PORT
    path: str = "/"
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    partial_timeout: float = DEFAULT_PARTIAL_TIMEOUT_SECONDS
    full_timeout: float = DEFAULT_FULL_TIMEOUT_SECONDS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    @property
    def endpoint(self) -> str:
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"http://{self.host}:{self.port}{path}"


@dataclass(frozen=True, slots=True)
class SwapConfig:
    """Temporary swap for low-memory build hosts."""

    min_memory_mb: int = DEFAULT_MIN_MEMORY_MB
    size_bytes: int = DEFAULT_SWAP_SIZE_BYTES
    path: str = DEFAULT_SWAP_PATH


@dataclass(frozen=True, slots=True)
class CleanupConfig:
    """Pre-deploy cleanup of deployments the release store does not manage."""

    legacy_dirs: tuple[str, ...] = ()
    container_prefix: str | None = None
    image_pattern: str | None = None
    prune_networks: bool = True
    prune_volumes: bool = False


@dataclass(frozen=True, slots=True)
class DeployConfig:
    """Main configuration container."""

    root: Path = Path(DEFAULT_ROOT)
    source: SourceConfig = field(default_factory=SourceConfig)
    services: ServiceConfig = field(default_factory=ServiceConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    swap: SwapConfig = field(default_factory=SwapConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> DeployConfig:
        """Create DeployConfig from a mapping (parsed TOML).

        Raises:
            ValueError: If a value is present but out of range.
        """
        source: StrDict = get_table(data, "source") or {}
        services: StrDict = get_table(data, "services") or {}
        health: StrDict = get_table(data, "health") or {}
        swap: StrDict = get_table(data, "swap") or {}
        cleanup: StrDict = get_table(data, "cleanup") or {}

        defaults = ServiceConfig()
        config = cls(
            root=Path(get_str(data, "root") or DEFAULT_ROOT).expanduser(),
            source=SourceConfig(
                repo_url=get_str(source, "repo_url") or "",
                branch=get_str(source, "branch") or DEFAULT_BRANCH,
            ),
            services=ServiceConfig(
                project_name=get_str(services, "project_name") or defaults.project_name,
                compose_file=get_str(services, "compose_file") or defaults.compose_file,
                app_services=get_str_list(services, "app_services") or defaults.app_services,
                build_timeout=_or_default(
                    get_float(services, "build_timeout"), DEFAULT_BUILD_TIMEOUT_SECONDS
                ),
                service_timeout=_or_default(
                    get_float(services, "service_timeout"), DEFAULT_SERVICE_TIMEOUT_SECONDS
                ),
                log_tail=_or_default(get_int(services, "log_tail"), DEFAULT_LOG_TAIL),
                proxy_config=get_str(services, "proxy_config") or defaults.proxy_config,
                proxy_link=get_str(services, "proxy_link"),
            ),
            health=HealthConfig(
                host=get_str(health, "host") or "127.0.0.1",
                port=_or_default(get_int(health, "port"), DEFAULT_SERVICE_PORT),
                path=get_str(health, "path") or "/",
                poll_interval=_or_default(
                    get_float(health, "poll_interval"), DEFAULT_POLL_INTERVAL_SECONDS
                ),
                partial_timeout=_or_default(
                    get_float(health, "partial_timeout"), DEFAULT_PARTIAL_TIMEOUT_SECONDS
                ),
                full_timeout=_or_default(
                    get_float(health, "full_timeout"), DEFAULT_FULL_TIMEOUT_SECONDS
                ),
                request_timeout=_or_default(
                    get_float(health, "request_timeout"), DEFAULT_REQUEST_TIMEOUT_SECONDS
                ),
            ),
            swap=SwapConfig(
                min_memory_mb=_or_default(get_int(swap, "min_memory_mb"), DEFAULT_MIN_MEMORY_MB),
                size_bytes=_or_default(get_int(swap, "size_bytes"), DEFAULT_SWAP_SIZE_BYTES),
                path=get_str(swap, "path") or DEFAULT_SWAP_PATH,
            ),
            cleanup=CleanupConfig(
                legacy_dirs=get_str_list(cleanup, "legacy_dirs") or (),
                container_prefix=get_str(cleanup, "container_prefix"),
                image_pattern=get_str(cleanup, "image_pattern"),
                prune_networks=_or_default(get_bool(cleanup, "prune_networks"), True),
                prune_volumes=_or_default(get_bool(cleanup, "prune_volumes"), False),
            ),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ValueError: On the first invalid value.
        """
        if not 0 < self.health.port < 65536:
            raise ValueError(f"health.port out of range: {self.health.port}")
        for name in ("poll_interval", "partial_timeout", "full_timeout", "request_timeout"):
            if getattr(self.health, name) <= 0:
                raise ValueError(f"health.{name} must be positive")
        if self.services.build_timeout <= 0 or self.services.service_timeout <= 0:
            raise ValueError("service timeouts must be positive")
        if self.services.log_tail < 1:
            raise ValueError(f"services.log_tail must be at least 1: {self.services.log_tail}")
        if not self.services.app_services:
            raise ValueError("services.app_services must name at least one service")
        if self.swap.min_memory_mb < 0:
            raise ValueError(f"swap.min_memory_mb must not be negative: {self.swap.min_memory_mb}")
        if self.swap.size_bytes < 1024 * 1024:
            raise ValueError("swap.size_bytes must be at least 1 MiB")


def _or_default[T](value: T | None, default: T) -> T:
    """Fall back only when the key is absent; explicit zeros are kept."""
    return default if value is None else value


def _parse_toml(path: Path) -> Result[StrDict, ConfigError]:
    """Parse a TOML file, handling import and parse errors."""
    import tomllib

    try:
        content = path.read_bytes()
        data_obj: object = tomllib.loads(content.decode("utf-8"))
        data = as_str_dict(data_obj)
        if data is None:
            return Err(ConfigError("Config root must be a TOML table", path=path))
        return Ok(data)
    except FileNotFoundError:
        return Err(ConfigError(f"Config file not found: {path}", path=path))
    except PermissionError:
        return Err(ConfigError(f"Permission denied reading: {path}", path=path))
    except tomllib.TOMLDecodeError as e:
        return Err(ConfigError(f"Invalid TOML syntax: {e}", path=path))
    except UnicodeDecodeError as e:
        return Err(ConfigError(f"Error reading config: {e}", path=path))


def load_config(path: Path) -> Result[DeployConfig, ConfigError]:
    """Load and parse configuration from a TOML file.

    Args:
        path: Path to rollout.toml

    Returns:
        Ok(DeployConfig) on success, Err(ConfigError) on failure
    """
    result = _parse_toml(path)
    if isinstance(result, Err):
        return result

    try:
        config = DeployConfig.from_dict(result.value)
        return Ok(config)
    except (KeyError, TypeError, ValueError) as e:
        return Err(ConfigError(f"Invalid config: {e}", path=path))


def load_config_or_default(path: Path) -> Result[DeployConfig, ConfigError]:
    """Load config from file, or return the default config if it doesn't exist.

    A file that exists but cannot be parsed is still an error: deploying with
    silently ignored settings is worse than refusing to deploy.
    """
    if not path.exists():
        return Ok(DeployConfig())
    return load_config(path)
