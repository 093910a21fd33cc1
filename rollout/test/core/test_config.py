"""Tests for rollout.core.config module."""

from __future__ import annotations

from pathlib import Path

import pytest

from rollout.core.config import (
    DEFAULT_SWAP_SIZE_BYTES,
    ConfigError,
    DeployConfig,
    HealthConfig,
    load_config,
    load_config_or_default,
)
from rollout.core.result import Err, Ok


class TestDefaults:
    def test_defaults_follow_original_script(self) -> None:
        config = DeployConfig()
        assert config.root == Path("/srv/rollout")
        assert config.source.branch == "main"
        assert config.health.port == 3000
        assert config.health.poll_interval == 2.0
        assert config.health.partial_timeout == 60.0
        assert config.health.full_timeout == 180.0
        assert config.health.request_timeout == 5.0
        assert config.services.build_timeout == 900.0
        assert config.services.log_tail == 200
        assert config.swap.min_memory_mb == 2000
        assert config.swap.size_bytes == DEFAULT_SWAP_SIZE_BYTES
        assert config.swap.path == "/swapfile"
        assert config.cleanup.prune_volumes is False

    def test_endpoint(self) -> None:
        assert HealthConfig().endpoint == "http://127.0.0.1:3000/"
        assert HealthConfig(path="healthz", port=8080).endpoint == "http://127.0.0.1:8080/healthz"

    def test_frozen(self) -> None:
        config = DeployConfig()
        with pytest.raises(AttributeError):
            config.root = Path("/tmp")  # type: ignore[misc]


class TestFromDict:
    def test_empty_uses_defaults(self) -> None:
        assert DeployConfig.from_dict({}) == DeployConfig()

    def test_values(self) -> None:
        config = DeployConfig.from_dict(
            {
                "root": "/opt/app",
                "source": {"repo_url": "https://example.com/app.git", "branch": "release"},
                "services": {"project_name": "shop", "app_services": ["web", "worker"]},
                "health": {"port": 8080, "path": "/health", "partial_timeout": 30},
                "swap": {"min_memory_mb": 4096},
                "cleanup": {"container_prefix": "shop", "prune_volumes": True},
            }
        )
        assert config.root == Path("/opt/app")
        assert config.source.repo_url == "https://example.com/app.git"
        assert config.source.branch == "release"
        assert config.services.project_name == "shop"
        assert config.services.app_services == ("web", "worker")
        assert config.health.port == 8080
        assert config.health.partial_timeout == 30.0
        assert config.swap.min_memory_mb == 4096
        assert config.cleanup.container_prefix == "shop"
        assert config.cleanup.prune_volumes is True
        assert config.cleanup.prune_networks is True

    def test_wrong_types_fall_back_to_defaults(self) -> None:
        config = DeployConfig.from_dict({"health": {"port": "8080", "poll_interval": True}})
        assert config.health.port == 3000
        assert config.health.poll_interval == 2.0

    def test_out_of_range_port_raises(self) -> None:
        with pytest.raises(ValueError, match="port"):
            DeployConfig.from_dict({"health": {"port": 70000}})

    def test_negative_timeout_raises(self) -> None:
        with pytest.raises(ValueError, match="full_timeout"):
            DeployConfig.from_dict({"health": {"full_timeout": -1}})

    def test_explicit_zero_memory_threshold_is_kept(self) -> None:
        config = DeployConfig.from_dict({"swap": {"min_memory_mb": 0}})
        assert config.swap.min_memory_mb == 0

    def test_negative_memory_threshold_raises(self) -> None:
        with pytest.raises(ValueError, match="min_memory_mb"):
            DeployConfig.from_dict({"swap": {"min_memory_mb": -1}})

    def test_zero_timeout_is_rejected_not_defaulted(self) -> None:
        with pytest.raises(ValueError, match="partial_timeout"):
            DeployConfig.from_dict({"health": {"partial_timeout": 0}})

    def test_zero_port_is_rejected_not_defaulted(self) -> None:
        with pytest.raises(ValueError, match="port"):
            DeployConfig.from_dict({"health": {"port": 0}})

    @pytest.mark.parametrize("tail", [0, -5])
    def test_log_tail_below_one_raises(self, tail: int) -> None:
        with pytest.raises(ValueError, match="log_tail"):
            DeployConfig.from_dict({"services": {"log_tail": tail}})


class TestLoadConfig:
    def test_load(self, tmp_path: Path) -> None:
        path = tmp_path / "rollout.toml"
        path.write_text('root = "/data"\n\n[health]\nport = 9000\n', encoding="utf-8")

        result = load_config(path)

        assert isinstance(result, Ok)
        assert result.value.root == Path("/data")
        assert result.value.health.port == 9000

    def test_missing_file(self, tmp_path: Path) -> None:
        result = load_config(tmp_path / "missing.toml")

        assert isinstance(result, Err)
        assert isinstance(result.error, ConfigError)
        assert "not found" in result.error.message

    def test_invalid_toml(self, tmp_path: Path) -> None:
        path = tmp_path / "rollout.toml"
        path.write_text("root = [unclosed\n", encoding="utf-8")

        result = load_config(path)

        assert isinstance(result, Err)
        assert "Invalid TOML" in result.error.message

    def test_invalid_value(self, tmp_path: Path) -> None:
        path = tmp_path / "rollout.toml"
        path.write_text("[health]\nport = 0\npoll_interval = -2\n", encoding="utf-8")

        result = load_config(path)

        assert isinstance(result, Err)
        assert result.error.message.startswith("Invalid config:")

    def test_or_default_when_missing(self, tmp_path: Path) -> None:
        result = load_config_or_default(tmp_path / "rollout.toml")
        assert result == Ok(DeployConfig())
