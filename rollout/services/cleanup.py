"""Pre-deploy cleanup of deployments the release store does not manage.

Hosts that were deployed by hand (or by older scripts) can carry containers
and images that no compose file describes any more. They hold ports and
disk, and a deploy that ignores them fails in confusing ways. Everything
here is best effort: a failure is reported and the deploy continues.

Containers of the managed compose project are never touched, even when the
release directory they were created from has since been deleted.
"""

from __future__ import annotations

import re
from pathlib import Path

from rollout.core.config import CleanupConfig
from rollout.core.result import Err
from rollout.output.console import ConsoleProtocol, Style
from rollout.platform.process import CommandRunner

from .models import Release

COMPOSE_FILE_NAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")

_PROJECT_LABEL = "com.docker.compose.project"
_WORKDIR_LABEL = "com.docker.compose.project.working_dir"


def find_compose_file(directory: Path) -> Path | None:
    for name in COMPOSE_FILE_NAMES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


class CleanupService:
    def __init__(
        self,
        *,
        runner: CommandRunner,
        project: str,
        config: CleanupConfig,
        console: ConsoleProtocol,
        timeout: float,
    ) -> None:
        self._runner = runner
        self._project = project
        self._config = config
        self._console = console
        self._timeout = timeout

    def run(self, active: Release | None) -> list[str]:
        """Remove orphaned deployment artifacts.

        Returns:
            One line per action that succeeded, for the deploy report.
        """
        done: list[str] = []
        done.extend(self._down_legacy_dirs(active))
        if self._config.container_prefix:
            done.extend(self._remove_orphan_containers(self._config.container_prefix))
        if self._config.image_pattern:
            done.extend(self._remove_images(self._config.image_pattern))
        if self._config.prune_networks:
            done.extend(self._docker("network prune", ["docker", "network", "prune", "-f"]))
        if self._config.prune_volumes:
            done.extend(self._docker("volume prune", ["docker", "volume", "prune", "-f"]))
        return done

    def _down_legacy_dirs(self, active: Release | None) -> list[str]:
        done: list[str] = []
        active_dir = active.directory.resolve() if active else None
        for raw in self._config.legacy_dirs:
            directory = Path(raw).expanduser()
            if active_dir is not None and directory.resolve() == active_dir:
                continue
            compose_file = find_compose_file(directory)
            if compose_file is None:
                continue
            self._console.info(f"found {compose_file}; taking the legacy deployment down")
            done.extend(
                self._docker(
                    f"compose down in {directory}",
                    ["docker", "compose", "-f", str(compose_file), "down", "--remove-orphans"],
                    cwd=directory,
                )
            )
        return done

    def _remove_orphan_containers(self, prefix: str) -> list[str]:
        listing = self._runner.run(
            [
                "docker",
                "ps",
                "-a",
                "--filter",
                f"name={prefix}",
                "--format",
                f'{{{{.ID}}}}\t{{{{.Label "{_PROJECT_LABEL}"}}}}\t{{{{.Label "{_WORKDIR_LABEL}"}}}}',
            ],
            timeout=self._timeout,
        )
        if isinstance(listing, Err):
            self._console.warning(f"could not list containers: {listing.error}")
            return []

        orphans: list[str] = []
        for line in listing.value.splitlines():
            fields = line.split("\t")
            if not fields or not fields[0].strip():
                continue
            container_id = fields[0].strip()
            project = fields[1].strip() if len(fields) > 1 else ""
            workdir = fields[2].strip() if len(fields) > 2 else ""
            if project == self._project:
                continue
            if workdir and find_compose_file(Path(workdir)) is not None:
                continue
            orphans.append(container_id)

        if not orphans:
            self._console.print(f"no orphaned containers matching '{prefix}'", Style.DIM)
            return []
        return self._docker(
            f"removed containers {' '.join(orphans)}",
            ["docker", "rm", "-f", *orphans],
        )

    def _remove_images(self, pattern: str) -> list[str]:
        listing = self._runner.run(
            ["docker", "images", "--format", "{{.Repository}}:{{.Tag}}\t{{.ID}}"],
            timeout=self._timeout,
        )
        if isinstance(listing, Err):
            self._console.warning(f"could not list images: {listing.error}")
            return []

        try:
            matcher = re.compile(pattern)
        except re.error as e:
            self._console.warning(f"invalid cleanup.image_pattern {pattern!r}: {e}")
            return []

        done: list[str] = []
        seen: set[str] = set()
        for line in listing.value.splitlines():
            name, _, image_id = line.partition("\t")
            image_id = image_id.strip()
            if not image_id or image_id in seen or not matcher.search(name):
                continue
            seen.add(image_id)
            # Without -f docker refuses images that a container still uses.
            result = self._runner.run(["docker", "rmi", image_id], timeout=self._timeout)
            if isinstance(result, Err):
                self._console.print(f"kept image {name} ({image_id}): in use", Style.DIM)
                continue
            done.append(f"removed image {name}")
        return done

    def _docker(self, action: str, cmd: list[str], *, cwd: Path | None = None) -> list[str]:
        result = self._runner.run(cmd, cwd=cwd, timeout=self._timeout)
        if isinstance(result, Err):
            self._console.warning(f"{action} failed: {result.error}")
            return []
        return [action]
