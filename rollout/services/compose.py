"""docker compose command lines.

All commands pin the compose project name with ``-p`` so that the compose
file of any release directory addresses the same containers: recreating
``app`` from a new release replaces the container started from the old one.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

__all__ = ["BUILD_ENV", "Compose"]

BUILD_ENV: dict[str, str] = {
    "DOCKER_BUILDKIT": "1",
    "COMPOSE_DOCKER_CLI_BUILD": "1",
}


@dataclass(frozen=True, slots=True)
class Compose:
    project: str
    compose_file: str = "docker-compose.yml"
    docker: str = "docker"

    def file_in(self, directory: Path) -> Path:
        return directory / self.compose_file

    def base(self, directory: Path) -> list[str]:
        return [
            self.docker,
            "compose",
            "-p",
            self.project,
            "-f",
            str(self.file_in(directory)),
        ]

    def build(
        self,
        directory: Path,
        services: Sequence[str] = (),
        *,
        no_cache: bool = False,
        pull: bool = False,
    ) -> list[str]:
        cmd = [*self.base(directory), "build"]
        if no_cache:
            cmd.append("--no-cache")
        if pull:
            cmd.append("--pull")
        return [*cmd, *services]

    def up(
        self,
        directory: Path,
        services: Sequence[str] = (),
        *,
        no_deps: bool = False,
        force_recreate: bool = False,
        renew_anon_volumes: bool = False,
    ) -> list[str]:
        cmd = [*self.base(directory), "up", "-d"]
        if no_deps:
            cmd.append("--no-deps")
        if force_recreate:
            cmd.append("--force-recreate")
        if renew_anon_volumes:
            cmd.append("--renew-anon-volumes")
        return [*cmd, *services]

    def down(self, directory: Path, *, remove_images: bool = False) -> list[str]:
        cmd = [*self.base(directory), "down", "--remove-orphans"]
        if remove_images:
            cmd.extend(["--rmi", "all"])
        return cmd

    def logs(self, directory: Path, tail: int) -> list[str]:
        return [*self.base(directory), "logs", "--no-color", "--tail", str(tail)]

    def builder_prune(self) -> list[str]:
        return [self.docker, "builder", "prune", "-af"]
