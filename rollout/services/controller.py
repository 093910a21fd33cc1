"""Start, recreate and stop the compose services of a release.

Two update paths exist. The partial path recreates only the application
services and leaves the database and reverse proxy running; it is the
low-downtime path and always tried first. The full path tears the whole
project down, drops its images and rebuilds from scratch; it is the
fallback when the partial path fails or never turns healthy.
"""

from __future__ import annotations

from collections.abc import Sequence

from rollout.core.result import Err, Ok, Result
from rollout.output.console import ConsoleProtocol
from rollout.platform.process import CommandRunner

from .compose import BUILD_ENV, Compose
from .errors import ControllerError
from .models import Release


class ServiceController:
    def __init__(
        self,
        *,
        runner: CommandRunner,
        compose: Compose,
        app_services: tuple[str, ...],
        console: ConsoleProtocol,
        service_timeout: float,
        build_timeout: float,
    ) -> None:
        self._runner = runner
        self._compose = compose
        self._app_services = app_services
        self._console = console
        self._service_timeout = service_timeout
        self._build_timeout = build_timeout

    def update_partial(self, release: Release) -> Result[None, ControllerError]:
        """Recreate only the application services from release."""
        cmd = self._compose.up(
            release.directory,
            self._app_services,
            no_deps=True,
            force_recreate=True,
        )
        return self._run("partial update", cmd, release)

    def update_full(self, release: Release) -> Result[None, ControllerError]:
        """Stop everything, drop images, rebuild clean and start all services."""
        steps: list[tuple[str, list[str], float]] = [
            (
                "stop all services",
                self._compose.down(release.directory, remove_images=True),
                self._service_timeout,
            ),
            (
                "clean rebuild",
                self._compose.build(release.directory, no_cache=True, pull=True),
                self._build_timeout,
            ),
            (
                "start all services",
                self._compose.up(
                    release.directory,
                    force_recreate=True,
                    renew_anon_volumes=True,
                ),
                self._service_timeout,
            ),
        ]

        for action, cmd, timeout in steps:
            self._console.info(f"full rebuild: {action}")
            result = self._run(action, cmd, release, timeout=timeout)
            if isinstance(result, Err):
                return result
            if action == "stop all services":
                self._prune_builder_cache()
        return Ok(None)

    def rollback(self, previous: Release) -> Result[None, ControllerError]:
        """Bring the previous release's service definition back up.

        Images may have been removed by a full rebuild, so they are rebuilt
        (cached) before starting.
        """
        build = self._run(
            "rollback build",
            self._compose.build(previous.directory),
            previous,
            timeout=self._build_timeout,
        )
        if isinstance(build, Err):
            return build
        return self._run(
            "rollback start",
            self._compose.up(previous.directory, force_recreate=True),
            previous,
        )

    def stop(self, release: Release) -> Result[None, ControllerError]:
        return self._run("stop", self._compose.down(release.directory), release)

    def collect_logs(self, release: Release, tail: int) -> list[str]:
        """Last service log lines for diagnostics. Never fails."""
        if tail < 1:
            return []
        result = self._runner.run(
            self._compose.logs(release.directory, tail),
            cwd=release.directory if release.directory.is_dir() else None,
            timeout=self._service_timeout,
        )
        if isinstance(result, Err):
            return [f"(could not collect logs: {result.error})"]
        return result.value.splitlines()[-tail:]

    def _run(
        self,
        action: str,
        cmd: Sequence[str],
        release: Release,
        *,
        timeout: float | None = None,
    ) -> Result[None, ControllerError]:
        cwd = release.directory if release.directory.is_dir() else None
        result = self._runner.run(
            cmd,
            cwd=cwd,
            env=BUILD_ENV,
            timeout=timeout if timeout is not None else self._service_timeout,
        )
        if isinstance(result, Err):
            detail = result.error.detail
            message = f"{action} failed for release {release.id}: {result.error}"
            if detail:
                message = f"{message}: {detail}"
            return Err(
                ControllerError(
                    action=action,
                    message=message,
                    returncode=result.error.returncode,
                )
            )
        return Ok(None)

    def _prune_builder_cache(self) -> None:
        result = self._runner.run(self._compose.builder_prune(), timeout=self._service_timeout)
        if isinstance(result, Err):
            self._console.warning(f"builder prune failed: {result.error}")
