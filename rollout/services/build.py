"""Release image builds with a cached-then-clean retry policy.

The first attempt reuses the docker layer cache, which is what makes the
partial-update path fast. A failure there is frequently a poisoned cache or
a stale base image, so the second attempt purges the builder cache and
rebuilds with ``--no-cache --pull``. There is never a third attempt.
"""

from __future__ import annotations

from dataclasses import dataclass

from rollout.core.config import DEFAULT_BUILD_TIMEOUT_SECONDS
from rollout.core.result import Err, Ok, Result
from rollout.output.console import ConsoleProtocol, Style
from rollout.platform.process import CommandRunner

from .compose import BUILD_ENV, Compose
from .errors import BuildError
from .models import Artifact, BuildAttempt, CacheMode, Release

MAX_BUILD_ATTEMPTS = 2


@dataclass(frozen=True, slots=True)
class BuildPolicy:
    """How many attempts to make and how long each may run.

    ``max_attempts`` is clamped to 1..2: attempt 1 is cached, attempt 2 is clean.
    """

    max_attempts: int = MAX_BUILD_ATTEMPTS
    purge_between_attempts: bool = True
    timeout: float = DEFAULT_BUILD_TIMEOUT_SECONDS

    @property
    def attempts(self) -> int:
        return max(1, min(self.max_attempts, MAX_BUILD_ATTEMPTS))


class BuildPipeline:
    """Builds the application services of a staged release."""

    def __init__(
        self,
        *,
        runner: CommandRunner,
        compose: Compose,
        services: tuple[str, ...],
        console: ConsoleProtocol,
    ) -> None:
        self._runner = runner
        self._compose = compose
        self._services = services
        self._console = console

    def build(self, release: Release, policy: BuildPolicy) -> Result[Artifact, BuildError]:
        """Build release images.

        Returns:
            Ok(Artifact) from the first successful attempt, or Err(BuildError)
            listing every attempt once all of them failed.
        """
        attempts: list[BuildAttempt] = []

        for number in range(1, policy.attempts + 1):
            mode = CacheMode.CACHED if number == 1 else CacheMode.NO_CACHE
            if number > 1 and policy.purge_between_attempts:
                self._purge_cache()

            self._console.info(f"build attempt {number}/{policy.attempts} ({mode})")
            attempt = self._attempt(release, number, mode, policy.timeout)
            attempts.append(attempt)
            if attempt.exit_status == 0:
                return Ok(
                    Artifact(
                        release_id=release.id,
                        services=self._services,
                        attempt=attempt,
                    )
                )

        return Err(
            BuildError(
                message=f"build failed after {len(attempts)} attempt(s) for release {release.id}",
                attempts=tuple(attempts),
            )
        )

    def _attempt(
        self, release: Release, number: int, mode: CacheMode, timeout: float
    ) -> BuildAttempt:
        clean = mode == CacheMode.NO_CACHE
        cmd = self._compose.build(
            release.directory,
            self._services,
            no_cache=clean,
            pull=clean,
        )
        result = self._runner.run(cmd, cwd=release.directory, env=BUILD_ENV, timeout=timeout)
        if isinstance(result, Err):
            self._console.warning(f"build attempt {number} failed: {result.error}")
            if result.error.detail:
                self._console.print(result.error.detail, Style.DIM)
            return BuildAttempt(number, mode, result.error.returncode)
        return BuildAttempt(number, mode, 0)

    def _purge_cache(self) -> None:
        self._console.info("purging docker builder cache before clean rebuild")
        result = self._runner.run(self._compose.builder_prune(), timeout=10 * 60.0)
        if isinstance(result, Err):
            self._console.warning(f"builder prune failed: {result.error}")
