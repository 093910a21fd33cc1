"""Fetch the source snapshot of a release.

The release directory already holds its metadata file when the fetch
starts, so instead of ``git clone`` (which requires an empty target) the
fetcher initialises a repository in place and checks out a shallow fetch of
the requested ref. Fetching by ref also accepts a full commit sha.
"""

from __future__ import annotations

from rollout.core.result import Err, Ok, Result
from rollout.output.console import ConsoleProtocol
from rollout.platform.process import CommandRunner

from .errors import StageError
from .models import Release

_GIT_TIMEOUT_SECONDS = 30.0
_GIT_NETWORK_TIMEOUT_SECONDS = 15 * 60.0


class SourceFetcher:
    def __init__(self, *, runner: CommandRunner, repo_url: str, console: ConsoleProtocol) -> None:
        self._runner = runner
        self._repo_url = repo_url
        self._console = console

    def fetch(self, release: Release) -> Result[str | None, StageError]:
        """Check out release.source_ref into release.directory.

        Returns:
            Ok(commit sha, or None if it could not be resolved), or
            Err(StageError) if the source could not be fetched.
        """
        if not self._repo_url:
            return Err(
                StageError(
                    "no source repository configured",
                    hint="set repo_url under [source] in rollout.toml",
                )
            )

        directory = str(release.directory)
        steps: list[tuple[list[str], float]] = [
            (["git", "init", "-q", directory], _GIT_TIMEOUT_SECONDS),
            (
                ["git", "-C", directory, "remote", "add", "origin", self._repo_url],
                _GIT_TIMEOUT_SECONDS,
            ),
            (
                ["git", "-C", directory, "fetch", "--depth", "1", "origin", release.source_ref],
                _GIT_NETWORK_TIMEOUT_SECONDS,
            ),
            (["git", "-C", directory, "checkout", "-q", "FETCH_HEAD"], _GIT_TIMEOUT_SECONDS),
        ]

        self._console.info(f"fetching {release.source_ref} from {self._repo_url}")
        for cmd, timeout in steps:
            result = self._runner.run(cmd, timeout=timeout)
            if isinstance(result, Err):
                detail = result.error.detail or str(result.error)
                return Err(
                    StageError(
                        f"could not fetch {release.source_ref}: {detail}",
                        path=release.directory,
                        hint="check the ref exists and the host can reach the repository",
                    )
                )

        rev = self._runner.run(
            ["git", "-C", directory, "rev-parse", "HEAD"],
            timeout=_GIT_TIMEOUT_SECONDS,
        )
        if isinstance(rev, Err):
            self._console.warning(f"could not resolve commit for release {release.id}")
            return Ok(None)
        return Ok(rev.value.strip() or None)
