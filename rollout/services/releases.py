"""Release directories and the active pointer.

Layout under the release root::

    <root>/
        releases/
            20260101120000/       one directory per release
                .rollout-release.json
                docker-compose.yml
                ...
        current -> releases/20260101120000
        .rollout.lock
        .rollout-serving          only after a failed pointer swap

``current`` is the active pointer. It is only ever replaced with
``os.replace`` over a freshly created symlink, so anything resolving it sees
either the previous release or the new one. The previous release directory
is deleted only after the pointer swap succeeded; if the process dies in
between, the leftover directory is an orphan that ``sweep`` removes later.

If the pointer swap itself fails after the new services were started, the
new release is serving while ``current`` still names the old one.
``.rollout-serving`` then records the serving release so that ``sweep``
keeps it and the next deploy rolls back to it.
"""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path

from rollout.core.result import Err, Ok, Result
from rollout.core.structured import as_str_dict
from rollout.output.console import ConsoleProtocol
from rollout.platform.files import atomic_symlink, atomic_write_text, remove_tree

from .errors import LockHeld, PromotionError, StageError
from .models import RELEASE_ID_FORMAT, Release, ReleaseStatus

__all__ = [
    "DeployLock",
    "ReleaseStore",
    "RELEASES_DIR",
    "POINTER_NAME",
    "METADATA_NAME",
    "LOCK_NAME",
    "SERVING_NAME",
]

RELEASES_DIR = "releases"
POINTER_NAME = "current"
METADATA_NAME = ".rollout-release.json"
LOCK_NAME = ".rollout.lock"
SERVING_NAME = ".rollout-serving"


class DeployLock:
    """Exclusive lock file for one deploy run."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        self.path.unlink(missing_ok=True)

    def __enter__(self) -> DeployLock:
        return self

    def __exit__(self, *_: object) -> None:
        self.release()


class ReleaseStore:
    """Owns the release root: staging, promotion, discard and sweep."""

    def __init__(
        self,
        root: Path,
        *,
        console: ConsoleProtocol,
        proxy_config: str | None = None,
        proxy_link: Path | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._root = root
        self._console = console
        self._proxy_config = proxy_config
        self._proxy_link = proxy_link
        self._clock = clock

    @property
    def root(self) -> Path:
        return self._root

    @property
    def releases_dir(self) -> Path:
        return self._root / RELEASES_DIR

    @property
    def pointer_path(self) -> Path:
        return self._root / POINTER_NAME

    @property
    def lock_path(self) -> Path:
        return self._root / LOCK_NAME

    @property
    def serving_path(self) -> Path:
        return self._root / SERVING_NAME

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    def lock(self) -> Result[DeployLock, LockHeld | StageError]:
        """Take the deploy lock, reclaiming it if its holder process is gone."""
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return Err(StageError(f"cannot create release root: {e}", path=self._root))

        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self._lock_holder()
                if holder is not None and _pid_alive(holder):
                    return Err(LockHeld(path=self.lock_path, holder=f"pid {holder}"))
                self._console.warning(f"removing stale deploy lock {self.lock_path}")
                self.lock_path.unlink(missing_ok=True)
                continue
            except OSError as e:
                return Err(StageError(f"cannot create lock file: {e}", path=self.lock_path))

            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(f"{os.getpid()}\n")
            return Ok(DeployLock(self.lock_path))

        return Err(LockHeld(path=self.lock_path, holder="unknown"))

    def _lock_holder(self) -> int | None:
        try:
            text = self.lock_path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return int(text) if text.isdigit() else None

    # -------------------------------------------------------------------------
    # Release lifecycle
    # -------------------------------------------------------------------------

    def stage(self, source_ref: str) -> Result[Release, StageError]:
        """Create a new, empty release directory."""
        try:
            self.releases_dir.mkdir(parents=True, exist_ok=True)
            release_id = self._next_id()
            directory = self.releases_dir / release_id
            directory.mkdir()
        except OSError as e:
            return Err(
                StageError(
                    f"cannot create release directory under {self.releases_dir}: {e}",
                    path=self.releases_dir,
                    hint="check that the release root exists and is writable",
                )
            )

        release = Release(
            id=release_id,
            source_ref=source_ref,
            status=ReleaseStatus.STAGED,
            directory=directory,
            created_at=self._clock().isoformat(timespec="seconds"),
        )
        self._write_metadata(release)
        return Ok(release)

    def mark(self, release: Release, status: ReleaseStatus) -> Release:
        updated = release.with_status(status)
        self._write_metadata(updated)
        return updated

    def record_commit(self, release: Release, commit: str) -> Release:
        updated = replace(release, commit=commit)
        self._write_metadata(updated)
        return updated

    def promote(self, release: Release) -> Result[Release, PromotionError]:
        """Point ``current`` at release, then delete the previous release.

        Returns:
            Ok(promoted release), or Err(PromotionError). With stage
            ``cleanup`` the pointer was already updated and the release is
            serving; with stage ``pointer`` ``current`` is unchanged and
            release is recorded as the serving release instead.
        """
        outgoing = self._outgoing(release)
        promoted = release.with_status(ReleaseStatus.PROMOTED)
        self._write_metadata(promoted)

        try:
            atomic_symlink(self.pointer_path, Path(RELEASES_DIR) / release.id)
        except OSError as e:
            self._write_metadata(release)
            self._mark_serving(release)
            return Err(
                PromotionError(
                    stage="pointer",
                    message=f"cannot update active pointer: {e}",
                    path=self.pointer_path,
                )
            )

        self._clear_serving()
        self._link_proxy_config(release)

        failure: PromotionError | None = None
        for previous in outgoing:
            try:
                remove_tree(previous.directory)
            except OSError as e:
                failure = failure or PromotionError(
                    stage="cleanup",
                    message=f"cannot delete previous release {previous.id}: {e}",
                    path=previous.directory,
                )
        if failure is not None:
            return Err(failure)
        return Ok(promoted)

    def discard(self, release: Release) -> Release:
        """Delete the release directory. Already-absent is not an error."""
        try:
            remove_tree(release.directory)
        except OSError as e:
            self._console.warning(
                f"could not delete release {release.id} ({e}); it will be swept on the next run"
            )
            return release.with_status(ReleaseStatus.FAILED)
        return release.with_status(ReleaseStatus.DISCARDED)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def active(self) -> Release | None:
        """The release ``current`` points to, if any."""
        if not self.pointer_path.is_symlink():
            return None
        target = self.pointer_path.resolve()
        if not target.is_dir():
            return None
        if (self.releases_dir / target.name).is_dir():
            target = self.releases_dir / target.name
        return self._read(target) or Release(
            id=target.name,
            source_ref="unknown",
            status=ReleaseStatus.PROMOTED,
            directory=target,
            created_at="",
        )

    def serving(self) -> Release | None:
        """The release whose services are running.

        This is the active release, unless the last promotion started its
        services but could not move ``current``.
        """
        try:
            release_id = self.serving_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return self.active()
        except OSError as e:
            self._console.warning(f"cannot read {self.serving_path}: {e}")
            return self.active()
        directory = self.releases_dir / release_id
        if not release_id or not directory.is_dir():
            return self.active()
        return self._read(directory) or Release(
            id=release_id,
            source_ref="unknown",
            status=ReleaseStatus.HEALTHY,
            directory=directory,
            created_at="",
        )

    def list_releases(self) -> list[Release]:
        """All release directories, oldest first."""
        if not self.releases_dir.is_dir():
            return []
        releases: list[Release] = []
        for directory in sorted(self.releases_dir.iterdir()):
            if not directory.is_dir():
                continue
            releases.append(
                self._read(directory)
                or Release(
                    id=directory.name,
                    source_ref="unknown",
                    status=ReleaseStatus.STAGED,
                    directory=directory,
                    created_at="",
                )
            )
        return releases

    def orphans(self) -> list[Path]:
        """Release directories that are neither active nor serving."""
        keep = {r.directory for r in (self.active(), self.serving()) if r is not None}
        return [r.directory for r in self.list_releases() if r.directory not in keep]

    def sweep(self) -> list[Path]:
        """Delete orphan release directories; returns what was removed."""
        removed: list[Path] = []
        for directory in self.orphans():
            try:
                remove_tree(directory)
            except OSError as e:
                self._console.warning(f"could not sweep {directory}: {e}")
                continue
            removed.append(directory)
        return removed

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _next_id(self) -> str:
        """Timestamp id, bumped past the newest existing id if needed."""
        candidate = self._clock().replace(microsecond=0)
        existing = [p.name for p in self.releases_dir.iterdir() if p.is_dir()]
        latest: datetime | None = None
        for name in existing:
            try:
                stamp = datetime.strptime(name, RELEASE_ID_FORMAT)
            except ValueError:
                continue
            if latest is None or stamp > latest:
                latest = stamp
        if latest is not None and candidate <= latest:
            candidate = latest + timedelta(seconds=1)
        return candidate.strftime(RELEASE_ID_FORMAT)

    def _outgoing(self, release: Release) -> list[Release]:
        """Releases a successful promotion of release replaces."""
        outgoing: list[Release] = []
        for candidate in (self.active(), self.serving()):
            if candidate is None or candidate.directory == release.directory:
                continue
            if all(candidate.directory != r.directory for r in outgoing):
                outgoing.append(candidate)
        return outgoing

    def _mark_serving(self, release: Release) -> None:
        try:
            atomic_write_text(self.serving_path, release.id + "\n")
        except OSError as e:
            self._console.warning(f"could not record serving release {release.id}: {e}")

    def _clear_serving(self) -> None:
        try:
            self.serving_path.unlink(missing_ok=True)
        except OSError as e:
            self._console.warning(f"could not remove {self.serving_path}: {e}")

    def _read(self, directory: Path) -> Release | None:
        path = directory / METADATA_NAME
        try:
            data = as_str_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, UnicodeDecodeError):
            return None
        if data is None:
            return None
        try:
            return Release.from_dict(data, directory)
        except ValueError:
            return None

    def _write_metadata(self, release: Release) -> None:
        if not release.directory.is_dir():
            return
        try:
            atomic_write_text(
                release.directory / METADATA_NAME,
                json.dumps(release.to_dict(), indent=2, sort_keys=True) + "\n",
            )
        except OSError as e:
            self._console.warning(f"could not write metadata for release {release.id}: {e}")

    def _link_proxy_config(self, release: Release) -> None:
        if self._proxy_link is None or not self._proxy_config:
            return
        if not (release.directory / self._proxy_config).is_file():
            self._console.warning(
                f"release {release.id} has no {self._proxy_config}; "
                f"{self._proxy_link} left unchanged"
            )
            return
        try:
            atomic_symlink(self._proxy_link, self.pointer_path / self._proxy_config)
        except OSError as e:
            self._console.warning(f"could not link {self._proxy_link}: {e}")
            return
        self._console.info(f"{self._proxy_link} -> {self.pointer_path / self._proxy_config}")


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
