"""Deploy domain types."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import StrEnum
from pathlib import Path

from rollout.core.structured import StrDict, get_str

__all__ = [
    "Artifact",
    "BuildAttempt",
    "CacheMode",
    "ProbeResult",
    "Release",
    "ReleaseStatus",
    "SwapResource",
    "RELEASE_ID_FORMAT",
]

RELEASE_ID_FORMAT = "%Y%m%d%H%M%S"


class ReleaseStatus(StrEnum):
    STAGED = "staged"
    BUILDING = "building"
    HEALTHY = "healthy"
    PROMOTED = "promoted"
    FAILED = "failed"
    DISCARDED = "discarded"


class CacheMode(StrEnum):
    CACHED = "cached"
    NO_CACHE = "no-cache"


@dataclass(frozen=True, slots=True)
class Release:
    """One staged build and the directory it exclusively owns.

    Attributes:
        id: Timestamp-derived id (``YYYYmmddHHMMSS``); sorts chronologically.
        source_ref: Branch or tag the release was cloned from.
        status: Lifecycle status.
        directory: ``<root>/releases/<id>``, never shared between releases.
        created_at: ISO timestamp of staging.
        commit: Resolved commit sha, once the source is fetched.
    """

    id: str
    source_ref: str
    status: ReleaseStatus
    directory: Path
    created_at: str
    commit: str | None = None

    def with_status(self, status: ReleaseStatus) -> Release:
        return replace(self, status=status)

    @property
    def short_commit(self) -> str:
        return self.commit[:12] if self.commit else "-"

    def to_dict(self) -> dict[str, str | None]:
        return {
            "id": self.id,
            "source_ref": self.source_ref,
            "status": str(self.status),
            "created_at": self.created_at,
            "commit": self.commit,
        }

    @classmethod
    def from_dict(cls, data: StrDict, directory: Path) -> Release:
        """Rebuild a Release from its metadata file.

        Raises:
            ValueError: If required fields are missing or status is unknown.
        """
        release_id = get_str(data, "id")
        source_ref = get_str(data, "source_ref")
        status = get_str(data, "status")
        if release_id is None or source_ref is None or status is None:
            raise ValueError("release metadata missing id, source_ref or status")
        return cls(
            id=release_id,
            source_ref=source_ref,
            status=ReleaseStatus(status),
            directory=directory,
            created_at=get_str(data, "created_at") or "",
            commit=get_str(data, "commit"),
        )


@dataclass(frozen=True, slots=True)
class BuildAttempt:
    attempt_number: int
    cache_mode: CacheMode
    exit_status: int


@dataclass(frozen=True, slots=True)
class Artifact:
    """Images built for a release by its successful build attempt."""

    release_id: str
    services: tuple[str, ...]
    attempt: BuildAttempt


@dataclass(frozen=True, slots=True)
class SwapResource:
    """Swap area active during the build.

    Attributes:
        path: Swap file path.
        size_bytes: Size requested (or found) for the swap file.
        created_by_this_run: True if this run activated it; only such
            resources are deactivated at the end of the run.
        file_preexisted: The file was already on disk (inactive) before this
            run; it is deactivated on release but never deleted.
    """

    path: Path
    size_bytes: int
    created_by_this_run: bool
    file_preexisted: bool = False


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of one health probe."""

    reachable: bool
    status_code: int | None
    elapsed_ms: float

    @property
    def healthy(self) -> bool:
        return self.reachable and self.status_code is not None and 200 <= self.status_code < 300
