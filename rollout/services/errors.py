"""Deploy error taxonomy.

Errors are values: components return them inside ``Err`` and the
orchestrator decides whether they abort, trigger a fallback or a rollback.
A health timeout is deliberately absent; it is a ``False`` from the health
monitor, not an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .models import BuildAttempt


@dataclass(frozen=True, slots=True)
class StageError:
    """Release storage or source could not be prepared. Nothing was changed."""

    message: str
    path: Path | None = None
    hint: str | None = None


@dataclass(frozen=True, slots=True)
class LockHeld:
    """Another deploy run holds the release root lock."""

    path: Path
    holder: str

    @property
    def message(self) -> str:
        return f"another deploy is in progress (lock {self.path}, held by {self.holder})"

    @property
    def hint(self) -> str:
        return f"if no deploy is running, remove {self.path}"


@dataclass(frozen=True, slots=True)
class BuildError:
    """Every build attempt failed; the active release keeps serving."""

    message: str
    attempts: tuple[BuildAttempt, ...]


@dataclass(frozen=True, slots=True)
class ControllerError:
    """A service start/stop/rebuild command failed."""

    action: str
    message: str
    returncode: int = -1


@dataclass(frozen=True, slots=True)
class PromotionError:
    """Pointer update or old release cleanup failed after a healthy check.

    The new release is already serving; this needs an operator, not a rollback.
    """

    stage: Literal["pointer", "cleanup"]
    message: str
    path: Path | None = None


@dataclass(frozen=True, slots=True)
class RollbackError:
    """The host could not be returned to the last known-good release."""

    message: str
    hint: str | None = None


@dataclass(frozen=True, slots=True)
class StateError:
    """The state machine refused a transition (e.g. promotion without a healthy probe)."""

    state: str
    message: str


DeployError = (
    StageError
    | LockHeld
    | BuildError
    | ControllerError
    | PromotionError
    | RollbackError
    | StateError
)
