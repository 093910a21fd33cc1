"""Error presentation utilities.

Centralized error formatting and exit code mapping for consistent UX.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rollout.core.errors import ErrorCode
from rollout.output.console import Style
from rollout.services.errors import (
    BuildError,
    ControllerError,
    DeployError,
    LockHeld,
    PromotionError,
    RollbackError,
    StageError,
    StateError,
)
from rollout.services.orchestrator import DeployOutcome, DeployReport

if TYPE_CHECKING:
    from rollout.output.console import ConsoleProtocol

__all__ = ["print_deploy_error", "print_deploy_report", "deploy_exit_code"]


def print_deploy_error(error: DeployError, console: ConsoleProtocol) -> None:
    """Print a deploy error to console with appropriate formatting."""
    match error:
        case StageError(message=message, hint=hint):
            console.error(message)
            if hint:
                console.print(f"hint: {hint}", Style.DIM)
        case LockHeld():
            console.error(error.message)
            console.print(f"hint: {error.hint}", Style.DIM)
        case BuildError(message=message, attempts=attempts):
            console.error(message)
            for attempt in attempts:
                console.print(
                    f"  attempt {attempt.attempt_number} ({attempt.cache_mode}): "
                    f"exit {attempt.exit_status}",
                    Style.DIM,
                )
        case ControllerError(message=message):
            console.error(message)
        case PromotionError(stage=stage, message=message, path=path):
            console.warning(f"promotion {stage} step failed: {message}")
            if path is not None:
                console.print(f"check {path} manually", Style.DIM)
        case RollbackError(message=message, hint=hint):
            console.error(message)
            if hint:
                console.print(f"hint: {hint}", Style.DIM)
        case StateError(state=state, message=message):
            console.error(f"{message} (state {state})")


def print_deploy_report(report: DeployReport, console: ConsoleProtocol) -> None:
    """Summarize a finished deploy run."""
    if report.error is not None:
        print_deploy_error(report.error, console)
    if report.warning is not None:
        print_deploy_error(report.warning, console)

    release_id = report.release.id if report.release else "-"
    match report.outcome:
        case DeployOutcome.PROMOTED:
            console.success(f"release {release_id} promoted via {report.path} update")
        case DeployOutcome.ABORTED:
            current = report.previous.id if report.previous else "none"
            console.error(f"deploy aborted; active release unchanged ({current})")
        case DeployOutcome.ROLLED_BACK:
            restored = report.previous.id if report.previous else "-"
            console.error(f"release {release_id} rolled back; {restored} is serving again")
            if report.reason:
                console.print(f"reason: {report.reason}", Style.DIM)
        case DeployOutcome.FAILED:
            console.error(f"deploy of {release_id} failed; operator intervention required")
            if report.reason:
                console.print(f"reason: {report.reason}", Style.DIM)

    if report.logs and report.outcome != DeployOutcome.PROMOTED:
        console.header("Service logs")
        for line in report.logs:
            console.print(line, Style.DIM)


def deploy_exit_code(report: DeployReport) -> int:
    """Get exit code for a finished deploy run."""
    match report.outcome:
        case DeployOutcome.PROMOTED:
            if report.warning is not None:
                return int(ErrorCode.PROMOTION_ERROR)
            return int(ErrorCode.OK)
        case DeployOutcome.ABORTED:
            if isinstance(report.error, BuildError):
                return int(ErrorCode.BUILD_ERROR)
            return int(ErrorCode.STAGE_ERROR)
        case DeployOutcome.ROLLED_BACK:
            return int(ErrorCode.ROLLED_BACK)
        case DeployOutcome.FAILED:
            return int(ErrorCode.ROLLBACK_FAILED)
