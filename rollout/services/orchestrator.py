"""Deployment orchestrator: the release state machine.

States and the transitions between them::

    idle -> cleaning -> staging -> building -> partial_update
         -> health_check_partial -> promoting -> promoted

    partial_update (command failed)        -> full_rebuild
    health_check_partial (not healthy)     -> full_rebuild
    full_rebuild -> health_check_full      -> promoting -> promoted
    full_rebuild (failed) / not healthy    -> rolling_back -> rolled_back | failed

    staging / building failures            -> aborted   (nothing was changed)

The partial path is always tried first and a full rebuild never follows a
healthy partial update. Promotion is only reachable from a health check that
returned healthy for the release being promoted. Build swap acquired during
staging is released exactly once when the run ends, whatever the outcome.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Literal

from rollout.core.config import DeployConfig
from rollout.core.fsm import FINISH, StepHandler, StepOutcome, advance, run_state_machine
from rollout.core.result import Err, Ok, Result
from rollout.output.console import ConsoleProtocol
from rollout.platform.process import CommandRunner, SubprocessRunner

from .build import BuildPipeline, BuildPolicy
from .cleanup import CleanupService
from .compose import Compose
from .controller import ServiceController
from .errors import DeployError, PromotionError, RollbackError, StateError
from .health import HealthMonitor, HealthProbe
from .models import Artifact, Release, ReleaseStatus, SwapResource
from .releases import ReleaseStore
from .source import SourceFetcher
from .swap import SwapGuard

__all__ = [
    "DeployOutcome",
    "DeployReport",
    "DeploySession",
    "DeploySettings",
    "DeployState",
    "Orchestrator",
    "RunContext",
]

UpdatePath = Literal["partial", "full"]


class DeployState(StrEnum):
    IDLE = "idle"
    CLEANING = "cleaning"
    STAGING = "staging"
    BUILDING = "building"
    PARTIAL_UPDATE = "partial_update"
    HEALTH_CHECK_PARTIAL = "health_check_partial"
    FULL_REBUILD = "full_rebuild"
    HEALTH_CHECK_FULL = "health_check_full"
    PROMOTING = "promoting"
    ROLLING_BACK = "rolling_back"
    PROMOTED = "promoted"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class DeployOutcome(StrEnum):
    PROMOTED = "promoted"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


_TERMINAL: dict[DeployState, DeployOutcome] = {
    DeployState.PROMOTED: DeployOutcome.PROMOTED,
    DeployState.ABORTED: DeployOutcome.ABORTED,
    DeployState.ROLLED_BACK: DeployOutcome.ROLLED_BACK,
    DeployState.FAILED: DeployOutcome.FAILED,
}


@dataclass(frozen=True, slots=True)
class DeploySettings:
    """Per-run inputs the state machine decides with."""

    endpoint: str
    partial_timeout: float
    full_timeout: float
    poll_interval: float
    min_memory_mb: int
    swap_size_bytes: int
    log_tail: int
    build_policy: BuildPolicy = field(default_factory=BuildPolicy)

    @classmethod
    def from_config(cls, config: DeployConfig) -> DeploySettings:
        return cls(
            endpoint=config.health.endpoint,
            partial_timeout=config.health.partial_timeout,
            full_timeout=config.health.full_timeout,
            poll_interval=config.health.poll_interval,
            min_memory_mb=config.swap.min_memory_mb,
            swap_size_bytes=config.swap.size_bytes,
            log_tail=config.services.log_tail,
            build_policy=BuildPolicy(timeout=config.services.build_timeout),
        )


@dataclass(frozen=True, slots=True)
class DeploySession:
    """Immutable snapshot of one run, replaced on every transition."""

    state: DeployState
    source_ref: str
    release: Release | None = None
    previous: Release | None = None
    artifact: Artifact | None = None
    path: UpdatePath | None = None
    healthy_release_id: str | None = None
    reason: str | None = None
    error: DeployError | None = None
    warning: PromotionError | None = None
    logs: tuple[str, ...] = ()

    def to(self, state: DeployState, **changes: object) -> DeploySession:
        return replace(self, state=state, **changes)  # type: ignore[arg-type]


@dataclass
class RunContext:
    """Host state one run owns: the build swap and the transition log."""

    swap: SwapResource | None = None
    swap_released: bool = False
    cleanup: list[str] = field(default_factory=lambda: list[str]())
    transitions: list[DeployState] = field(default_factory=lambda: [DeployState.IDLE])


@dataclass(frozen=True, slots=True)
class DeployReport:
    outcome: DeployOutcome
    source_ref: str
    release: Release | None
    previous: Release | None
    path: UpdatePath | None
    transitions: tuple[DeployState, ...]
    error: DeployError | None = None
    warning: PromotionError | None = None
    reason: str | None = None
    logs: tuple[str, ...] = ()
    cleanup: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.outcome == DeployOutcome.PROMOTED and self.warning is None


type DeployHandler = StepHandler[DeploySession, StateError]


class Orchestrator:
    """Sequences cleanup, staging, build, update, health check and promotion."""

    def __init__(
        self,
        *,
        store: ReleaseStore,
        guard: SwapGuard,
        pipeline: BuildPipeline,
        controller: ServiceController,
        monitor: HealthMonitor,
        console: ConsoleProtocol,
        settings: DeploySettings,
        source: SourceFetcher | None = None,
        cleanup: CleanupService | None = None,
    ) -> None:
        self._store = store
        self._guard = guard
        self._pipeline = pipeline
        self._controller = controller
        self._monitor = monitor
        self._console = console
        self._settings = settings
        self._source = source
        self._cleanup = cleanup

    @classmethod
    def from_config(
        cls,
        config: DeployConfig,
        *,
        console: ConsoleProtocol,
        runner: CommandRunner | None = None,
        probe: HealthProbe | None = None,
    ) -> Orchestrator:
        """Wire every component from config."""
        runner = runner or SubprocessRunner()
        services = config.services
        compose = Compose(project=services.project_name, compose_file=services.compose_file)
        proxy_link = services.proxy_link
        return cls(
            store=ReleaseStore(
                config.root,
                console=console,
                proxy_config=services.proxy_config,
                proxy_link=None if proxy_link is None else config.root / proxy_link,
            ),
            guard=SwapGuard(runner=runner, console=console, swap_path=Path(config.swap.path)),
            pipeline=BuildPipeline(
                runner=runner,
                compose=compose,
                services=services.app_services,
                console=console,
            ),
            controller=ServiceController(
                runner=runner,
                compose=compose,
                app_services=services.app_services,
                console=console,
                service_timeout=services.service_timeout,
                build_timeout=services.build_timeout,
            ),
            monitor=HealthMonitor(
                console=console,
                probe=probe,
                request_timeout=config.health.request_timeout,
            ),
            console=console,
            settings=DeploySettings.from_config(config),
            source=SourceFetcher(
                runner=runner,
                repo_url=config.source.repo_url,
                console=console,
            ),
            cleanup=CleanupService(
                runner=runner,
                project=services.project_name,
                config=config.cleanup,
                console=console,
                timeout=services.service_timeout,
            ),
        )

    @property
    def store(self) -> ReleaseStore:
        return self._store

    def run(self, source_ref: str) -> DeployReport:
        """Deploy source_ref and report how the run ended."""
        ctx = RunContext()
        initial = DeploySession(state=DeployState.IDLE, source_ref=source_ref)
        self._console.progress(f"deploy state=idle ref={source_ref}")

        try:
            result = run_state_machine(
                initial_state=initial,
                get_state=lambda s: str(s.state),
                handlers=self._handlers(ctx),
                on_transition=lambda old, new: self._on_transition(ctx, old, new),
            )
        finally:
            self._release_capacity(ctx)

        if isinstance(result, Err):
            error = result.error
            if not isinstance(error, StateError):
                error = StateError(state=error.state, message=error.message)
            self._console.progress(f"deploy state=idle outcome=failed error={error.message!r}")
            return DeployReport(
                outcome=DeployOutcome.FAILED,
                source_ref=source_ref,
                release=None,
                previous=None,
                path=None,
                transitions=tuple(ctx.transitions),
                error=error,
                cleanup=tuple(ctx.cleanup),
            )

        final = result.value
        report = DeployReport(
            outcome=_TERMINAL[final.state],
            source_ref=source_ref,
            release=final.release,
            previous=final.previous,
            path=final.path,
            transitions=tuple(ctx.transitions),
            error=final.error,
            warning=final.warning,
            reason=final.reason,
            logs=final.logs,
            cleanup=tuple(ctx.cleanup),
        )
        self._console.progress(f"deploy state=idle outcome={report.outcome}")
        return report

    # -------------------------------------------------------------------------
    # State handlers
    # -------------------------------------------------------------------------

    def _handlers(self, ctx: RunContext) -> dict[str, DeployHandler]:
        return {
            DeployState.IDLE: lambda s: Ok(advance(s.to(DeployState.CLEANING))),
            DeployState.CLEANING: lambda s: self._cleaning(ctx, s),
            DeployState.STAGING: lambda s: self._staging(ctx, s),
            DeployState.BUILDING: self._building,
            DeployState.PARTIAL_UPDATE: self._partial_update,
            DeployState.HEALTH_CHECK_PARTIAL: self._health_check_partial,
            DeployState.FULL_REBUILD: self._full_rebuild,
            DeployState.HEALTH_CHECK_FULL: self._health_check_full,
            DeployState.PROMOTING: self._promoting,
            DeployState.ROLLING_BACK: self._rolling_back,
            DeployState.PROMOTED: _finish,
            DeployState.ABORTED: _finish,
            DeployState.ROLLED_BACK: _finish,
            DeployState.FAILED: _finish,
        }

    def _cleaning(
        self, ctx: RunContext, s: DeploySession
    ) -> Result[StepOutcome[DeploySession], StateError]:
        if self._cleanup is not None:
            ctx.cleanup.extend(self._cleanup.run(self._store.serving()))
        for directory in self._store.sweep():
            ctx.cleanup.append(f"swept orphan release {directory.name}")
        return Ok(advance(s.to(DeployState.STAGING)))

    def _staging(
        self, ctx: RunContext, s: DeploySession
    ) -> Result[StepOutcome[DeploySession], StateError]:
        ctx.swap = self._guard.ensure_build_capacity(
            self._settings.min_memory_mb,
            self._settings.swap_size_bytes,
        )
        previous = self._store.serving()

        staged = self._store.stage(s.source_ref)
        if isinstance(staged, Err):
            return Ok(advance(s.to(DeployState.ABORTED, previous=previous, error=staged.error)))
        release = staged.value

        if self._source is not None:
            fetched = self._source.fetch(release)
            if isinstance(fetched, Err):
                discarded = self._store.discard(release)
                return Ok(
                    advance(
                        s.to(
                            DeployState.ABORTED,
                            release=discarded,
                            previous=previous,
                            error=fetched.error,
                        )
                    )
                )
            if fetched.value:
                release = self._store.record_commit(release, fetched.value)

        return Ok(advance(s.to(DeployState.BUILDING, release=release, previous=previous)))

    def _building(self, s: DeploySession) -> Result[StepOutcome[DeploySession], StateError]:
        release = self._store.mark(_require(s.release), ReleaseStatus.BUILDING)
        built = self._pipeline.build(release, self._settings.build_policy)
        if isinstance(built, Err):
            discarded = self._store.discard(self._store.mark(release, ReleaseStatus.FAILED))
            return Ok(advance(s.to(DeployState.ABORTED, release=discarded, error=built.error)))
        return Ok(
            advance(s.to(DeployState.PARTIAL_UPDATE, release=release, artifact=built.value))
        )

    def _partial_update(self, s: DeploySession) -> Result[StepOutcome[DeploySession], StateError]:
        updated = self._controller.update_partial(_require(s.release))
        if isinstance(updated, Err):
            self._console.warning(f"{updated.error.message}; falling back to full rebuild")
            return Ok(advance(s.to(DeployState.FULL_REBUILD, reason=updated.error.message)))
        return Ok(advance(s.to(DeployState.HEALTH_CHECK_PARTIAL, path="partial")))

    def _health_check_partial(
        self, s: DeploySession
    ) -> Result[StepOutcome[DeploySession], StateError]:
        timeout = self._settings.partial_timeout
        if self._wait_healthy(timeout):
            release = self._store.mark(_require(s.release), ReleaseStatus.HEALTHY)
            return Ok(
                advance(
                    s.to(DeployState.PROMOTING, release=release, healthy_release_id=release.id)
                )
            )
        reason = f"partial update not healthy within {timeout:g}s"
        self._console.warning(f"{reason}; falling back to full rebuild")
        return Ok(advance(s.to(DeployState.FULL_REBUILD, reason=reason)))

    def _full_rebuild(self, s: DeploySession) -> Result[StepOutcome[DeploySession], StateError]:
        rebuilt = self._controller.update_full(_require(s.release))
        if isinstance(rebuilt, Err):
            return Ok(
                advance(
                    s.to(
                        DeployState.ROLLING_BACK,
                        error=rebuilt.error,
                        reason=rebuilt.error.message,
                    )
                )
            )
        return Ok(advance(s.to(DeployState.HEALTH_CHECK_FULL, path="full")))

    def _health_check_full(self, s: DeploySession) -> Result[StepOutcome[DeploySession], StateError]:
        timeout = self._settings.full_timeout
        if self._wait_healthy(timeout):
            release = self._store.mark(_require(s.release), ReleaseStatus.HEALTHY)
            return Ok(
                advance(
                    s.to(DeployState.PROMOTING, release=release, healthy_release_id=release.id)
                )
            )
        reason = f"full rebuild not healthy within {timeout:g}s"
        return Ok(advance(s.to(DeployState.ROLLING_BACK, reason=reason)))

    def _promoting(self, s: DeploySession) -> Result[StepOutcome[DeploySession], StateError]:
        release = _require(s.release)
        if s.healthy_release_id != release.id:
            return Err(
                StateError(
                    state=str(s.state),
                    message=f"refusing to promote {release.id} without a healthy probe",
                )
            )

        promoted = self._store.promote(release)
        if isinstance(promoted, Ok):
            return Ok(advance(s.to(DeployState.PROMOTED, release=promoted.value)))

        warning = promoted.error
        self._console.warning(f"{warning.message}; release {release.id} is serving")
        if warning.stage == "cleanup":
            release = release.with_status(ReleaseStatus.PROMOTED)
        return Ok(advance(s.to(DeployState.PROMOTED, release=release, warning=warning)))

    def _rolling_back(self, s: DeploySession) -> Result[StepOutcome[DeploySession], StateError]:
        release = _require(s.release)
        logs = tuple(self._controller.collect_logs(release, self._settings.log_tail))

        stopped = self._controller.stop(release)
        if isinstance(stopped, Err):
            self._console.warning(stopped.error.message)
        discarded = self._store.discard(self._store.mark(release, ReleaseStatus.FAILED))
        s = s.to(DeployState.ROLLING_BACK, release=discarded, logs=logs)

        previous = s.previous
        if previous is None or not previous.directory.is_dir():
            return Ok(
                advance(
                    s.to(
                        DeployState.FAILED,
                        error=RollbackError(
                            "no previous release to roll back to",
                            hint="the host has no running release; fix the build and redeploy",
                        ),
                    )
                )
            )

        self._console.info(f"rolling back to release {previous.id}")
        restored = self._controller.rollback(previous)
        if isinstance(restored, Err):
            return Ok(
                advance(
                    s.to(
                        DeployState.FAILED,
                        error=RollbackError(
                            f"rollback to {previous.id} failed: {restored.error.message}",
                            hint="operator intervention required",
                        ),
                    )
                )
            )

        if not self._wait_healthy(self._settings.full_timeout):
            return Ok(
                advance(
                    s.to(
                        DeployState.FAILED,
                        error=RollbackError(
                            f"previous release {previous.id} restarted but is not healthy",
                            hint="operator intervention required",
                        ),
                    )
                )
            )

        return Ok(advance(s.to(DeployState.ROLLED_BACK)))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _wait_healthy(self, timeout: float) -> bool:
        return self._monitor.wait_healthy(
            self._settings.endpoint,
            timeout,
            self._settings.poll_interval,
        )

    def _on_transition(self, ctx: RunContext, old: DeploySession, new: DeploySession) -> None:
        ctx.transitions.append(new.state)
        parts = [f"deploy state={new.state}"]
        if new.release is not None:
            parts.append(f"release={new.release.id}")
        if new.path is not None and new.state in _TERMINAL:
            parts.append(f"path={new.path}")
        if new.reason is not None and new.reason != old.reason:
            parts.append(f"reason={new.reason!r}")
        if new.error is not None and new.error is not old.error:
            parts.append(f"error={new.error.message!r}")
        self._console.progress(" ".join(parts))

    def _release_capacity(self, ctx: RunContext) -> None:
        if ctx.swap_released:
            return
        ctx.swap_released = True
        self._guard.release_build_capacity(ctx.swap)


def _finish(_: DeploySession) -> Result[StepOutcome[DeploySession], StateError]:
    return Ok(FINISH)


def _require(release: Release | None) -> Release:
    if release is None:
        raise RuntimeError("deploy state requires a staged release")
    return release
