from __future__ import annotations

import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from rollout.core.config import CleanupConfig
from rollout.core.errors import ErrorCode
from rollout.core.result import Err, Ok, Result
from rollout.output.console import MockConsole
from rollout.output.errors import deploy_exit_code
from rollout.platform.process import MockRunner, ProcessError
from rollout.services.build import BuildPipeline
from rollout.services.cleanup import CleanupService
from rollout.services.compose import Compose
from rollout.services.controller import ServiceController
from rollout.services.errors import BuildError, PromotionError, RollbackError, StageError
from rollout.services.health import HealthMonitor
from rollout.services.models import ProbeResult, Release
from rollout.services.orchestrator import (
    DeployOutcome,
    DeployReport,
    DeploySession,
    DeploySettings,
    DeployState as S,
    Orchestrator,
)
from rollout.services import releases as releases_module
from rollout.services.releases import ReleaseStore
from rollout.services.source import SourceFetcher
from rollout.services.swap import SwapGuard

MIB = 1024 * 1024


@dataclass
class FakeClock:
    now: float = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class ConditionProbe:
    """Healthy whenever ``healthy()`` says so; records probe times."""

    healthy: Callable[[], bool]
    clock: FakeClock
    probed_at: list[float] = field(default_factory=lambda: list[float]())

    def probe(self, url: str, timeout: float) -> ProbeResult:
        self.probed_at.append(self.clock.now)
        if self.healthy():
            return ProbeResult(True, 200, 3.0)
        return ProbeResult(False, None, 3.0)


@dataclass
class Harness:
    root: Path
    runner: MockRunner
    console: MockConsole
    store: ReleaseStore
    probe: ConditionProbe
    orchestrator: Orchestrator
    swap_path: Path

    def run(self, ref: str = "main") -> DeployReport:
        return self.orchestrator.run(ref)

    def seed_previous(self) -> Release:
        """Promote a release as if an earlier deploy had succeeded."""
        staged = self.store.stage("v1")
        assert isinstance(staged, Ok)
        promoted = self.store.promote(staged.value)
        assert isinstance(promoted, Ok)
        (promoted.value.directory / "docker-compose.yml").write_text(
            "services: {}\n", encoding="utf-8"
        )
        return promoted.value


def _harness(
    tmp_path: Path,
    *,
    healthy: Callable[[MockRunner], bool],
    mem_kb: int = 8 * 1024 * 1024,
    runner: MockRunner | None = None,
    cleanup: CleanupConfig | None = None,
) -> Harness:
    tmp_path.mkdir(parents=True, exist_ok=True)
    runner = runner or MockRunner()
    runner.respond("rev-parse", stdout="0123456789abcdef\n")
    console = MockConsole()
    clock = FakeClock()
    root = tmp_path / "srv"
    meminfo = tmp_path / "meminfo"
    meminfo.write_text(f"MemTotal: {mem_kb} kB\n", encoding="utf-8")
    swap_path = tmp_path / "swapfile"

    compose = Compose(project="app")
    store = ReleaseStore(root, console=console)
    probe = ConditionProbe(lambda: healthy(runner), clock)
    orchestrator = Orchestrator(
        store=store,
        guard=SwapGuard(runner=runner, console=console, swap_path=swap_path, meminfo=meminfo),
        pipeline=BuildPipeline(runner=runner, compose=compose, services=("app",), console=console),
        controller=ServiceController(
            runner=runner,
            compose=compose,
            app_services=("app",),
            console=console,
            service_timeout=300.0,
            build_timeout=900.0,
        ),
        monitor=HealthMonitor(
            console=console,
            probe=probe,
            request_timeout=5.0,
            clock=clock,
            sleep=clock.sleep,
        ),
        console=console,
        settings=DeploySettings(
            endpoint="http://127.0.0.1:3000/",
            partial_timeout=6.0,
            full_timeout=10.0,
            poll_interval=2.0,
            min_memory_mb=2000,
            swap_size_bytes=2048 * MIB,
            log_tail=50,
        ),
        source=SourceFetcher(runner=runner, repo_url="https://example.com/app.git", console=console),
        cleanup=CleanupService(
            runner=runner,
            project="app",
            config=cleanup or CleanupConfig(prune_networks=False),
            console=console,
            timeout=60.0,
        ),
    )
    return Harness(root, runner, console, store, probe, orchestrator, swap_path)


def _after_partial(runner: MockRunner) -> bool:
    return runner.called("up", "--no-deps")


def _after_full(runner: MockRunner) -> bool:
    return runner.called("up", "--renew-anon-volumes")


def _never(runner: MockRunner) -> bool:
    return False


def _after_rollback_to(previous: list[Path]) -> Callable[[MockRunner], bool]:
    def healthy(runner: MockRunner) -> bool:
        return any(c.cwd in previous and "up" in c.cmd for c in runner.calls)

    return healthy


def _ran_full_rebuild(runner: MockRunner) -> bool:
    return runner.called("down", "--rmi") or runner.called("--renew-anon-volumes")


def _pointer(h: Harness) -> str:
    return os.readlink(h.store.pointer_path)


class TestPromotion:
    def test_healthy_partial_update_is_promoted(self, tmp_path: Path) -> None:
        h = _harness(tmp_path, healthy=_after_partial)
        previous = h.seed_previous()

        report = h.run()

        assert report.outcome == DeployOutcome.PROMOTED
        assert report.path == "partial"
        assert report.ok
        assert report.transitions == (
            S.IDLE,
            S.CLEANING,
            S.STAGING,
            S.BUILDING,
            S.PARTIAL_UPDATE,
            S.HEALTH_CHECK_PARTIAL,
            S.PROMOTING,
            S.PROMOTED,
        )
        assert report.release is not None
        assert _pointer(h) == f"releases/{report.release.id}"
        assert report.release.commit == "0123456789abcdef"
        assert not previous.directory.exists()
        assert not _ran_full_rebuild(h.runner)
        assert deploy_exit_code(report) == int(ErrorCode.OK)

    def test_first_deploy_without_previous_release(self, tmp_path: Path) -> None:
        h = _harness(tmp_path, healthy=_after_partial)

        report = h.run()

        assert report.outcome == DeployOutcome.PROMOTED
        assert report.previous is None
        assert h.store.active() is not None

    def test_unhealthy_partial_falls_back_to_full_rebuild(self, tmp_path: Path) -> None:
        h = _harness(tmp_path, healthy=_after_full)
        previous = h.seed_previous()

        report = h.run()

        assert report.outcome == DeployOutcome.PROMOTED
        assert report.path == "full"
        assert S.FULL_REBUILD in report.transitions
        assert report.transitions[-3:] == (S.HEALTH_CHECK_FULL, S.PROMOTING, S.PROMOTED)
        assert not previous.directory.exists()
        assert report.release is not None
        assert _pointer(h) == f"releases/{report.release.id}"

    def test_partial_wait_uses_partial_timeout(self, tmp_path: Path) -> None:
        h = _harness(tmp_path, healthy=_after_full)
        h.seed_previous()

        h.run()

        # Partial check polls at 2, 4, 6; the full check starts at t=6.
        assert h.probe.probed_at[:3] == [2.0, 4.0, 6.0]
        assert h.probe.probed_at[3] == 8.0

    def test_failed_partial_command_falls_back_to_full_rebuild(self, tmp_path: Path) -> None:
        runner = MockRunner()
        runner.fail("up", "--no-deps", stderr="container name already in use")
        h = _harness(tmp_path, healthy=_after_full, runner=runner)
        h.seed_previous()

        report = h.run()

        assert report.outcome == DeployOutcome.PROMOTED
        assert report.path == "full"
        assert S.HEALTH_CHECK_PARTIAL not in report.transitions

    def test_promotion_only_follows_healthy_check(self, tmp_path: Path) -> None:
        for healthy in (_after_partial, _after_full):
            h = _harness(tmp_path / healthy.__name__, healthy=healthy)
            report = h.run()

            index = report.transitions.index(S.PROMOTING)
            assert report.transitions[index - 1] in (S.HEALTH_CHECK_PARTIAL, S.HEALTH_CHECK_FULL)

    def test_promoting_without_healthy_probe_is_refused(self, tmp_path: Path) -> None:
        h = _harness(tmp_path, healthy=_never)
        staged = h.store.stage("main")
        assert isinstance(staged, Ok)

        session = DeploySession(state=S.PROMOTING, source_ref="main", release=staged.value)
        result = h.orchestrator._promoting(session)  # pyright: ignore[reportPrivateUsage]

        assert isinstance(result, Err)
        assert "healthy" in result.error.message
        assert not h.store.pointer_path.exists()

    def test_cleanup_failure_after_promotion_is_a_warning(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        h = _harness(tmp_path, healthy=_after_partial)
        previous = h.seed_previous()
        real_remove = releases_module.remove_tree

        def remove(path: Path) -> bool:
            if path == previous.directory:
                raise OSError("device busy")
            return real_remove(path)

        monkeypatch.setattr("rollout.services.releases.remove_tree", remove)

        report = h.run()

        assert report.outcome == DeployOutcome.PROMOTED
        assert isinstance(report.warning, PromotionError)
        assert report.warning.stage == "cleanup"
        assert not report.ok
        assert deploy_exit_code(report) == int(ErrorCode.PROMOTION_ERROR)

    def test_serving_release_survives_a_failed_pointer_swap(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        h = _harness(tmp_path, healthy=_after_partial)
        previous = h.seed_previous()

        def boom(link: Path, target: object) -> None:
            raise OSError("read-only filesystem")

        monkeypatch.setattr("rollout.services.releases.atomic_symlink", boom)
        report = h.run()
        monkeypatch.undo()

        assert report.outcome == DeployOutcome.PROMOTED
        assert isinstance(report.warning, PromotionError)
        assert report.warning.stage == "pointer"
        assert deploy_exit_code(report) == int(ErrorCode.PROMOTION_ERROR)
        serving = report.release
        assert serving is not None
        assert _pointer(h) == f"releases/{previous.id}"
        assert serving.directory not in h.store.orphans()

        second = h.run()

        assert second.outcome == DeployOutcome.PROMOTED
        assert f"swept orphan release {serving.id}" not in second.cleanup
        assert second.previous is not None
        assert second.previous.id == serving.id
        assert not serving.directory.exists()
        assert not previous.directory.exists()
        assert not h.store.serving_path.exists()


class TestAbort:
    def test_build_failure_leaves_active_release_untouched(self, tmp_path: Path) -> None:
        runner = MockRunner()
        runner.fail("compose", "build", stderr="npm ERR! missing script: build")
        h = _harness(tmp_path, healthy=_never, runner=runner)
        previous = h.seed_previous()
        pointer_before = _pointer(h)

        report = h.run()

        assert report.outcome == DeployOutcome.ABORTED
        assert isinstance(report.error, BuildError)
        assert len(report.error.attempts) == 2
        assert _pointer(h) == pointer_before
        assert previous.directory.exists()
        assert report.release is not None
        assert not report.release.directory.exists()
        assert not h.runner.called("up")
        assert deploy_exit_code(report) == int(ErrorCode.BUILD_ERROR)

    def test_source_fetch_failure(self, tmp_path: Path) -> None:
        runner = MockRunner()
        runner.fail("fetch", returncode=128, stderr="fatal: couldn't find remote ref nope")
        h = _harness(tmp_path, healthy=_never, runner=runner)
        h.seed_previous()

        report = h.run("nope")

        assert report.outcome == DeployOutcome.ABORTED
        assert isinstance(report.error, StageError)
        assert report.transitions[-1] == S.ABORTED
        assert [r.source_ref for r in h.store.list_releases()] == ["v1"]
        assert not h.runner.called("compose", "build")
        assert deploy_exit_code(report) == int(ErrorCode.STAGE_ERROR)


class TestRollback:
    def test_both_paths_unhealthy_rolls_back(self, tmp_path: Path) -> None:
        runner = MockRunner()
        runner.respond("logs", stdout="app-1  | Error: cannot connect to database\n")
        previous_dir: list[Path] = []
        h = _harness(tmp_path, healthy=_after_rollback_to(previous_dir), runner=runner)
        previous = h.seed_previous()
        previous_dir.append(previous.directory)
        pointer_before = _pointer(h)

        report = h.run()

        assert report.outcome == DeployOutcome.ROLLED_BACK
        assert report.transitions[-2:] == (S.ROLLING_BACK, S.ROLLED_BACK)
        assert report.logs == ("app-1  | Error: cannot connect to database",)
        assert _pointer(h) == pointer_before
        assert previous.directory.exists()
        assert report.release is not None
        assert not report.release.directory.exists()
        assert report.reason is not None and "full rebuild" in report.reason
        assert deploy_exit_code(report) == int(ErrorCode.ROLLED_BACK)

        rollback_calls = [c for c in h.runner.calls if c.cwd == previous.directory]
        assert rollback_calls[-1].cmd[-3:] == ("up", "-d", "--force-recreate")

    def test_full_rebuild_command_failure_rolls_back(self, tmp_path: Path) -> None:
        runner = MockRunner()
        runner.fail("up", "--no-deps")
        runner.fail("--renew-anon-volumes", stderr="Error response from daemon")
        previous_dir: list[Path] = []
        h = _harness(tmp_path, healthy=_after_rollback_to(previous_dir), runner=runner)
        previous_dir.append(h.seed_previous().directory)

        report = h.run()

        assert report.outcome == DeployOutcome.ROLLED_BACK
        assert S.HEALTH_CHECK_FULL not in report.transitions

    def test_no_previous_release_fails(self, tmp_path: Path) -> None:
        h = _harness(tmp_path, healthy=_never)

        report = h.run()

        assert report.outcome == DeployOutcome.FAILED
        assert isinstance(report.error, RollbackError)
        assert not h.store.pointer_path.exists()
        assert h.store.list_releases() == []
        assert deploy_exit_code(report) == int(ErrorCode.ROLLBACK_FAILED)

    def test_rollback_command_failure_fails(self, tmp_path: Path) -> None:
        runner = MockRunner()
        h = _harness(tmp_path, healthy=_never, runner=runner)
        previous = h.seed_previous()
        runner.fail("build", str(previous.directory / "docker-compose.yml"), stderr="no space left")

        report = h.run()

        assert report.outcome == DeployOutcome.FAILED
        assert isinstance(report.error, RollbackError)
        assert "rollback" in report.error.message

    def test_unhealthy_after_rollback_fails(self, tmp_path: Path) -> None:
        h = _harness(tmp_path, healthy=_never)
        h.seed_previous()

        report = h.run()

        assert report.outcome == DeployOutcome.FAILED
        assert isinstance(report.error, RollbackError)
        assert "not healthy" in report.error.message


@dataclass
class _FnRunner:
    fn: Callable[..., Result[str, ProcessError]]

    def run(
        self,
        cmd: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> Result[str, ProcessError]:
        return self.fn(cmd, cwd=cwd, env=env, timeout=timeout)


class TestBuildCapacity:
    def test_swap_created_and_released_once(self, tmp_path: Path) -> None:
        h = _harness(tmp_path, healthy=_after_full, mem_kb=1024 * 1024)

        report = h.run()

        assert report.outcome == DeployOutcome.PROMOTED
        assert len(h.runner.matching("fallocate")) == 1
        assert len(h.runner.matching("swapoff")) == 1
        swapon = h.runner.lines.index(f"swapon {h.swap_path}")
        first_build = next(i for i, line in enumerate(h.runner.lines) if "build" in line.split())
        assert swapon < first_build

    @pytest.mark.parametrize(
        "healthy",
        [_never, _after_full],
        ids=["rollback", "full"],
    )
    def test_swap_released_on_every_outcome(
        self, tmp_path: Path, healthy: Callable[[MockRunner], bool]
    ) -> None:
        h = _harness(tmp_path, healthy=healthy, mem_kb=1024 * 1024)
        h.seed_previous()

        h.run()

        assert len(h.runner.matching("swapoff")) == 1

    def test_swap_released_when_build_aborts(self, tmp_path: Path) -> None:
        runner = MockRunner()
        runner.fail("compose", "build")
        h = _harness(tmp_path, healthy=_never, mem_kb=1024 * 1024, runner=runner)

        report = h.run()

        assert report.outcome == DeployOutcome.ABORTED
        assert len(h.runner.matching("swapoff")) == 1

    def test_preexisting_swap_is_untouched(self, tmp_path: Path) -> None:
        runner = MockRunner()
        swap_path = tmp_path / "swapfile"
        swap_path.write_bytes(b"\0")
        runner.respond("--show=NAME", stdout=f"{swap_path}\n")
        h = _harness(tmp_path, healthy=_after_partial, mem_kb=1024 * 1024, runner=runner)

        h.run()

        assert not h.runner.called("swapoff")
        assert not h.runner.called("fallocate")
        assert swap_path.exists()

    def test_swap_released_when_a_step_raises(self, tmp_path: Path) -> None:
        runner = MockRunner()
        inner = runner.run

        def run(
            cmd: Sequence[str],
            *,
            cwd: Path | None = None,
            env: Mapping[str, str] | None = None,
            timeout: float | None = None,
        ) -> Result[str, ProcessError]:
            if "up" in cmd:
                raise RuntimeError("docker socket vanished")
            return inner(cmd, cwd=cwd, env=env, timeout=timeout)

        h = _harness(tmp_path, healthy=_never, mem_kb=1024 * 1024, runner=runner)
        h.orchestrator._controller._runner = _FnRunner(run)  # type: ignore[attr-defined]

        with pytest.raises(RuntimeError):
            h.run()

        assert len(runner.matching("swapoff")) == 1


class TestProgress:
    def test_one_line_per_transition(self, tmp_path: Path) -> None:
        h = _harness(tmp_path, healthy=_after_partial)

        report = h.run()

        lines = h.console.progress_lines
        assert lines[0] == "deploy state=idle ref=main"
        assert lines[-1] == "deploy state=idle outcome=promoted"
        states = [line.split()[1].removeprefix("state=") for line in lines[1:-1]]
        assert states == [str(s) for s in report.transitions[1:]]
        assert report.release is not None
        assert f"release={report.release.id}" in lines[-2]
        assert "path=partial" in lines[-2]

    def test_fallback_reason_is_reported(self, tmp_path: Path) -> None:
        h = _harness(tmp_path, healthy=_after_full)

        h.run()

        [line] = [p for p in h.console.progress_lines if "state=full_rebuild" in p]
        assert "reason='partial update not healthy within 6s'" in line


class TestCleanup:
    def test_orphan_release_dirs_are_swept_before_staging(self, tmp_path: Path) -> None:
        h = _harness(tmp_path, healthy=_after_partial)
        previous = h.seed_previous()
        orphan = h.store.releases_dir / "20200101000000"
        orphan.mkdir()

        report = h.run()

        assert not orphan.exists()
        assert "swept orphan release 20200101000000" in report.cleanup
        assert report.previous is not None
        assert report.previous.id == previous.id

    def test_cleanup_failures_do_not_stop_the_deploy(self, tmp_path: Path) -> None:
        runner = MockRunner()
        runner.fail("network", "prune")
        h = _harness(tmp_path, healthy=_after_partial, runner=runner, cleanup=CleanupConfig())

        report = h.run()

        assert report.outcome == DeployOutcome.PROMOTED
        assert h.console.has_warning()
