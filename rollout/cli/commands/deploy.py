"""Deploy command - stage, build, verify and promote a release."""

from __future__ import annotations

from pathlib import Path

import typer

from rollout.cli.commands._helpers import apply_overrides, exit_with_code, require_tools
from rollout.cli.context import build_context
from rollout.core.errors import ErrorCode
from rollout.core.result import Err
from rollout.output.errors import deploy_exit_code, print_deploy_error, print_deploy_report
from rollout.services.errors import LockHeld
from rollout.services.orchestrator import Orchestrator


def deploy(
    ref: str | None = typer.Argument(
        None, help="Branch, tag or commit to deploy (default: source.branch)", show_default=False
    ),
    config: Path | None = typer.Option(
        None, "--config", help="Config file (default: ./rollout.toml)", show_default=False
    ),
    root: Path | None = typer.Option(
        None, "--root", help="Release root directory", show_default=False
    ),
    port: int | None = typer.Option(None, "--port", help="Health check port", show_default=False),
    partial_timeout: float | None = typer.Option(
        None, "--partial-timeout", help="Seconds to wait after a partial update", show_default=False
    ),
    full_timeout: float | None = typer.Option(
        None, "--full-timeout", help="Seconds to wait after a full rebuild", show_default=False
    ),
    poll_interval: float | None = typer.Option(
        None, "--poll-interval", help="Seconds between health probes", show_default=False
    ),
) -> None:
    """Deploy a new release, falling back to a full rebuild or rolling back."""
    ctx = build_context(config)
    deploy_config = apply_overrides(
        ctx,
        root=root,
        port=port,
        partial_timeout=partial_timeout,
        full_timeout=full_timeout,
        poll_interval=poll_interval,
    )
    require_tools(ctx, "git", "docker")

    orchestrator = Orchestrator.from_config(deploy_config, console=ctx.console, runner=ctx.runner)
    lock = orchestrator.store.lock()
    if isinstance(lock, Err):
        print_deploy_error(lock.error, ctx.console)
        if isinstance(lock.error, LockHeld):
            exit_with_code(int(ErrorCode.ENV_ERROR))
        exit_with_code(int(ErrorCode.STAGE_ERROR))

    source_ref = ref or deploy_config.source.branch
    ctx.console.header(f"Deploying {source_ref} to {deploy_config.root}")
    with lock.value:
        report = orchestrator.run(source_ref)

    print_deploy_report(report, ctx.console)
    code = deploy_exit_code(report)
    if code != int(ErrorCode.OK):
        exit_with_code(code)
