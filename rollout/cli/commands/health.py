"""Health command - probe the service endpoint once or until healthy."""

from __future__ import annotations

from pathlib import Path

import typer

from rollout.cli.commands._helpers import apply_overrides, exit_with_code
from rollout.cli.context import build_context
from rollout.core.errors import ErrorCode
from rollout.output.console import Style
from rollout.services.health import HealthMonitor, UrllibProbe


def health(
    timeout: float | None = typer.Option(
        None, "--timeout", help="Keep polling for this many seconds", show_default=False
    ),
    config: Path | None = typer.Option(
        None, "--config", help="Config file (default: ./rollout.toml)", show_default=False
    ),
    port: int | None = typer.Option(None, "--port", help="Health check port", show_default=False),
) -> None:
    """Check the health endpoint. Exits non-zero if it is not healthy."""
    ctx = build_context(config)
    deploy_config = apply_overrides(ctx, port=port)
    settings = deploy_config.health

    monitor = HealthMonitor(
        console=ctx.console,
        probe=UrllibProbe(),
        request_timeout=settings.request_timeout,
    )

    if timeout is not None:
        if timeout <= 0:
            ctx.console.error("--timeout must be positive")
            exit_with_code(int(ErrorCode.USER_ERROR))
        if not monitor.wait_healthy(settings.endpoint, timeout, settings.poll_interval):
            exit_with_code(int(ErrorCode.ENV_ERROR))
        return

    result = monitor.probe_once(settings.endpoint)
    if result.healthy:
        ctx.console.success(f"{settings.endpoint}: HTTP {result.status_code}")
        ctx.console.print(f"{result.elapsed_ms:.0f}ms", Style.DIM)
        return

    if result.reachable:
        ctx.console.error(f"{settings.endpoint}: HTTP {result.status_code}")
    else:
        ctx.console.error(f"{settings.endpoint}: unreachable")
    exit_with_code(int(ErrorCode.ENV_ERROR))
