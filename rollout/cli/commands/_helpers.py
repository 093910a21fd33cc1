"""Shared helpers for CLI commands."""

from __future__ import annotations

import shutil
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

import typer

from rollout.core.config import DeployConfig
from rollout.core.errors import ErrorCode
from rollout.output.console import Style

if TYPE_CHECKING:
    from rollout.cli.context import CLIContext


_TOOL_HINTS = {
    "git": "install git (apt install git)",
    "docker": "install docker engine with the compose plugin",
}


def require_tools(ctx: CLIContext, *tools: str) -> None:
    """Exit with ENV_ERROR if any external tool is not on PATH."""
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if not missing:
        return
    for tool in missing:
        ctx.console.error(f"{tool}: missing")
        hint = _TOOL_HINTS.get(tool)
        if hint:
            ctx.console.print(f"hint: {hint}", Style.DIM)
    raise typer.Exit(code=int(ErrorCode.ENV_ERROR))


def apply_overrides(
    ctx: CLIContext,
    *,
    root: Path | None = None,
    port: int | None = None,
    partial_timeout: float | None = None,
    full_timeout: float | None = None,
    poll_interval: float | None = None,
) -> DeployConfig:
    """Layer command-line options over the loaded config.

    Exits with USER_ERROR if the combined config is invalid.
    """
    config = ctx.config
    if root is not None:
        config = replace(config, root=root.expanduser())

    health = config.health
    if port is not None:
        health = replace(health, port=port)
    if partial_timeout is not None:
        health = replace(health, partial_timeout=partial_timeout)
    if full_timeout is not None:
        health = replace(health, full_timeout=full_timeout)
    if poll_interval is not None:
        health = replace(health, poll_interval=poll_interval)
    config = replace(config, health=health)

    try:
        config.validate()
    except ValueError as e:
        ctx.console.error(f"invalid option: {e}")
        exit_with_code(int(ErrorCode.USER_ERROR))
    return config


def exit_with_code(code: int) -> NoReturn:
    """Exit with given code. Explicit helper for clarity."""
    raise typer.Exit(code=code)
