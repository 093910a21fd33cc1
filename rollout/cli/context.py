from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import typer

from rollout.core.config import DEFAULT_CONFIG_NAME, DeployConfig, load_config_or_default
from rollout.core.errors import ErrorCode
from rollout.core.result import Err
from rollout.output.console import ConsoleProtocol, RichConsole
from rollout.platform.process import CommandRunner, SubprocessRunner


@dataclass(frozen=True, slots=True)
class CLIContext:
    config: DeployConfig
    config_path: Path
    console: ConsoleProtocol
    runner: CommandRunner = field(default_factory=SubprocessRunner)


def build_context(config_path: Path | None = None) -> CLIContext:
    path = config_path if config_path is not None else Path.cwd() / DEFAULT_CONFIG_NAME
    path = path.expanduser()

    # An explicit --config must exist; the default location is optional.
    if config_path is not None and not path.is_file():
        typer.echo(f"error: config file not found: {path}", err=True)
        raise typer.Exit(code=int(ErrorCode.USER_ERROR))

    config_result = load_config_or_default(path)
    if isinstance(config_result, Err):
        typer.echo(f"error: {config_result.error.message}", err=True)
        raise typer.Exit(code=int(ErrorCode.USER_ERROR))

    return CLIContext(
        config=config_result.value,
        config_path=path,
        console=RichConsole(),
    )
