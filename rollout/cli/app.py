from __future__ import annotations

import typer

from rollout import __version__
from rollout.cli.commands.deploy import deploy
from rollout.cli.commands.health import health
from rollout.cli.commands.releases import releases_app


app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Single-host release orchestration for docker compose services.",
)


# Commands
app.command()(deploy)
app.command()(health)

# Sub-apps
app.add_typer(releases_app, name="releases")


@app.callback(invoke_without_command=True)
def _main(  # pyright: ignore[reportUnusedFunction]
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
) -> None:
    if version:
        typer.echo(__version__)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=0)


def main() -> None:
    app()
