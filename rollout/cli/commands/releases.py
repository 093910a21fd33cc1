from __future__ import annotations

from pathlib import Path

import typer

from rollout.cli.commands._helpers import apply_overrides, exit_with_code
from rollout.cli.context import CLIContext, build_context
from rollout.core.errors import ErrorCode
from rollout.core.result import Err
from rollout.output.console import Style
from rollout.output.errors import print_deploy_error
from rollout.services.releases import ReleaseStore


releases_app = typer.Typer(
    no_args_is_help=True,
    help="Inspect and tidy release directories.",
    add_completion=False,
)


def _store(ctx: CLIContext, root: Path | None) -> ReleaseStore:
    config = apply_overrides(ctx, root=root)
    return ReleaseStore(config.root, console=ctx.console)


@releases_app.command("list")
def list_releases(
    config: Path | None = typer.Option(
        None, "--config", help="Config file (default: ./rollout.toml)", show_default=False
    ),
    root: Path | None = typer.Option(
        None, "--root", help="Release root directory", show_default=False
    ),
) -> None:
    """List release directories, marking the active one."""
    ctx = build_context(config)
    store = _store(ctx, root)

    releases = store.list_releases()
    if not releases:
        ctx.console.print(f"No releases under {store.releases_dir}", Style.DIM)
        return

    active = store.active()
    serving = store.serving()
    active_id = active.id if active else None
    serving_id = serving.id if serving else None
    ctx.console.header(f"Releases ({store.root})")
    for release in releases:
        marker = " "
        if release.id == serving_id:
            # "!" marks a serving release that current does not point to
            marker = "*" if release.id == active_id else "!"
        commit = release.short_commit
        line = f"{marker} {release.id}  {release.status:<9}  {release.source_ref}  {commit}"
        ctx.console.print(line, Style.BOLD if marker != " " else Style.DEFAULT)


@releases_app.command("sweep")
def sweep(
    yes: bool = typer.Option(False, "--yes", "-y", help="Execute (default is dry-run)"),
    config: Path | None = typer.Option(
        None, "--config", help="Config file (default: ./rollout.toml)", show_default=False
    ),
    root: Path | None = typer.Option(
        None, "--root", help="Release root directory", show_default=False
    ),
) -> None:
    """Remove release directories that are not active. Dry-run by default."""
    ctx = build_context(config)
    store = _store(ctx, root)

    orphans = store.orphans()
    if not orphans:
        ctx.console.print("Nothing to sweep", Style.DIM)
        return

    ctx.console.header("EXECUTE" if yes else "DRY-RUN")
    for directory in orphans:
        ctx.console.print(f"  {directory}", Style.DIM)

    if not yes:
        ctx.console.print("Use -y to execute", Style.DIM)
        return

    lock = store.lock()
    if isinstance(lock, Err):
        print_deploy_error(lock.error, ctx.console)
        exit_with_code(int(ErrorCode.ENV_ERROR))

    with lock.value:
        removed = store.sweep()
    ctx.console.success(f"Removed {len(removed)} release directories")
