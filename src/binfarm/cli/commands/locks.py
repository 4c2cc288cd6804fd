"""Commands for inspecting and clearing machine locks."""

from __future__ import annotations

from pathlib import Path

import typer

from binfarm.cli.common.context import BuildAppContext, build_app_context, configure_logging
from binfarm.cli.common.exits import exit_from_exc, ok_exit, warn_exit
from binfarm.cli.common.options import RootOpt, StrategyOpt, VerboseOpt, YesOpt
from binfarm.cli.common.output import out
from binfarm.core.locks import LockState

locks_app = typer.Typer(
    help="Inspect machine locks (lists them when no subcommand is given).",
    no_args_is_help=False,
    invoke_without_command=True,
)


@locks_app.callback()
def _init(
    ctx: typer.Context,
    root: Path | None = RootOpt,
    strategy: str | None = StrategyOpt,
    verbose: bool = VerboseOpt,
):
    """Show lock files under the build root and whether they are held."""
    configure_logging(verbose)
    ctx.obj = build_app_context(root=root, strategy=strategy)
    if ctx.invoked_subcommand is None:
        _list(ctx.obj)


def _list(appctx: BuildAppContext) -> None:
    locks = appctx.locks
    reports = locks.scan()
    if not reports:
        ok_exit(f"No lock files in {locks.lock_dir}")

    busy = [r for r in reports if r.state != LockState.FREE]
    out.info(f"Lock files: {len(reports)} ({len(busy)} held or stale)")
    out.locks_table(reports, title=f"Locks ({locks.suffix})")


@locks_app.command()
def clear(
    ctx: typer.Context,
    machine: str = typer.Argument(..., help="Machine whose lock file to remove"),
    yes: bool = YesOpt,
):
    """
    Remove a machine's lock file.

    Only do this when the holder is known to be gone: removing a lock that a
    running build holds lets a second build onto the same machine.
    """
    appctx: BuildAppContext = ctx.obj
    locks = appctx.locks
    path = locks.lock_path(machine)

    report = next((r for r in locks.scan() if r.path == path), None)
    if report is None:
        warn_exit(f"No lock file for {machine} ({path})", code=1)

    out.kv({"machine": machine, "path": path, "state": report.state.value})
    if report.state == LockState.HELD:
        out.warn(f"{machine} is locked by a live process")

    if not yes and not out.confirm(f"Remove lock file {path}?"):
        ok_exit("Cancelled")

    try:
        removed = locks.clear(machine)
    except OSError as exc:
        exit_from_exc(exc, message=f"Cannot remove {path}: {exc}", code=1)

    if not removed:
        warn_exit(f"{path} disappeared before it could be removed", code=0)
    out.success(f"Removed {path}")
