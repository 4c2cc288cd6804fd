"""The build command: fan a build out to every requested platform."""

from __future__ import annotations

import contextlib
from pathlib import Path

import typer

from binfarm.cli.common.context import build_app_context, configure_logging
from binfarm.cli.common.exits import EXIT_USAGE, die, exit_from_exc, warn_exit
from binfarm.cli.common.options import (
    PlatformsArg,
    PollIntervalOpt,
    ProgressOpt,
    RefOpt,
    RegistryOpt,
    RootOpt,
    SelectOpt,
    StrategyOpt,
    VerboseOpt,
)
from binfarm.cli.common.output import console, out
from binfarm.cli.common.progress import BuildProgress
from binfarm.cli.tui import select_platforms as tui_select_platforms
from binfarm.core.build import run_build
from binfarm.core.errors import ConfigurationError
from binfarm.core.jobs import JobResult, JobState
from binfarm.core.registry import Target
from binfarm.core.supervisor import EXIT_INTERNAL


def build(
    platforms: list[str] | None = PlatformsArg,
    ref: str | None = RefOpt,
    select: bool = SelectOpt,
    root: Path | None = RootOpt,
    registry: Path | None = RegistryOpt,
    strategy: str | None = StrategyOpt,
    poll_interval: float | None = PollIntervalOpt,
    progress: bool = ProgressOpt,
    verbose: bool = VerboseOpt,
):
    """
    Build PLATFORMS concurrently, one job per platform, at most one job per machine.
    """
    configure_logging(verbose)
    appctx = build_app_context(
        root=root, registry=registry, strategy=strategy, poll_interval=poll_interval
    )
    settings = appctx.settings
    requested = list(platforms or [])

    if select:
        try:
            pool = appctx.registry.resolve_all(requested)
        except ConfigurationError as exc:
            exit_from_exc(exc, message=str(exc), code=EXIT_USAGE)
        picked = tui_select_platforms(pool)
        if not picked:
            warn_exit("No platforms selected", code=0)
        requested = [t.id for t in picked]

    live = progress and console.is_terminal
    display: BuildProgress | None = None
    stack = contextlib.ExitStack()

    def on_start(targets: list[Target]) -> None:
        nonlocal display
        out.info(
            f"Building {len(targets)} platform(s) at {ref or settings.ref} "
            f"into {settings.layout().archives_dir}"
        )
        if live:
            display = stack.enter_context(BuildProgress(targets, console=console))

    def on_state(target: Target, state: JobState) -> None:
        if display is not None:
            display.update(target, state)

    def on_complete(result: JobResult) -> None:
        if display is not None:
            display.complete(result)
        out.platform_status(result)

    with stack:
        try:
            report = run_build(
                settings,
                appctx.registry,
                requested,
                ref=ref,
                locks=appctx.locks,
                on_start=on_start,
                on_state=on_state,
                on_complete=on_complete,
            )
        except ConfigurationError as exc:
            exit_from_exc(exc, message=str(exc), code=EXIT_USAGE)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            exit_from_exc(exc, message=f"Internal error: {exc}", code=EXIT_INTERNAL)

    out.failure_report(report.run.failures)

    if report.cancelled:
        die("Build interrupted; no manifest written", code=report.exit_status)

    if report.manifest:
        out.header("Manifest")
        out.manifest(report.manifest)

    if report.ok:
        out.success(f"All {len(report.run.results)} platform(s) built")
        return
    raise typer.Exit(report.exit_status)
