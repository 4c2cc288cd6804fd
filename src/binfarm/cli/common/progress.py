"""Live per-platform progress for the build command."""

from __future__ import annotations

import threading
from typing import Any

from rich.console import Console, Group
from rich.live import Live
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from binfarm.core.jobs import JobResult, JobState
from binfarm.core.registry import Target

_STYLES = {
    JobState.PENDING: "dim",
    JobState.WAITING: "yellow",
    JobState.RUNNING: "cyan",
    JobState.SUCCEEDED: "green",
    JobState.FAILED: "red",
}


def _style_for(state: JobState) -> str:
    return _STYLES.get(state, "dim")


class BuildProgress:
    """
    Rich live display with one row per platform plus an overall bar.

    `update` is the job runner's state callback and is called from worker
    threads; `complete` is called on the main thread as results arrive.
    Rows stop their spinner and elapsed timer once the job is terminal.
    """

    def __init__(self, targets: list[Target], console: Console | None = None):
        self.console = console
        self._lock = threading.Lock()
        self._failures = 0

        self.overall = Progress(
            TextColumn("[bold]Overall[/]"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("failures=[bold red]{task.fields[failures]}[/]"),
            TimeElapsedColumn(),
            console=console,
        )
        self.per_platform = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.fields[platform]}[/]"),
            TextColumn("[dim]{task.fields[machine]}[/]"),
            TextColumn(
                "[{task.fields[style]}]{task.fields[state]}[/{task.fields[style]}]"
            ),
            TimeElapsedColumn(),
            console=console,
        )

        self._overall_id = self.overall.add_task(
            "overall", total=max(len(targets), 1), failures=0
        )
        width = max((len(t.id) for t in targets), default=0)
        mwidth = max((len(t.machine) for t in targets), default=0)
        self._rows: dict[str, TaskID] = {}
        for target in targets:
            self._rows[target.id] = self.per_platform.add_task(
                "",
                total=1,  # finite => elapsed stops when completed
                platform=target.id.ljust(width),
                machine=target.machine.ljust(mwidth),
                state=JobState.PENDING.value,
                style=_style_for(JobState.PENDING),
            )

        kwargs: dict[str, Any] = {"refresh_per_second": 10, "transient": True}
        if console is not None:
            kwargs["console"] = console
        self._live = Live(Group(self.overall, self.per_platform), **kwargs)

    def update(self, target: Target, state: JobState) -> None:
        task_id = self._rows.get(target.id)
        if task_id is None or state.terminal:
            return
        with self._lock:
            self.per_platform.update(task_id, state=state.value, style=_style_for(state))

    def complete(self, result: JobResult) -> None:
        task_id = self._rows.get(result.platform)
        if task_id is None:
            return
        label = "done" if result.ok else f"failed ({result.error_kind or result.code})"
        with self._lock:
            self.per_platform.update(
                task_id,
                state=label,
                style=_style_for(result.state),
                completed=1,
            )
            if not result.ok:
                self._failures += 1
                self.overall.update(self._overall_id, failures=self._failures)
            self.overall.advance(self._overall_id, 1)

    def __enter__(self) -> BuildProgress:
        self._live.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._live.__exit__(exc_type, exc, tb)
