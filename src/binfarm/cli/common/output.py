"""Output formatting utilities for the CLI."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import questionary
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

from binfarm.cli.common.tui_style import QUESTIONARY_STYLE_CONFIRM

_THEME = Theme(
    {
        "ok": "bold green",
        "warn": "yellow",
        "err": "bold red",
        "title": "bold cyan",
        "meta": "dim",
    }
)

console = Console(theme=_THEME)
err_console = Console(theme=_THEME, stderr=True)


@dataclass(frozen=True)
class Out:
    """Output formatter for CLI messages and tables."""

    def _q_try(self, fn, *args, **kwargs):
        """Call questionary prompts and drop unsupported kwargs on older versions."""
        try:
            return fn(*args, **kwargs)
        except TypeError:
            for k in ("pointer", "auto_enter"):
                kwargs.pop(k, None)
            return fn(*args, **kwargs)

    def _q(self, message: str) -> str:
        """Prefix Questionary prompts to be binfarm consistent."""
        return f"[binfarm] {message}"

    def info(self, msg: str) -> None:
        """Print an info message."""
        console.print(f"[title]›[/] {msg}")

    def success(self, msg: str) -> None:
        """Print a success message."""
        console.print(f"[ok]✓[/] {msg}")

    def warn(self, msg: str) -> None:
        """Print a warning message."""
        console.print(f"[warn]⚠[/] {msg}")

    def error(self, msg: str) -> None:
        """Print an error message."""
        console.print(f"[err]✗[/] {msg}")

    def header(self, title: str) -> None:
        """Print a header message."""
        console.print(f"[title]{title}[/]")

    def kv(self, items: Mapping[str, Any]) -> None:
        """Print key-value pairs."""
        for k, v in items.items():
            console.print(f"[meta]{k}[/]: {escape(str(v))}")

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """
        Ask the user for confirmation using a standardized Questionary prompt.

        Args:
            message: Confirmation question shown to the user.
            default: Default answer if the user just presses enter.

        Returns:
            True if the user confirms, False otherwise.
        """
        # Print instruction on its own line (Questionary renders `instruction=...` inline,
        # which looks odd next to the final echoed answer).
        console.print("[meta]Use y/n then Enter[/]")

        prompt = self._q_try(
            questionary.confirm,
            self._q(message),
            default=default,
            style=QUESTIONARY_STYLE_CONFIRM,
            qmark="✦",
            auto_enter=False,
            pointer="❯",  # dropped automatically on older Questionary versions
        )
        return bool(prompt.ask())

    def platform_status(self, result: Any) -> None:
        """
        Print the one-line outcome of a finished job: `<platform> => ok|error`.

        Expects objects with .platform and .ok (like binfarm.core.jobs.JobResult)
        """
        word = "[ok]ok[/]" if result.ok else "[err]error[/]"
        console.print(f"{escape(result.platform)} => {word}", soft_wrap=True)

    def failure_report(self, failures: Iterable[Any]) -> None:
        """
        List failed platforms with the reason and the log to read.

        Expects objects with .platform .error_kind .detail .log_path
        """
        failures = list(failures)
        if not failures:
            return
        self.header(f"Failed platforms ({len(failures)})")
        for r in failures:
            kind = r.error_kind or "Error"
            console.print(
                f"[err]✗[/] {escape(r.platform)}: {escape(kind)}: {escape(r.detail)}",
                soft_wrap=True,
            )
            console.print(f"    [meta]log:[/] {escape(str(r.log_path))}", soft_wrap=True)

    def manifest(self, entries: Iterable[Any]) -> None:
        """
        Print manifest lines exactly as written to the MANIFEST file.

        Expects objects with .line() (like binfarm.core.artifacts.ManifestEntry)
        """
        for entry in entries:
            console.print(escape(entry.line()), soft_wrap=True, highlight=False)

    def targets_table(self, targets: Iterable[Any], title: str = "Platforms") -> None:
        """
        Expects objects with .id .machine .protocol .cpu (like binfarm.core.registry.Target)
        """
        t = Table(title=title, show_lines=False)
        t.add_column("Platform", style="ok", no_wrap=True)
        t.add_column("Machine")
        t.add_column("Protocol", style="meta")
        t.add_column("CPU", style="meta")

        for target in targets:
            t.add_row(target.id, target.machine, target.protocol, target.cpu)

        console.print(t)

    def locks_table(self, reports: Iterable[Any], title: str = "Locks") -> None:
        """
        Expects objects with .machine .state .age .path (like binfarm.core.locks.LockReport)
        """
        t = Table(title=title, show_lines=False)
        t.add_column("Machine", style="ok", no_wrap=True)
        t.add_column("State")
        t.add_column("Age", style="meta", justify="right")
        t.add_column("Path", style="meta")

        for r in reports:
            state = r.state.value if hasattr(r.state, "value") else str(r.state)
            style = {"held": "warn", "stale": "err"}.get(state, "meta")
            age = f"{r.age:.0f}s" if r.age is not None else ""
            t.add_row(r.machine, f"[{style}]{state}[/{style}]", age, str(r.path))

        console.print(t)


out = Out()
