"""Terminal UI utilities for picking platforms."""

from __future__ import annotations

import questionary

from binfarm.cli.common.tui_style import QUESTIONARY_STYLE_SELECT
from binfarm.core.registry import Target


def _platform_choice_title(target: Target, *, id_width: int) -> str:
    """Format one choice as `<platform>  (machine: <machine>)` with an aligned machine column."""
    return f"{target.id.ljust(id_width)}  (machine: {target.machine})"


def select_platforms(targets: list[Target]) -> list[Target]:
    """Display a checkbox prompt to select platforms to build.

    Args:
        targets: Registered targets to choose from.

    Returns:
        The selected targets, or an empty list if none selected.
    """
    id_width = max((len(t.id) for t in targets), default=0)

    choices = [
        questionary.Choice(
            title=_platform_choice_title(target, id_width=id_width),
            value=target,
        )
        for target in targets
    ]

    return (
        questionary.checkbox(
            "Select platforms:",
            choices=choices,
            style=QUESTIONARY_STYLE_SELECT,
        ).ask()
        or []
    )
