"""The platforms command: show the registry."""

from __future__ import annotations

from pathlib import Path

from binfarm.cli.common.context import build_app_context, configure_logging
from binfarm.cli.common.exits import warn_exit
from binfarm.cli.common.options import RegistryOpt, RootOpt, VerboseOpt
from binfarm.cli.common.output import out


def platforms(
    root: Path | None = RootOpt,
    registry: Path | None = RegistryOpt,
    verbose: bool = VerboseOpt,
):
    """List registered platforms with their machine and protocol."""
    configure_logging(verbose)
    appctx = build_app_context(root=root, registry=registry)
    targets = appctx.registry.targets()

    if not targets:
        warn_exit("No platforms registered", code=0)

    machines = {t.machine for t in targets}
    out.info(f"Platforms: {len(targets)} on {len(machines)} machine(s)")
    out.targets_table(targets, title="Registered platforms")
