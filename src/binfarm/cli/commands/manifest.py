"""The manifest command: checksum the archives already on disk."""

from __future__ import annotations

from pathlib import Path

import typer

from binfarm.cli.common.context import build_app_context, configure_logging
from binfarm.cli.common.exits import EXIT_USAGE, exit_from_exc, warn_exit
from binfarm.cli.common.options import PlatformsArg, RegistryOpt, RootOpt, VerboseOpt
from binfarm.cli.common.output import out
from binfarm.core.artifacts import collect_manifest, write_manifest
from binfarm.core.errors import ConfigurationError


WriteOpt = typer.Option(
    False,
    "--write",
    help="Also rewrite archives/MANIFEST",
)


def manifest(
    platforms: list[str] | None = PlatformsArg,
    root: Path | None = RootOpt,
    registry: Path | None = RegistryOpt,
    write: bool = WriteOpt,
    verbose: bool = VerboseOpt,
):
    """Recompute the manifest for existing archives of PLATFORMS (default: all)."""
    configure_logging(verbose)
    appctx = build_app_context(root=root, registry=registry)
    settings = appctx.settings

    try:
        targets = appctx.registry.resolve_all(platforms or [])
    except ConfigurationError as exc:
        exit_from_exc(exc, message=str(exc), code=EXIT_USAGE)

    layout = settings.layout()
    try:
        entries = collect_manifest(layout, [t.id for t in targets], settings.artifact_name)
    except OSError as exc:
        exit_from_exc(exc, message=f"Cannot read archives: {exc}", code=1)

    if not entries:
        warn_exit(f"No archives found in {layout.archives_dir}", code=0)

    out.manifest(entries)

    if write:
        try:
            write_manifest(entries, layout.manifest_path)
        except OSError as exc:
            exit_from_exc(exc, message=f"Cannot write {layout.manifest_path}: {exc}", code=1)
        out.success(f"Wrote {layout.manifest_path}")
