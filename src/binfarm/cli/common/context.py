"""Application context management for the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from rich.logging import RichHandler

from binfarm.cli.common.exits import EXIT_USAGE, die
from binfarm.cli.common.output import err_console
from binfarm.core.build import make_locks
from binfarm.core.config import Settings
from binfarm.core.errors import ConfigurationError
from binfarm.core.locks import LockManager
from binfarm.core.registry import Registry


@dataclass
class BuildAppContext:
    """Application context holding resolved settings, the registry and the lock manager."""

    settings: Settings
    registry: Registry
    locks: LockManager


def configure_logging(verbose: bool = False) -> None:
    """Send log records to stderr through rich; DEBUG with --verbose, WARNING otherwise."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=verbose, rich_tracebacks=True)],
        force=True,
    )
    logging.getLogger("filelock").setLevel(logging.INFO)


def build_app_context(
    *,
    root: Path | None = None,
    registry: Path | None = None,
    strategy: str | None = None,
    poll_interval: float | None = None,
) -> BuildAppContext:
    """Build and return the application context from CLI options and the environment.

    Options left as None fall back to `BINFARM_*` variables, then defaults.
    Configuration errors exit with status 2 before anything is touched.
    """
    try:
        settings = Settings.from_env(
            root=root,
            registry_path=registry,
            lock_strategy=strategy.lower() if strategy else None,
            poll_interval=poll_interval,
        )
        reg = settings.load_registry()
        locks = make_locks(settings)
    except ConfigurationError as exc:
        die(str(exc), code=EXIT_USAGE)
    return BuildAppContext(settings=settings, registry=reg, locks=locks)
