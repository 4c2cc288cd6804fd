"""One build invocation from request to manifest.

`run_build` strings the components together in the order that keeps the
guarantees: every platform and command template is validated before any
lock or connection is opened; archives of the requested platforms are
removed; pre-existing locks are reported (never deleted); the fan-out runs
under a supervisor; the manifest covers whatever archives were produced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from binfarm.core.adapters.transports import transport_factory
from binfarm.core.artifacts import Hasher, ManifestEntry, collect_manifest, write_manifest
from binfarm.core.config import Settings
from binfarm.core.dispatch import RunResult, dispatch
from binfarm.core.jobs import JobResult, JobRunner, StateCallback, render_build_command
from binfarm.core.locks import LockManager, LockReport, LockState, make_lock_manager
from binfarm.core.registry import Registry, Target
from binfarm.core.supervisor import Supervisor

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildReport:
    """
    Everything one invocation produced.

    Attributes:
        run: Per-platform results in request order.
        manifest: Checksums of the archives produced, sorted by name.
        exit_status: Process exit status for the invocation.
        cancelled: True if the run was torn down by a signal or an error.
        existing_locks: Locks found held or stale at startup.
    """

    run: RunResult
    manifest: list[ManifestEntry]
    exit_status: int
    cancelled: bool = False
    existing_locks: list[LockReport] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def make_locks(settings: Settings) -> LockManager:
    return make_lock_manager(
        settings.lock_strategy,
        settings.layout().locks_dir,
        poll_interval=settings.poll_interval,
        heartbeat_interval=settings.heartbeat_interval,
        stale_after=settings.stale_after,
    )


def report_existing_locks(locks: LockManager) -> list[LockReport]:
    """Warn about held or stale locks, and about lock files of the other strategy."""
    busy = [r for r in locks.scan() if r.state != LockState.FREE]
    for report in busy:
        age = f", last heartbeat {report.age:.0f}s ago" if report.age is not None else ""
        LOGGER.warning(
            "Machine %s is already locked (%s%s): %s",
            report.machine,
            report.state.value,
            age,
            report.path,
        )
    for path in locks.foreign_lock_files():
        LOGGER.warning(
            "Ignoring %s: it belongs to the other lock strategy. Make sure no build "
            "using it is still running.",
            path,
        )
    return busy


def run_build(
    settings: Settings,
    registry: Registry,
    platforms: Iterable[str] = (),
    *,
    ref: str | None = None,
    locks: LockManager | None = None,
    hasher: Hasher | None = None,
    supervisor: Supervisor | None = None,
    on_start: Callable[[list[Target]], None] | None = None,
    on_state: StateCallback | None = None,
    on_complete: Callable[[JobResult], None] | None = None,
) -> BuildReport:
    """
    Build the requested platforms (all registered ones when empty).

    Raises:
        ConfigurationError: Before any job starts, for unknown platforms or a
            bad command template.
    """
    targets = registry.resolve_all(platforms)
    locks = locks or make_locks(settings)
    layout = settings.layout()

    for target in targets:
        render_build_command(
            settings.build_command,
            target,
            ref=ref or settings.ref,
            artifact=settings.artifact_name(target.id),
            remote_dir=settings.remote_dir,
        )

    layout.prepare(settings.artifact_name(t.id) for t in targets)
    existing = report_existing_locks(locks)

    if on_start is not None:
        on_start(targets)

    supervisor = supervisor or Supervisor()
    with supervisor:
        transports = transport_factory(
            settings,
            spawn=supervisor.spawn,
            cancelled=supervisor.cancelled,
            local_workdir=settings.local_workdir,
        )
        runner = JobRunner(
            settings,
            locks,
            transports,
            cancelled=supervisor.cancelled,
            on_state=on_state,
        )
        run = dispatch(
            runner,
            targets,
            ref=ref,
            supervisor=supervisor,
            on_complete=on_complete,
        )

    cancelled = supervisor.cancelled.is_set()
    manifest: list[ManifestEntry] = []
    if not cancelled:
        manifest = collect_manifest(layout, [t.id for t in targets], settings.artifact_name, hasher)
        write_manifest(manifest, layout.manifest_path)

    return BuildReport(
        run=run,
        manifest=manifest,
        exit_status=supervisor.exit_status(run.ok),
        cancelled=cancelled,
        existing_locks=existing,
    )
