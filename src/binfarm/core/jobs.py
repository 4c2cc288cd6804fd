"""Build jobs: one platform built on its machine.

This module defines the job data structures (JobState, JobResult), the
Transport interface the job depends on, and the JobRunner that executes one
platform's build: lock the machine, run the remote build command with its
output streamed into the platform's log, pull the artifact back, repack it
into the archives directory, release the lock.

Every failure scoped to the job is converted into a failed JobResult here,
so one platform's failure never disturbs its siblings. The error kind and
its detail are written to the job's log.
"""

from __future__ import annotations

import contextlib
import logging
import posixpath
import shlex
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Callable, Protocol

from binfarm.core.artifacts import repack_archive
from binfarm.core.config import Settings
from binfarm.core.errors import ConfigurationError, JobError, LocalIOError, RemoteBuildError
from binfarm.core.locks import LockManager
from binfarm.core.registry import Target

LOGGER = logging.getLogger(__name__)


class JobState(str, Enum):
    """
    Lifecycle of a build job.

    Values:
        PENDING: The job has been created but has not started yet.
        WAITING: The job is blocked on its machine's lock.
        RUNNING: The job holds the lock and is building.
        SUCCEEDED: The archive is in place.
        FAILED: The job failed; see the result's code and log.
    """

    PENDING = "pending"
    WAITING = "waiting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


@dataclass(frozen=True)
class JobResult:
    """
    Outcome of one platform's job.

    Attributes:
        platform: Platform identifier.
        machine: Machine the job ran (or waited) on.
        state: SUCCEEDED or FAILED.
        code: Exit status; 0 on success.
        detail: Human-readable reason for a failure.
        log_path: The platform's log file.
        archive: Path of the produced archive, on success.
        error_kind: Name of the error class that failed the job.
        duration: Wall-clock seconds spent in the job.
    """

    platform: str
    machine: str
    state: JobState
    log_path: Path
    code: int = 0
    detail: str = ""
    archive: Path | None = None
    error_kind: str | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state == JobState.SUCCEEDED


class Transport(Protocol):
    """Interface for running the build on a machine and pulling its output."""

    def execute(self, command: str, output: IO[bytes] | int) -> int:
        """Run a shell command on the machine, streaming combined output; return its exit status."""
        ...

    def transfer(self, remote_path: str, dest_dir: Path, output: IO[bytes] | int) -> Path:
        """Copy a file from the machine into a local directory and return its path."""
        ...


StateCallback = Callable[[Target, JobState], None]


def render_build_command(
    template: str,
    target: Target,
    *,
    ref: str,
    artifact: str,
    remote_dir: str,
) -> str:
    """
    Fill the build command template for a target.

    Values are shell-quoted. Available placeholders: `{ref}`, `{kernel}`,
    `{arch}`, `{cpu}`, `{platform}`, `{artifact}`, `{remote_dir}`.

    Raises:
        ConfigurationError: If the template uses an unknown placeholder.
    """
    values = {
        "ref": ref,
        "kernel": target.platform.kernel,
        "arch": target.platform.arch,
        "cpu": target.cpu,
        "platform": target.id,
        "artifact": artifact,
        "remote_dir": remote_dir,
    }
    try:
        return template.format(**{k: shlex.quote(v) for k, v in values.items()})
    except (KeyError, IndexError, ValueError) as exc:
        raise ConfigurationError(f"Invalid build command template: {exc!r}") from exc


def _write(log: IO[bytes], text: str) -> None:
    log.write(text.encode())
    log.flush()


class JobRunner:
    """Executes one platform's build; safe to call from many threads at once."""

    def __init__(
        self,
        settings: Settings,
        locks: LockManager,
        transports: Callable[[Target], Transport],
        *,
        cancelled: threading.Event | None = None,
        on_state: StateCallback | None = None,
    ):
        self.settings = settings
        self.layout = settings.layout()
        self.locks = locks
        self.transports = transports
        self.cancelled = cancelled
        self.on_state = on_state

    def _notify(self, target: Target, state: JobState) -> None:
        LOGGER.debug("job %s -> %s", target.id, state.value)
        if self.on_state is not None:
            self.on_state(target, state)

    def command_for(self, target: Target, ref: str | None = None) -> str:
        return render_build_command(
            self.settings.build_command,
            target,
            ref=ref or self.settings.ref,
            artifact=self.settings.artifact_name(target.id),
            remote_dir=self.settings.remote_dir,
        )

    def run(self, target: Target, ref: str | None = None) -> JobResult:
        """
        Build one platform and return its result. Job errors never escape.

        Args:
            target: Resolved platform to build.
            ref: Source revision; the settings' default when omitted.
        """
        ref = ref or self.settings.ref
        log_path = self.layout.log_for(target.id)
        start = time.monotonic()
        self._notify(target, JobState.PENDING)

        def _result(state: JobState, **kwargs) -> JobResult:
            return JobResult(
                platform=target.id,
                machine=target.machine,
                state=state,
                log_path=log_path,
                duration=time.monotonic() - start,
                **kwargs,
            )

        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "wb") as log:
                _write(
                    log,
                    f"[binfarm] platform={target.id} machine={target.machine} "
                    f"protocol={target.protocol} ref={ref}\n",
                )
                try:
                    archive = self._build(target, ref, log)
                except JobError as exc:
                    kind = type(exc).__name__
                    _write(log, f"\n[binfarm] FAILED {kind}: {exc}\n")
                    LOGGER.info("Job %s failed: %s: %s", target.id, kind, exc)
                    result = _result(
                        JobState.FAILED, code=exc.code, detail=str(exc), error_kind=kind
                    )
                else:
                    _write(log, f"\n[binfarm] OK {archive}\n")
                    result = _result(JobState.SUCCEEDED, archive=archive)
        except OSError as exc:
            error = LocalIOError(f"Cannot write log {log_path}: {exc}")
            LOGGER.error("Job %s failed: %s", target.id, error)
            result = _result(
                JobState.FAILED,
                code=error.code,
                detail=str(error),
                error_kind=type(error).__name__,
            )

        self._notify(target, result.state)
        return result

    def _build(self, target: Target, ref: str, log: IO[bytes]) -> Path:
        artifact = self.settings.artifact_name(target.id)
        command = self.command_for(target, ref)

        with contextlib.ExitStack() as stack:
            try:
                scratch = stack.enter_context(
                    tempfile.TemporaryDirectory(
                        prefix=f"binfarm-{target.id}-", ignore_cleanup_errors=True
                    )
                )
            except OSError as exc:
                raise LocalIOError(f"Cannot create scratch directory: {exc}") from exc
            try:
                handle = stack.enter_context(
                    self.locks.acquire(
                        target.machine,
                        cancelled=self.cancelled,
                        on_wait=lambda _exc: self._notify(target, JobState.WAITING),
                    )
                )
            except OSError as exc:
                raise LocalIOError(
                    f"Cannot lock machine {target.machine} in {self.locks.lock_dir}: {exc}"
                ) from exc

            self._notify(target, JobState.RUNNING)
            _write(log, f"[binfarm] lock {handle.path} held after {handle.waited:.1f}s\n")
            _write(log, f"[binfarm] $ {command}\n")

            transport = self.transports(target)
            code = transport.execute(command, log)
            if code != 0:
                raise RemoteBuildError(f"Remote build exited with status {code}", code=code)

            remote_path = posixpath.join(self.settings.remote_dir, artifact)
            pulled = transport.transfer(remote_path, Path(scratch), log)
            return repack_archive(pulled, self.layout.archive_for(artifact))
