"""Per-machine mutual exclusion.

Every job must hold its machine's lock before it touches the machine, so two
platforms that share a machine never build on it at the same time. Locks live
as files under the build root's `locks/` directory, which makes them visible
to every orchestrator running from that root, not just to the threads of one
process.

Two interchangeable strategies are provided:

- `NativeLockManager` uses :mod:`filelock` (``flock`` on Unix). The kernel
  drops the lock when the holder dies, so a killed job can never keep a
  machine busy. The lock file itself stays on disk after release.
- `EmulatedLockManager` uses an atomic create-if-absent sentinel for
  filesystems where ``flock`` is unreliable. The holder refreshes the
  sentinel's mtime from a heartbeat thread; a waiter that sees the heartbeat
  stop reports the lock as probably stale.

Neither strategy ever removes a lock it does not hold. A stale lock is
reported and waited on until an operator clears it.
"""

from __future__ import annotations

import logging
import os
import re
import socket
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from filelock import FileLock, Timeout

from binfarm.core.errors import ConfigurationError, JobCancelled, LockAcquisitionError

LOGGER = logging.getLogger(__name__)
logging.getLogger("filelock").setLevel(logging.INFO)

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_HEARTBEAT_INTERVAL = 1.0
DEFAULT_STALE_AFTER = 30.0

# Lock file suffixes of every strategy, native first.
LOCK_SUFFIXES = (".flock", ".lock")


class LockState(str, Enum):
    """State of a lock file found on disk."""

    HELD = "held"
    FREE = "free"
    STALE = "stale"


@dataclass(frozen=True)
class LockReport:
    """A lock file found by `LockManager.scan`."""

    machine: str
    path: Path
    state: LockState
    age: float | None = None


class LockHandle:
    """A held machine lock. `release` is idempotent."""

    __slots__ = ("machine", "path", "waited", "_release", "_released", "_acquired_at")

    def __init__(self, machine: str, path: Path, release: Callable[[], None]):
        self.machine = machine
        self.path = path
        self.waited = 0.0
        self._release = release
        self._released = False
        self._acquired_at = time.monotonic()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        try:
            self._release()
        finally:
            self._released = True
            LOGGER.debug(
                "lock-release machine=%s hold_s=%.3f wait_s=%.3f",
                self.machine,
                time.monotonic() - self._acquired_at,
                self.waited,
            )

    def __enter__(self) -> LockHandle:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class LockManager(ABC):
    """Blocking, cancellable acquisition of per-machine locks."""

    suffix: str = ".lock"

    def __init__(self, lock_dir: Path, *, poll_interval: float = DEFAULT_POLL_INTERVAL):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self.lock_dir = Path(lock_dir)
        self.poll_interval = poll_interval

    def lock_path(self, machine: str) -> Path:
        """Return the lock file path for a machine."""
        safe = re.sub(r"[^A-Za-z0-9_.@-]+", "_", machine)
        return self.lock_dir / f"{safe}{self.suffix}"

    @abstractmethod
    def try_acquire(self, machine: str) -> LockHandle:
        """
        Make a single acquisition attempt.

        Raises:
            LockAcquisitionError: If another holder has the lock.
        """
        ...

    @abstractmethod
    def scan(self) -> list[LockReport]:
        """Report lock files present in the lock directory."""
        ...

    def _on_busy(self, machine: str) -> None:
        """Hook called after every failed attempt."""

    @contextmanager
    def acquire(
        self,
        machine: str,
        *,
        cancelled: threading.Event | None = None,
        on_wait: Callable[[LockAcquisitionError], None] | None = None,
    ) -> Iterator[LockHandle]:
        """
        Block until the machine's lock is held, then yield its handle.

        Attempts are retried every `poll_interval` seconds without a timeout.
        The lock is released exactly once when the block exits, whatever the
        exit path.

        Args:
            machine: Machine id to lock.
            cancelled: Shared cancellation event; when set, waiting stops.
            on_wait: Called once, on the first failed attempt.

        Raises:
            JobCancelled: If `cancelled` is set before the lock is obtained.
        """
        start = time.monotonic()
        waiting = False

        while True:
            if cancelled is not None and cancelled.is_set():
                raise JobCancelled(f"Cancelled while waiting for lock on {machine}")
            try:
                handle = self.try_acquire(machine)
                break
            except LockAcquisitionError as exc:
                if not waiting:
                    waiting = True
                    LOGGER.warning(
                        "Machine %s is busy; waiting for lock %s", machine, exc.path
                    )
                    if on_wait is not None:
                        on_wait(exc)
                self._on_busy(machine)
            if cancelled is not None:
                if cancelled.wait(self.poll_interval):
                    raise JobCancelled(f"Cancelled while waiting for lock on {machine}")
            else:
                time.sleep(self.poll_interval)

        handle.waited = time.monotonic() - start
        LOGGER.debug("lock-acquired machine=%s wait_s=%.3f", machine, handle.waited)
        try:
            yield handle
        finally:
            handle.release()

    def clear(self, machine: str) -> bool:
        """
        Remove a machine's lock file. Operator use only.

        Returns:
            True if a file was removed.
        """
        path = self.lock_path(machine)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        LOGGER.warning("Removed lock file %s", path)
        return True

    def foreign_lock_files(self) -> list[Path]:
        """Return lock files left by the other strategy. This manager never honours them."""
        if not self.lock_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.lock_dir.iterdir()
            if path.suffix in LOCK_SUFFIXES and path.suffix != self.suffix
        )

    def _lock_files(self) -> list[Path]:
        if not self.lock_dir.is_dir():
            return []
        return sorted(self.lock_dir.glob(f"*{self.suffix}"))

    def _machine_for(self, path: Path) -> str:
        return path.name[: -len(self.suffix)]


class NativeLockManager(LockManager):
    """Kernel-enforced advisory locks via :class:`filelock.FileLock`."""

    suffix = ".flock"

    def try_acquire(self, machine: str) -> LockHandle:
        path = self.lock_path(machine)
        path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(path), thread_local=False)
        try:
            lock.acquire(timeout=0)
        except Timeout:
            raise LockAcquisitionError(machine, str(path)) from None
        return LockHandle(machine, path, lock.release)

    def scan(self) -> list[LockReport]:
        reports: list[LockReport] = []
        for path in self._lock_files():
            machine = self._machine_for(path)
            attempt = FileLock(str(path), thread_local=False)
            try:
                attempt.acquire(timeout=0)
            except Timeout:
                state = LockState.HELD
            else:
                attempt.release()
                state = LockState.FREE
            reports.append(LockReport(machine=machine, path=path, state=state, age=_age(path)))
        return reports


class _Heartbeat(threading.Thread):
    """Refreshes a sentinel's mtime while its lock is held."""

    def __init__(self, path: Path, interval: float):
        super().__init__(name=f"heartbeat-{path.name}", daemon=True)
        self.path = path
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                os.utime(self.path)
            except FileNotFoundError:
                LOGGER.warning("Lock sentinel %s disappeared while held", self.path)
                return

    def stop(self) -> None:
        self._stop_event.set()
        if self.is_alive() and self is not threading.current_thread():
            self.join()


class EmulatedLockManager(LockManager):
    """Sentinel-file locks with a liveness heartbeat."""

    suffix = ".lock"

    def __init__(
        self,
        lock_dir: Path,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        stale_after: float = DEFAULT_STALE_AFTER,
    ):
        super().__init__(lock_dir, poll_interval=poll_interval)
        self.heartbeat_interval = heartbeat_interval
        self.stale_after = stale_after
        self._reported_stale: set[str] = set()
        self._guard = threading.Lock()

    def try_acquire(self, machine: str) -> LockHandle:
        path = self.lock_path(machine)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            raise LockAcquisitionError(machine, str(path)) from None

        try:
            identity = _identity(os.fstat(fd))
            os.write(fd, f"{os.getpid()} {socket.gethostname()}\n".encode())
        except BaseException:
            os.close(fd)
            path.unlink(missing_ok=True)
            raise
        os.close(fd)

        heartbeat = _Heartbeat(path, self.heartbeat_interval)
        heartbeat.start()

        def _release() -> None:
            heartbeat.stop()
            try:
                if _identity(os.lstat(path)) == identity:
                    path.unlink()
            except FileNotFoundError:
                LOGGER.warning("Lock sentinel %s was removed by someone else", path)

        with self._guard:
            self._reported_stale.discard(machine)
        return LockHandle(machine, path, _release)

    def _on_busy(self, machine: str) -> None:
        path = self.lock_path(machine)
        age = _age(path)
        if age is None or age <= self.stale_after:
            return
        with self._guard:
            if machine in self._reported_stale:
                return
            self._reported_stale.add(machine)
        LOGGER.warning(
            "Lock %s has had no heartbeat for %.0fs; its holder probably died. "
            "Remove it manually once you are sure the machine is idle.",
            path,
            age,
        )

    def scan(self) -> list[LockReport]:
        reports: list[LockReport] = []
        for path in self._lock_files():
            age = _age(path)
            if age is None:
                continue
            state = LockState.STALE if age > self.stale_after else LockState.HELD
            reports.append(
                LockReport(machine=self._machine_for(path), path=path, state=state, age=age)
            )
        return reports


def _identity(st: os.stat_result) -> tuple[int, int]:
    return st.st_dev, st.st_ino


def _age(path: Path) -> float | None:
    """Return seconds since the file was last modified, or None if it is gone."""
    try:
        return max(time.time() - path.stat().st_mtime, 0.0)
    except FileNotFoundError:
        return None


def make_lock_manager(
    strategy: str,
    lock_dir: Path,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    stale_after: float = DEFAULT_STALE_AFTER,
) -> LockManager:
    """Return the lock manager for a strategy name (`native` or `emulated`)."""
    if strategy == "native":
        return NativeLockManager(lock_dir, poll_interval=poll_interval)
    if strategy == "emulated":
        return EmulatedLockManager(
            lock_dir,
            poll_interval=poll_interval,
            heartbeat_interval=heartbeat_interval,
            stale_after=stale_after,
        )
    raise ConfigurationError(f"Unknown lock strategy: {strategy}")
