"""Process-tree supervision for a build fan-out.

Every subprocess a job starts (ssh client, scp, local shells, and whatever
those start in turn) is placed in one dedicated process group. The group is
led by a tiny ticker process that wakes once per second and, if the
orchestrator has gone away, kills the whole group. Cancellation is therefore
a single ``killpg``: it reaches every descendant of every concurrent job, not
just the direct children.

The orchestrator itself stays outside that group, in the terminal's
foreground group, so Ctrl-C still reaches it. The first interrupt,
termination, hangup or quit signal (or an internal error) sets the shared
cancellation event and kills the group; later signals are ignored because
teardown has already begun.

State machine::

    idle -> running -> done(aggregate status)
    idle -> running -> terminating -> done(signal-derived status)
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
from enum import Enum
from typing import Any, Sequence

from binfarm.core.errors import JobCancelled, SupervisorSignal

LOGGER = logging.getLogger(__name__)

TICK_SECONDS = 1.0

CANCEL_SIGNALS: tuple[int, ...] = tuple(
    getattr(signal, name)
    for name in ("SIGINT", "SIGTERM", "SIGHUP", "SIGQUIT")
    if hasattr(signal, name)
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERNAL = 70  # EX_SOFTWARE

# Runs as the process group leader. Exits, taking the group with it, once its
# parent (the orchestrator) is gone.
_TICKER_SOURCE = """\
import os, signal, sys, time
parent = int(sys.argv[1])
interval = float(sys.argv[2])
while os.getppid() == parent:
    time.sleep(interval)
os.killpg(0, signal.SIGKILL)
"""


class SupervisorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    TERMINATING = "terminating"
    DONE = "done"


class Supervisor:
    """
    Owns the process group of one run and its cancellation event.

    Use as a context manager around the fan-out. `spawn` starts job
    subprocesses inside the group; blocking code polls `cancelled`.
    """

    def __init__(
        self,
        *,
        signals: Sequence[int] = CANCEL_SIGNALS,
        tick_interval: float = TICK_SECONDS,
        install_handlers: bool = True,
    ):
        self.signals = tuple(signals)
        self.tick_interval = tick_interval
        self.install_handlers = install_handlers
        self.cancelled = threading.Event()
        self.signum: int | None = None
        self.internal_error: BaseException | None = None
        self._state = SupervisorState.IDLE
        self._ticker: subprocess.Popen | None = None
        self._previous_handlers: dict[int, Any] = {}
        # Reentrant: the signal handler runs on the main thread, possibly while
        # that thread is already inside one of the guarded sections.
        self._guard = threading.RLock()

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def pgid(self) -> int:
        """Process group id of the run (the ticker's pid)."""
        if self._ticker is None:
            raise RuntimeError("Supervisor is not running")
        return self._ticker.pid

    def start(self) -> Supervisor:
        """Spawn the ticker as group leader and install signal handlers."""
        with self._guard:
            if self._state is not SupervisorState.IDLE:
                raise RuntimeError(f"Cannot start supervisor in state {self._state.value}")
            self._ticker = subprocess.Popen(
                [sys.executable, "-c", _TICKER_SOURCE, str(os.getpid()), str(self.tick_interval)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                process_group=0,
            )
            self._state = SupervisorState.RUNNING

        # Python only lets the main thread install signal handlers.
        if self.install_handlers and threading.current_thread() is threading.main_thread():
            for signum in self.signals:
                self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

        LOGGER.debug("supervisor-start pgid=%s", self._ticker.pid)
        return self

    def spawn(self, args: Sequence[str], **kwargs: Any) -> subprocess.Popen:
        """
        Start a subprocess inside the run's process group.

        Raises:
            JobCancelled: If teardown has already begun.
        """
        with self._guard:
            if self._state is not SupervisorState.RUNNING:
                raise JobCancelled(f"Not starting {args[0]}: run is {self._state.value}")
            kwargs["process_group"] = self.pgid
            return subprocess.Popen(list(args), **kwargs)

    def _handle_signal(self, signum: int, frame: Any) -> None:
        self.cancel(signum)

    def cancel(self, signum: int | None = None, *, error: BaseException | None = None) -> bool:
        """
        Tear the run down. Only the first call has any effect.

        Args:
            signum: Triggering signal, if any.
            error: Triggering internal error, if any.

        Returns:
            True if this call started the teardown.
        """
        with self._guard:
            if self._state is not SupervisorState.RUNNING:
                return False
            self._state = SupervisorState.TERMINATING
            self.signum = signum
            self.internal_error = error
            self.cancelled.set()
            pgid = self._ticker.pid if self._ticker is not None else None

        if signum is not None:
            LOGGER.warning("Received signal %s; killing all build jobs", signum)
        else:
            LOGGER.error("Internal error; killing all build jobs: %s", error)
        if pgid is not None:
            _kill_group(pgid)
        return True

    def raise_if_cancelled(self) -> None:
        if self.cancelled.is_set() and self.signum is not None:
            raise SupervisorSignal(self.signum)

    def exit_status(self, ok: bool) -> int:
        """Return the process exit status for the run."""
        if self.signum is not None:
            return 128 + self.signum
        if self.internal_error is not None:
            return EXIT_INTERNAL
        return EXIT_OK if ok else EXIT_FAILED

    def finish(self, ok: bool = True) -> int:
        """Kill whatever is left of the group, restore handlers, return the exit status."""
        with self._guard:
            if self._state is SupervisorState.DONE:
                return self.exit_status(ok)
            ticker = self._ticker
            self._state = SupervisorState.DONE

        if ticker is not None:
            _kill_group(ticker.pid)
            ticker.wait()

        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

        status = self.exit_status(ok)
        LOGGER.debug("supervisor-done status=%s", status)
        return status

    def __enter__(self) -> Supervisor:
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is not None and not isinstance(exc, SupervisorSignal):
            self.cancel(error=exc)
        self.finish(ok=exc is None)


def _kill_group(pgid: int) -> None:
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        pass
