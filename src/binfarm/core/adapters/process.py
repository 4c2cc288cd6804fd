from __future__ import annotations

import subprocess
import threading
from typing import Any, Callable

from binfarm.core.errors import JobCancelled

Spawn = Callable[..., subprocess.Popen]

_WAIT_TICK = 1.0


def wait_cancellable(
    proc: subprocess.Popen,
    cancelled: threading.Event | None,
    *,
    tick: float = _WAIT_TICK,
) -> int:
    """
    Wait for a subprocess while watching the run's cancellation event.

    The supervisor kills the whole process group on cancellation, so the
    process normally dies on its own; it is killed here as well in case it
    was started outside the group.

    Raises:
        JobCancelled: If the run was cancelled before the process exited
            successfully.
    """
    while True:
        try:
            code = proc.wait(timeout=tick)
            break
        except subprocess.TimeoutExpired:
            if cancelled is not None and cancelled.is_set():
                proc.kill()
                code = proc.wait()
                break

    if code != 0 and cancelled is not None and cancelled.is_set():
        raise JobCancelled(f"{_name(proc)} killed during teardown (status {code})")
    return code


def _name(proc: subprocess.Popen) -> str:
    args: Any = proc.args
    if isinstance(args, (list, tuple)) and args:
        return str(args[0])
    return str(args)
