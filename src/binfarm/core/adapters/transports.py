"""Construction of transports from resolved targets.

The registry only names a protocol; this module maps the name to an adapter
so call sites never branch on transport kinds.
"""

from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import Callable

from binfarm.core.adapters.local import LocalTransport
from binfarm.core.adapters.process import Spawn
from binfarm.core.adapters.ssh import SshTransport
from binfarm.core.config import Settings
from binfarm.core.errors import ConfigurationError
from binfarm.core.jobs import Transport
from binfarm.core.registry import Target

TransportFactory = Callable[[Target], Transport]


def transport_factory(
    settings: Settings,
    *,
    spawn: Spawn = subprocess.Popen,
    cancelled: threading.Event | None = None,
    local_workdir: Path | None = None,
) -> TransportFactory:
    """
    Return a function building the transport for a target.

    Args:
        settings: Provides the ssh/scp client binaries.
        spawn: Process launcher, normally `Supervisor.spawn`.
        cancelled: The run's cancellation event.
        local_workdir: Working directory of the `local` protocol; the home
            directory when omitted.
    """

    def build(target: Target) -> Transport:
        if target.protocol == "ssh":
            return SshTransport(
                target.machine,
                spawn=spawn,
                cancelled=cancelled,
                ssh=settings.ssh,
                scp=settings.scp,
            )
        if target.protocol == "local":
            return LocalTransport(local_workdir, spawn=spawn, cancelled=cancelled)
        raise ConfigurationError(f"Unknown protocol '{target.protocol}' for {target.id}")

    return build
