from __future__ import annotations

import shlex
import subprocess
import threading
from pathlib import Path, PurePosixPath
from typing import IO

from binfarm.core.adapters.process import Spawn, wait_cancellable
from binfarm.core.errors import ArtifactMissing, TransportError

# ssh and scp report their own failures (unreachable host, auth) as 255.
SSH_FAILURE = 255

DEFAULT_OPTIONS: tuple[str, ...] = (
    "-o",
    "BatchMode=yes",
    "-o",
    "ConnectTimeout=30",
    "-o",
    "ServerAliveInterval=30",
)


class SshTransport:
    """Runs commands on and copies files from a machine over OpenSSH."""

    def __init__(
        self,
        machine: str,
        *,
        spawn: Spawn = subprocess.Popen,
        cancelled: threading.Event | None = None,
        ssh: str = "ssh",
        scp: str = "scp",
        options: tuple[str, ...] = DEFAULT_OPTIONS,
    ) -> None:
        self.machine = machine
        self.spawn = spawn
        self.cancelled = cancelled
        self.ssh = ssh
        self.scp = scp
        self.options = options

    def _run(self, args: list[str], output: IO[bytes] | int) -> int:
        try:
            proc = self.spawn(
                args,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            raise TransportError(f"Cannot start {args[0]}: {exc}") from exc
        return wait_cancellable(proc, self.cancelled)

    def execute(self, command: str, output: IO[bytes] | int = subprocess.DEVNULL) -> int:
        """Run a shell command on the machine; return its exit status."""
        code = self._run([self.ssh, *self.options, "-T", self.machine, command], output)
        if code == SSH_FAILURE:
            raise TransportError(f"ssh to {self.machine} failed (exit {code})", code=code)
        return code

    def transfer(
        self,
        remote_path: str,
        dest_dir: Path,
        output: IO[bytes] | int = subprocess.DEVNULL,
    ) -> Path:
        """Copy a file from the machine into `dest_dir`; return the local path."""
        code = self.execute(f"test -f {shlex.quote(remote_path)}", output)
        if code != 0:
            raise ArtifactMissing(f"{self.machine}:{remote_path} does not exist")

        local_path = Path(dest_dir) / PurePosixPath(remote_path).name
        code = self._run(
            [self.scp, *self.options, "-q", f"{self.machine}:{remote_path}", str(local_path)],
            output,
        )
        if code != 0:
            raise TransportError(
                f"scp {self.machine}:{remote_path} failed (exit {code})", code=code
            )
        return local_path
