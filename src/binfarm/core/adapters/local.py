from __future__ import annotations

import shutil
import subprocess
import threading
from pathlib import Path
from typing import IO

from binfarm.core.adapters.process import Spawn, wait_cancellable
from binfarm.core.errors import ArtifactMissing, LocalIOError, TransportError


class LocalTransport:
    """Runs the build on this host, as if it were a remote machine."""

    def __init__(
        self,
        workdir: Path | None = None,
        *,
        spawn: Spawn = subprocess.Popen,
        cancelled: threading.Event | None = None,
        shell: str = "/bin/sh",
    ) -> None:
        # ssh lands in the home directory, so relative paths resolve there too.
        self.workdir = Path(workdir) if workdir is not None else Path.home()
        self.spawn = spawn
        self.cancelled = cancelled
        self.shell = shell

    def execute(self, command: str, output: IO[bytes] | int = subprocess.DEVNULL) -> int:
        """Run a shell command in the work directory; return its exit status."""
        try:
            proc = self.spawn(
                [self.shell, "-c", command],
                cwd=self.workdir,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            raise TransportError(f"Cannot start {self.shell}: {exc}") from exc
        return wait_cancellable(proc, self.cancelled)

    def transfer(
        self,
        remote_path: str,
        dest_dir: Path,
        output: IO[bytes] | int = subprocess.DEVNULL,
    ) -> Path:
        """Copy a file from the work directory into `dest_dir`."""
        source = self.workdir / remote_path
        if not source.is_file():
            raise ArtifactMissing(f"{source} does not exist")
        try:
            return Path(shutil.copy2(source, Path(dest_dir) / source.name))
        except OSError as exc:
            raise LocalIOError(f"Cannot copy {source}: {exc}") from exc
