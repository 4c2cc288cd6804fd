import subprocess
import threading

import pytest

from binfarm.core.adapters.local import LocalTransport
from binfarm.core.adapters.process import wait_cancellable
from binfarm.core.adapters.ssh import SshTransport
from binfarm.core.adapters.transports import transport_factory
from binfarm.core.config import Settings
from binfarm.core.errors import ArtifactMissing, ConfigurationError, JobCancelled, TransportError
from binfarm.core.registry import Platform, Target


class _ProcStub:
    def __init__(self, args, code):
        self.args = args
        self.code = code

    def wait(self, timeout=None):
        return self.code

    def kill(self):
        pass


class _SpawnStub:
    """Records argv lists and answers with scripted exit codes."""

    def __init__(self, *codes):
        self.codes = list(codes)
        self.calls = []

    def __call__(self, args, **kwargs):
        self.calls.append(list(args))
        return _ProcStub(args, self.codes.pop(0))


def test_ssh_execute_runs_command_on_machine():
    spawn = _SpawnStub(0)
    transport = SshTransport("build-x86", spawn=spawn, ssh="myssh", options=())

    assert transport.execute("./build", subprocess.DEVNULL) == 0
    assert spawn.calls == [["myssh", "-T", "build-x86", "./build"]]


def test_ssh_execute_returns_remote_status():
    transport = SshTransport("m", spawn=_SpawnStub(2))

    assert transport.execute("false") == 2


def test_ssh_status_255_is_a_transport_error():
    transport = SshTransport("m", spawn=_SpawnStub(255))

    with pytest.raises(TransportError) as info:
        transport.execute("true")
    assert info.value.code == 255


def test_ssh_spawn_failure_is_a_transport_error():
    def _spawn(args, **kwargs):
        raise FileNotFoundError(args[0])

    with pytest.raises(TransportError, match="Cannot start"):
        SshTransport("m", spawn=_spawn).execute("true")


def test_ssh_transfer_checks_then_copies(tmp_path):
    spawn = _SpawnStub(0, 0)
    transport = SshTransport("m", spawn=spawn, options=())

    path = transport.transfer("tmux-bin/tmux-linux-x86_64.tar.gz", tmp_path)

    assert path == tmp_path / "tmux-linux-x86_64.tar.gz"
    assert spawn.calls[0][-1] == "test -f tmux-bin/tmux-linux-x86_64.tar.gz"
    assert spawn.calls[1] == [
        "scp",
        "-q",
        "m:tmux-bin/tmux-linux-x86_64.tar.gz",
        str(tmp_path / "tmux-linux-x86_64.tar.gz"),
    ]


def test_ssh_transfer_missing_remote_file(tmp_path):
    spawn = _SpawnStub(1)

    with pytest.raises(ArtifactMissing):
        SshTransport("m", spawn=spawn).transfer("x.tar.gz", tmp_path)
    assert len(spawn.calls) == 1


def test_ssh_transfer_scp_failure(tmp_path):
    with pytest.raises(TransportError) as info:
        SshTransport("m", spawn=_SpawnStub(0, 1)).transfer("x.tar.gz", tmp_path)
    assert info.value.code == 1


def test_local_transport_streams_output_and_returns_status(tmp_path):
    log = tmp_path / "log"
    transport = LocalTransport(tmp_path)

    with open(log, "wb") as out:
        code = transport.execute("echo out; echo err >&2; exit 4", out)

    assert code == 4
    assert log.read_text().split() == ["out", "err"]


def test_local_transport_transfer(tmp_path):
    (tmp_path / "work").mkdir()
    (tmp_path / "work" / "a.tar.gz").write_bytes(b"data")
    dest = tmp_path / "dest"
    dest.mkdir()

    path = LocalTransport(tmp_path).transfer("work/a.tar.gz", dest)

    assert path.read_bytes() == b"data"
    with pytest.raises(ArtifactMissing):
        LocalTransport(tmp_path).transfer("work/b.tar.gz", dest)


def test_wait_cancellable_kills_on_cancel():
    proc = subprocess.Popen(["sleep", "30"])
    cancelled = threading.Event()
    threading.Timer(0.1, cancelled.set).start()

    with pytest.raises(JobCancelled):
        wait_cancellable(proc, cancelled, tick=0.05)
    assert proc.returncode is not None


def test_transport_factory_maps_protocols(tmp_path):
    build = transport_factory(Settings(root=tmp_path, ssh="s"), local_workdir=tmp_path)

    ssh = build(Target(Platform.parse("linux-x86_64"), "m1", "ssh", "x86-64"))
    local = build(Target(Platform.parse("linux-i386"), "here", "local", "i386"))

    assert isinstance(ssh, SshTransport) and ssh.machine == "m1" and ssh.ssh == "s"
    assert isinstance(local, LocalTransport) and local.workdir == tmp_path
    with pytest.raises(ConfigurationError):
        build(Target(Platform.parse("linux-i386"), "x", "telnet", "i386"))
