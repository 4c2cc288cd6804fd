import logging
import signal
import tarfile
import threading
import time

import pytest
from filelock import FileLock

from binfarm.core.build import run_build
from binfarm.core.errors import UnknownPlatform
from binfarm.core.locks import LockState, make_lock_manager
from binfarm.core.supervisor import Supervisor


def _supervisor():
    return Supervisor(install_handlers=False, tick_interval=0.1)


def test_distinct_machines_all_succeed(make_settings, local_registry):
    settings = make_settings()
    registry = local_registry({"linux-x86_64": "m1", "linux-aarch64": "m2"})
    layout = settings.layout()

    report = run_build(
        settings, registry, ["linux-x86_64", "linux-aarch64"], supervisor=_supervisor()
    )

    assert report.exit_status == 0 and report.ok
    assert [r.platform for r in report.run.results.values()] == ["linux-x86_64", "linux-aarch64"]
    for platform in ("linux-x86_64", "linux-aarch64"):
        assert f"building {platform}" in layout.log_for(platform).read_text()
        assert layout.archive_for(f"tmux-{platform}.tar.gz").is_file()
    assert [e.name for e in report.manifest] == [
        "tmux-linux-aarch64.tar.gz",
        "tmux-linux-x86_64.tar.gz",
    ]
    assert layout.manifest_path.read_text().splitlines() == [e.line() for e in report.manifest]


def test_rebuilding_produces_identical_archives(make_settings, local_registry):
    settings = make_settings()
    registry = local_registry({"linux-x86_64": "m1"})

    first = run_build(settings, registry, supervisor=_supervisor()).manifest
    second = run_build(settings, registry, supervisor=_supervisor()).manifest

    assert first == second


def test_partial_failure_keeps_successful_artifacts(make_settings, local_registry):
    command = "test {platform} != linux-i386 && " + make_settings().build_command
    settings = make_settings(build_command=command)
    registry = local_registry({"linux-x86_64": "m1", "linux-i386": "m2"})

    report = run_build(settings, registry, supervisor=_supervisor())

    assert report.exit_status == 1
    assert [r.platform for r in report.run.failures] == ["linux-i386"]
    assert report.run.failures[0].error_kind == "RemoteBuildError"
    assert [e.name for e in report.manifest] == ["tmux-linux-x86_64.tar.gz"]


def test_unknown_platform_fails_before_anything_is_touched(make_settings, local_registry):
    settings = make_settings()
    registry = local_registry({"linux-x86_64": "m1"})

    with pytest.raises(UnknownPlatform):
        run_build(settings, registry, ["linux-x86_64", "sunos-sparc"], supervisor=_supervisor())

    assert not settings.layout().root.exists()


def test_previous_archives_of_requested_platforms_are_removed(make_settings, local_registry):
    settings = make_settings(build_command="exit 1")
    registry = local_registry({"linux-x86_64": "m1", "linux-i386": "m1"})
    layout = settings.layout()
    layout.ensure()
    stale = layout.archive_for("tmux-linux-x86_64.tar.gz")
    kept = layout.archive_for("tmux-linux-i386.tar.gz")
    stale.write_bytes(b"old")
    kept.write_bytes(b"old")

    report = run_build(settings, registry, ["linux-x86_64"], supervisor=_supervisor())

    assert not stale.exists()
    assert kept.exists()
    assert report.manifest == []


def test_shared_machine_locked_externally_waits_then_completes(make_settings, local_registry):
    settings = make_settings()
    registry = local_registry({"linux-x86_64": "shared", "linux-i386": "shared"})
    locks = make_lock_manager("native", settings.layout().locks_dir, poll_interval=0.05)
    external = FileLock(str(locks.lock_path("shared")))
    external.acquire()
    reports = []

    worker = threading.Thread(
        target=lambda: reports.append(
            run_build(settings, registry, locks=locks, supervisor=_supervisor())
        )
    )
    worker.start()
    try:
        time.sleep(0.5)
        for platform in ("linux-x86_64", "linux-i386"):
            log = settings.layout().log_for(platform)
            assert "building" not in (log.read_text() if log.exists() else "")
    finally:
        external.release()
    worker.join(timeout=30)

    [report] = reports
    assert report.ok
    assert [r.state for r in report.existing_locks] == [LockState.HELD]
    assert len(report.manifest) == 2


def test_existing_emulated_lock_is_reported_not_removed(make_settings, local_registry, caplog):
    settings = make_settings(lock_strategy="emulated")
    registry = local_registry({"linux-x86_64": "m1"})
    layout = settings.layout()
    layout.ensure()
    foreign = layout.locks_dir / "elsewhere.lock"
    foreign.write_text("1 other-host\n")

    with caplog.at_level(logging.WARNING, logger="binfarm.core.build"):
        report = run_build(settings, registry, supervisor=_supervisor())

    assert report.ok
    assert "elsewhere" in caplog.text
    assert foreign.exists()


def test_other_strategy_lock_file_is_reported_not_removed(make_settings, local_registry, caplog):
    settings = make_settings(lock_strategy="native")
    registry = local_registry({"linux-x86_64": "m1"})
    layout = settings.layout()
    layout.ensure()
    leftover = layout.locks_dir / "m1.lock"
    leftover.write_text("1 other-host\n")

    with caplog.at_level(logging.WARNING, logger="binfarm.core.build"):
        report = run_build(settings, registry, supervisor=_supervisor())

    assert report.ok
    assert "other lock strategy" in caplog.text
    assert str(leftover) in caplog.text
    assert leftover.exists()


def test_cancellation_kills_jobs_releases_locks_and_skips_manifest(
    make_settings, local_registry
):
    settings = make_settings(build_command="echo started && sleep 60")
    registry = local_registry({"linux-x86_64": "m1", "linux-aarch64": "m2"})
    supervisor = _supervisor()
    reports = []

    worker = threading.Thread(
        target=lambda: reports.append(run_build(settings, registry, supervisor=supervisor))
    )
    start = time.monotonic()
    worker.start()
    deadline = time.monotonic() + 10
    logs = [settings.layout().log_for(p) for p in ("linux-x86_64", "linux-aarch64")]
    while time.monotonic() < deadline:
        if all(p.exists() and "started" in p.read_text() for p in logs):
            break
        time.sleep(0.05)
    supervisor.cancel(signal.SIGINT)
    worker.join(timeout=20)

    [report] = reports
    assert time.monotonic() - start < 20
    assert report.cancelled
    assert report.exit_status == 128 + signal.SIGINT
    assert {r.error_kind for r in report.run.results.values()} == {"JobCancelled"}
    assert report.manifest == []
    assert not settings.layout().manifest_path.exists()
    locks = make_lock_manager("native", settings.layout().locks_dir)
    assert {r.state for r in locks.scan()} == {LockState.FREE}


def test_archive_members_are_normalized(make_settings, local_registry):
    settings = make_settings()
    registry = local_registry({"linux-i686": "m1"})

    report = run_build(settings, registry, supervisor=_supervisor())

    with tarfile.open(report.run.results["linux-i686"].archive) as tar:
        [member] = tar.getmembers()
        assert (member.name, member.uid, member.uname) == ("tmux", 0, "")
