import logging
import os
import threading
import time

import pytest
from filelock import FileLock

from binfarm.core.errors import ConfigurationError, JobCancelled, LockAcquisitionError
from binfarm.core.locks import (
    EmulatedLockManager,
    LockState,
    NativeLockManager,
    make_lock_manager,
)


@pytest.fixture(params=["native", "emulated"])
def locks(request, tmp_path):
    return make_lock_manager(
        request.param,
        tmp_path / "locks",
        poll_interval=0.02,
        heartbeat_interval=0.02,
        stale_after=60,
    )


def test_make_lock_manager_rejects_unknown_strategy(tmp_path):
    with pytest.raises(ConfigurationError):
        make_lock_manager("nfs", tmp_path)


def test_lock_path_sanitizes_machine_names(tmp_path):
    manager = NativeLockManager(tmp_path)

    assert manager.lock_path("user@host:22/x").name == "user@host_22_x.flock"


def test_second_attempt_fails_while_held(locks):
    with locks.acquire("m1") as handle:
        assert handle.path.exists()
        with pytest.raises(LockAcquisitionError) as info:
            locks.try_acquire("m1")
        assert info.value.machine == "m1"

    with locks.acquire("m1") as again:
        assert not again.released


def test_distinct_machines_do_not_contend(locks):
    with locks.acquire("m1"), locks.acquire("m2") as second:
        assert second.waited < 0.5


def test_release_happens_exactly_once(locks):
    with locks.acquire("m1") as handle:
        pass

    assert handle.released
    handle.release()
    assert handle.released
    with locks.acquire("m1"):
        pass


def test_release_on_exception(locks):
    with pytest.raises(RuntimeError):
        with locks.acquire("m1"):
            raise RuntimeError("boom")

    with locks.acquire("m1") as handle:
        assert handle.waited < 0.5


def test_waiter_gets_lock_after_holder_releases(locks):
    holder = locks.try_acquire("m1")
    waits = []
    timer = threading.Timer(0.2, holder.release)
    timer.start()
    try:
        with locks.acquire("m1", on_wait=waits.append) as handle:
            assert handle.waited >= 0.15
    finally:
        timer.cancel()

    assert len(waits) == 1
    assert isinstance(waits[0], LockAcquisitionError)


def test_cancellation_stops_waiting(locks):
    holder = locks.try_acquire("m1")
    cancelled = threading.Event()
    threading.Timer(0.1, cancelled.set).start()
    try:
        with pytest.raises(JobCancelled):
            with locks.acquire("m1", cancelled=cancelled):
                pytest.fail("lock must not be granted")
    finally:
        holder.release()


def test_holders_never_overlap(locks):
    inside = []
    overlaps = []
    guard = threading.Lock()

    def _work():
        with locks.acquire("shared"):
            with guard:
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(len(inside))
            time.sleep(0.02)
            with guard:
                inside.pop()

    threads = [threading.Thread(target=_work) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert overlaps == []


def test_native_scan_tells_held_from_free(tmp_path):
    manager = NativeLockManager(tmp_path, poll_interval=0.02)
    manager.try_acquire("idle").release()
    busy = manager.try_acquire("busy")
    try:
        states = {r.machine: r.state for r in manager.scan()}
    finally:
        busy.release()

    assert states == {"busy": LockState.HELD, "idle": LockState.FREE}


def test_native_lock_held_by_other_file_handle_blocks(tmp_path):
    manager = NativeLockManager(tmp_path, poll_interval=0.02)
    external = FileLock(str(manager.lock_path("m1")))
    external.acquire()
    try:
        with pytest.raises(LockAcquisitionError):
            manager.try_acquire("m1")
    finally:
        external.release()

    manager.try_acquire("m1").release()


def test_emulated_sentinel_records_owner_and_is_removed_on_release(tmp_path):
    manager = EmulatedLockManager(tmp_path, poll_interval=0.02, heartbeat_interval=0.02)

    with manager.acquire("m1") as handle:
        pid, host = handle.path.read_text().split()
        assert int(pid) == os.getpid()
        assert host

    assert not handle.path.exists()


def test_emulated_heartbeat_refreshes_sentinel(tmp_path):
    manager = EmulatedLockManager(tmp_path, poll_interval=0.02, heartbeat_interval=0.02)

    with manager.acquire("m1") as handle:
        os.utime(handle.path, (0, 0))
        time.sleep(0.2)
        assert handle.path.stat().st_mtime > 1000


def test_emulated_stale_lock_is_reported_once_and_never_removed(tmp_path, caplog):
    manager = EmulatedLockManager(
        tmp_path, poll_interval=0.02, heartbeat_interval=0.02, stale_after=5
    )
    sentinel = manager.lock_path("m1")
    sentinel.write_text("4242 elsewhere\n")
    old = time.time() - 600
    os.utime(sentinel, (old, old))
    cancelled = threading.Event()
    threading.Timer(0.3, cancelled.set).start()

    with caplog.at_level(logging.WARNING, logger="binfarm.core.locks"):
        with pytest.raises(JobCancelled):
            with manager.acquire("m1", cancelled=cancelled):
                pass

    assert caplog.text.count("no heartbeat") == 1
    assert sentinel.exists()
    assert [r.state for r in manager.scan()] == [LockState.STALE]


def test_emulated_release_leaves_foreign_sentinel_alone(tmp_path):
    manager = EmulatedLockManager(tmp_path, poll_interval=0.02, heartbeat_interval=0.02)
    handle = manager.try_acquire("m1")
    foreign = handle.path.with_name("foreign.tmp")
    foreign.write_text("999 someone-else\n")
    os.replace(foreign, handle.path)

    handle.release()

    assert handle.path.read_text() == "999 someone-else\n"


def test_clear_removes_lock_file(locks):
    locks.try_acquire("m1").release()
    locks.lock_path("m1").touch()

    assert locks.clear("m1") is True
    assert locks.clear("m1") is False
    assert not locks.lock_path("m1").exists()


def test_foreign_lock_files_are_those_of_the_other_strategy(tmp_path):
    (tmp_path / "m1.flock").touch()
    (tmp_path / "m2.lock").touch()
    (tmp_path / "notes.txt").touch()

    native = NativeLockManager(tmp_path)
    emulated = EmulatedLockManager(tmp_path)

    assert native.foreign_lock_files() == [tmp_path / "m2.lock"]
    assert emulated.foreign_lock_files() == [tmp_path / "m1.flock"]
    assert NativeLockManager(tmp_path / "missing").foreign_lock_files() == []
