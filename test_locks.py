import os
import time

import psutil

from syncwatch.monitor.locks import (
    LockState,
    acquire_lock,
    check_lock,
    cleanup_stale_lock,
    read_lock_pid,
    release_lock,
)


def age_file(path, seconds):
    old = time.time() - seconds
    os.utime(path, (old, old))


def test_lock_lifecycle(tmp_path):
    lock = tmp_path / "nested" / "job.lock"
    assert check_lock(lock, 7200) == LockState.ABSENT

    acquire_lock(lock)
    assert check_lock(lock, 7200) == LockState.HELD

    age_file(lock, 7300)
    assert check_lock(lock, 7200) == LockState.STALE

    assert release_lock(lock)
    assert not release_lock(lock)


def test_check_lock_uses_given_clock(tmp_path):
    lock = tmp_path / "job.lock"
    acquire_lock(lock)
    assert check_lock(lock, 60, now=time.time() + 120) == LockState.STALE


def test_read_lock_pid(tmp_path):
    lock = tmp_path / "job.lock"
    lock.write_text("4242\n")
    assert read_lock_pid(lock) == 4242

    lock.write_text("")
    assert read_lock_pid(lock) is None
    assert read_lock_pid(tmp_path / "missing.lock") is None


def test_cleanup_removes_old_lock(tmp_path):
    lock = tmp_path / "job.lock"
    acquire_lock(lock)
    age_file(lock, 8000)

    assert cleanup_stale_lock(lock, 7200)
    assert not lock.exists()


def test_cleanup_keeps_fresh_lock_of_live_process(tmp_path):
    lock = tmp_path / "job.lock"
    lock.write_text(str(os.getpid()))

    assert not cleanup_stale_lock(lock, 7200)
    assert lock.exists()


def test_cleanup_removes_lock_of_dead_process(tmp_path, monkeypatch):
    lock = tmp_path / "job.lock"
    lock.write_text("999999")
    monkeypatch.setattr(psutil, "pid_exists", lambda pid: False)

    assert cleanup_stale_lock(lock, 7200)
    assert not lock.exists()


def test_cleanup_keeps_fresh_lock_without_pid(tmp_path):
    lock = tmp_path / "job.lock"
    acquire_lock(lock)

    assert not cleanup_stale_lock(lock, 7200)
    assert lock.exists()
