"""Tests for the per-cluster lock."""

import gc
import threading
import time

import pytest

from kina import locks
from kina.exceptions import ClusterBusyError
from kina.locks import ClusterLock


def test_second_holder_is_rejected(tmp_path):
    with ClusterLock(tmp_path, "dev"):
        with pytest.raises(ClusterBusyError, match="busy"):
            ClusterLock(tmp_path, "dev").acquire()


def test_lock_is_released_after_use(tmp_path):
    with ClusterLock(tmp_path, "dev"):
        pass

    with ClusterLock(tmp_path, "dev") as lock:
        assert lock.path == tmp_path / "dev.lock"


def test_different_clusters_do_not_conflict(tmp_path):
    with ClusterLock(tmp_path, "one"):
        with ClusterLock(tmp_path, "two"):
            pass


def test_lock_released_when_body_raises(tmp_path):
    with pytest.raises(RuntimeError):
        with ClusterLock(tmp_path, "dev"):
            raise RuntimeError("boom")

    with ClusterLock(tmp_path, "dev"):
        pass


def test_racing_threads_get_one_winner(tmp_path):
    barrier = threading.Barrier(4)
    release = threading.Event()
    results = []

    def contender():
        lock = ClusterLock(tmp_path, "race")
        barrier.wait()
        try:
            lock.acquire()
        except ClusterBusyError:
            results.append("busy")
            return
        results.append("won")
        release.wait(timeout=5)
        lock.release()

    threads = [threading.Thread(target=contender) for _ in range(4)]
    for t in threads:
        t.start()
    # Losers return right away, the winner waits for release
    for _ in range(100):
        if len(results) == 4:
            break
        time.sleep(0.05)
    release.set()
    for t in threads:
        t.join()

    assert sorted(results) == ["busy", "busy", "busy", "won"]


def test_waiting_holder_gets_lock_after_release(tmp_path):
    held = threading.Event()

    def holder():
        with ClusterLock(tmp_path, "dev"):
            held.set()
            time.sleep(0.1)

    thread = threading.Thread(target=holder)
    thread.start()
    held.wait(timeout=5)

    with ClusterLock(tmp_path, "dev", timeout=5):
        pass
    thread.join()


def test_lock_registry_does_not_grow_with_cluster_names(tmp_path):
    for i in range(20):
        with ClusterLock(tmp_path, f"cluster-{i}"):
            pass
    gc.collect()

    assert not any(key.startswith(str(tmp_path)) for key in locks._thread_locks.keys())


def test_live_locks_share_one_registry_entry(tmp_path):
    first = ClusterLock(tmp_path, "dev")
    second = ClusterLock(tmp_path, "dev")

    assert first._thread_lock is second._thread_lock
    assert str(tmp_path / "dev.lock") in locks._thread_locks
