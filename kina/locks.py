"""Per-cluster named mutex.

Holding a ``ClusterLock`` is the atomic claim on a cluster name. It combines
an in-process lock, so threads of one process serialize, with a file lock,
so separate ``kina`` invocations do too.
"""

import threading
import weakref
from pathlib import Path

import filelock

from kina.exceptions import ClusterBusyError
from kina.logging_config import get_logger

logger = get_logger(__name__)


class _NameLock:
    """Process-wide lock for one lock path, shared by every ClusterLock on it."""

    __slots__ = ("lock", "__weakref__")

    def __init__(self):
        self.lock = threading.Lock()


# Entries vanish once no ClusterLock for the path is alive
_registry_guard = threading.Lock()
_thread_locks: "weakref.WeakValueDictionary[str, _NameLock]" = weakref.WeakValueDictionary()


def _thread_lock(name: str) -> _NameLock:
    with _registry_guard:
        entry = _thread_locks.get(name)
        if entry is None:
            entry = _NameLock()
            _thread_locks[name] = entry
        return entry


class ClusterLock:
    """Exclusive lock on one cluster name for the duration of an operation."""

    def __init__(self, lock_dir: str | Path, cluster_name: str, timeout: float = 0.0):
        """Initialize the lock.

        Args:
            lock_dir: Directory holding ``<name>.lock`` files
            cluster_name: Cluster to lock
            timeout: Seconds to wait for a competing holder, 0 fails at once
        """
        self.lock_dir = Path(lock_dir)
        self.cluster_name = cluster_name
        self.timeout = timeout
        self.path = self.lock_dir / f"{cluster_name}.lock"
        self._name_lock = _thread_lock(str(self.path))
        self._thread_lock = self._name_lock.lock
        self._file_lock: filelock.FileLock | None = None

    def _busy(self) -> ClusterBusyError:
        return ClusterBusyError(
            f"Cluster '{self.cluster_name}' is busy",
            "Another kina operation on this cluster is in progress. "
            f"Retry when it finishes (lock file: {self.path})",
        )

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            ClusterBusyError: If another holder keeps it past ``timeout``.
        """
        if self.timeout > 0:
            acquired = self._thread_lock.acquire(timeout=self.timeout)
        else:
            acquired = self._thread_lock.acquire(blocking=False)
        if not acquired:
            raise self._busy()

        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            self._file_lock = filelock.FileLock(str(self.path))
            self._file_lock.acquire(timeout=self.timeout)
        except filelock.Timeout:
            self._file_lock = None
            self._thread_lock.release()
            raise self._busy()
        except BaseException:
            self._file_lock = None
            self._thread_lock.release()
            raise
        logger.debug(f"Acquired lock for cluster '{self.cluster_name}'")

    def release(self) -> None:
        if self._file_lock is not None:
            self._file_lock.release()
            self._file_lock = None
        self._thread_lock.release()
        logger.debug(f"Released lock for cluster '{self.cluster_name}'")

    def __enter__(self) -> "ClusterLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
