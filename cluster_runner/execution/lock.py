"""
Cross-process cluster lock.

Each cluster has a marker file. Holding an exclusive flock() on it is what
"owning the cluster" means; no in-process state is involved, so the lock
holds across coordinator instances and process restarts. The kernel drops
the flock when the holding process dies.

The marker content is the run id of the current (or most recent) run, so
external tooling can see which run owns the cluster.
"""

import fcntl
import logging
import os
from pathlib import Path
from typing import Optional

from cluster_runner.errors import ClusterBusyError, LockError
from cluster_runner.settings import RunnerSettings, get_settings

logger = logging.getLogger(__name__)


class ClusterLock:
    """
    Exclusive, non-blocking lock on one cluster.

    Usage:
        with ClusterLock.acquire("prod") as lock:
            lock.record_run(run_id)
            ...
    """

    def __init__(self, cluster: str, path: Path, fd: int):
        self.cluster = cluster
        self.path = path
        self._fd: Optional[int] = fd

    @classmethod
    def acquire(
        cls,
        cluster: str,
        settings: Optional[RunnerSettings] = None,
    ) -> "ClusterLock":
        """
        Take the lock for a cluster, failing fast if it is held.

        Args:
            cluster: Cluster name
            settings: Settings providing the marker location

        Returns:
            Held ClusterLock

        Raises:
            ClusterBusyError: Another holder exists
            LockError: Marker file could not be opened or locked
        """
        settings = settings or get_settings()
        path = settings.lock_path(cluster)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(path), os.O_CREAT | os.O_RDWR, 0o644)
        except OSError as e:
            raise LockError(f"cannot open lock file : {path} : {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise ClusterBusyError(cluster, read_lock_holder(cluster, settings) or "")
        except OSError as e:
            os.close(fd)
            raise LockError(f"cannot lock cluster {cluster} : {e}") from e

        logger.debug(f"Acquired lock for cluster {cluster}: {path}")
        return cls(cluster, path, fd)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def record_run(self, run_id: str) -> None:
        """Overwrite the marker with the active run id (truncate, then write)."""
        if self._fd is None:
            raise LockError(f"lock for cluster {self.cluster} is not held")
        try:
            os.ftruncate(self._fd, 0)
            os.lseek(self._fd, 0, os.SEEK_SET)
            os.write(self._fd, run_id.encode())
            os.fsync(self._fd)
        except OSError as e:
            raise LockError(f"failed to write pid to lock file : {e}") from e

    def release(self) -> None:
        """Release the lock. Calling it twice is a no-op."""
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug(f"Released lock for cluster {self.cluster}")

    def __enter__(self) -> "ClusterLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def read_lock_holder(
    cluster: str,
    settings: Optional[RunnerSettings] = None,
) -> Optional[str]:
    """
    Read the run id recorded in a cluster's lock marker.

    The marker keeps the last run id after release; combine with
    is_locked() to know whether that run is still active.

    Returns:
        Run id, or None if the marker does not exist or is empty
    """
    settings = settings or get_settings()
    path = settings.lock_path(cluster)
    try:
        content = path.read_text().strip()
    except FileNotFoundError:
        return None
    return content or None


def is_locked(cluster: str, settings: Optional[RunnerSettings] = None) -> bool:
    """Probe whether some holder currently owns the cluster lock."""
    settings = settings or get_settings()
    path = settings.lock_path(cluster)
    if not path.exists():
        return False

    fd = os.open(str(path), os.O_RDONLY)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return True
    finally:
        os.close(fd)
    return False
