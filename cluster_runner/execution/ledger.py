"""
Success ledger.

Records, per cluster, which job types have completed successfully and
when. One YAML file per cluster:

    <data_dir>/<cluster>/success_tasks.yaml

Appends for one cluster only ever happen while that cluster's lock is
held, but appends for different clusters may run concurrently, and
readers may run at any time. Writes are serialized in-process with a
module-level RLock and across processes with a FileLock next to the
ledger file, and go through a temp file so readers never see a partial
document.
"""

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from filelock import FileLock, Timeout

from cluster_runner.errors import LedgerError
from cluster_runner.settings import RunnerSettings, get_settings

logger = logging.getLogger(__name__)

# Shared by every SuccessLedger in this process
_ledger_lock = threading.RLock()


@dataclass
class SuccessTask:
    """A successfully completed job type."""

    type: str
    timestamp: str
    pid: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SuccessTask":
        return cls(
            type=str(data["type"]),
            timestamp=str(data["timestamp"]),
            pid=str(data["pid"]),
        )


class SuccessLedger:
    """
    Append-only ledger of successful runs.

    Usage:
        ledger = SuccessLedger()
        ledger.append_success("prod", "install", now(), run_id)
        last = ledger.last_success("prod", "install")
    """

    def __init__(
        self,
        settings: Optional[RunnerSettings] = None,
        lock_timeout: float = 10.0,
    ):
        """
        Initialize ledger.

        Args:
            settings: Settings providing ledger locations
            lock_timeout: Seconds to wait for the cross-process file lock
        """
        self.settings = settings or get_settings()
        self.lock_timeout = lock_timeout
        self._lock = _ledger_lock

    def _path(self, cluster: str) -> Path:
        return self.settings.ledger_path(cluster)

    def _file_lock(self, path: Path) -> FileLock:
        return FileLock(str(path) + ".lock", timeout=self.lock_timeout)

    def _load(self, path: Path) -> List[SuccessTask]:
        if not path.exists():
            return []

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise LedgerError(f"ledger {path} is not a mapping")
        entries = data.get("success_tasks") or []
        if not isinstance(entries, list):
            raise LedgerError(f"ledger {path}: success_tasks is not a list")

        tasks = []
        for entry in entries:
            try:
                tasks.append(SuccessTask.from_dict(entry))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed ledger entry in {path}: {e}")
        return tasks

    def _save(self, path: Path, tasks: List[SuccessTask]) -> None:
        data = {"success_tasks": [t.to_dict() for t in tasks]}

        temp_file = path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)

        temp_file.replace(path)

    def append_success(
        self,
        cluster: str,
        job_type: str,
        timestamp: datetime,
        run_id: str,
    ) -> SuccessTask:
        """
        Record a successful run.

        Args:
            cluster: Cluster name
            job_type: Job type tag
            timestamp: Completion time
            run_id: Run identifier

        Returns:
            The appended SuccessTask

        Raises:
            LedgerError: Ledger could not be locked, read or written
        """
        path = self._path(cluster)
        task = SuccessTask(type=job_type, timestamp=timestamp.isoformat(), pid=run_id)

        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with self._file_lock(path):
                    tasks = self._load(path)
                    tasks.append(task)
                    self._save(path, tasks)
            except Timeout as e:
                raise LedgerError(f"timed out locking ledger {path}") from e
            except (OSError, yaml.YAMLError) as e:
                raise LedgerError(f"failed to add success task to {path} : {e}") from e

        logger.info(f"[{cluster}/{run_id}] Recorded successful {job_type} run")
        return task

    def list_success(self, cluster: str) -> List[SuccessTask]:
        """
        List successful runs for a cluster, oldest first.

        Raises:
            LedgerError: Ledger could not be read
        """
        path = self._path(cluster)
        if not path.parent.exists():
            return []

        with self._lock:
            try:
                with self._file_lock(path):
                    return self._load(path)
            except Timeout as e:
                raise LedgerError(f"timed out locking ledger {path}") from e
            except (OSError, yaml.YAMLError) as e:
                raise LedgerError(f"failed to read ledger {path} : {e}") from e

    def last_success(self, cluster: str, job_type: str) -> Optional[SuccessTask]:
        """Most recent successful run of a job type, or None."""
        for task in reversed(self.list_success(cluster)):
            if task.type == job_type:
                return task
        return None
