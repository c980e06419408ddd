"""
Run history store.

Layout per cluster:

    <data_dir>/<cluster>/history/<run_id>/command.log
                                         /command.string
                                         /command.yaml

Run ids are ``<UTC stamp>_<job_type>``; they sort chronologically.
"""

import logging
import shlex
import shutil
import threading
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

import yaml

from cluster_runner.errors import SetupError
from cluster_runner.settings import RunnerSettings, get_settings
from cluster_runner.timestamps import now, run_stamp

if TYPE_CHECKING:
    from cluster_runner.execution.executor import JobSpec

logger = logging.getLogger(__name__)

COMMAND_STRING_FILE = "command.string"
COMMAND_YAML_FILE = "command.yaml"

_run_id_lock = threading.Lock()
_last_run_time = None


def new_run_id(job_type: str) -> str:
    """
    Generate a run id from the current UTC time and the job type.

    Ids issued by this process are strictly increasing: if the clock has
    not moved past the previous id's millisecond, the millisecond is bumped.
    """
    global _last_run_time
    with _run_id_lock:
        current = now()
        current = current.replace(microsecond=current.microsecond // 1000 * 1000)
        if _last_run_time is not None and current <= _last_run_time:
            current = _last_run_time + timedelta(milliseconds=1)
        _last_run_time = current
    return f"{run_stamp(current)}_{job_type}"


@dataclass(frozen=True)
class RunRecord:
    """What was launched for one run; written once, never updated."""

    run_id: str
    run_dir: Path
    command_string: str
    descriptor: str


def shell_line(spec: "JobSpec", argv: Sequence[str]) -> str:
    """Equivalent shell invocation with the environment exported first."""
    line = f"cd {spec.dir}"
    for env in spec.env or ():
        line += f' && export "{env}"'
    return f"{line} && {shlex.join([spec.cmd, *argv])}"


def build_record(
    spec: "JobSpec",
    run_id: str,
    run_dir: Path,
    argv: Sequence[str],
) -> RunRecord:
    """
    Build the run record for a started process.

    Args:
        spec: Job being run
        run_id: Run identifier
        run_dir: Run directory
        argv: Arguments as materialized against run_dir

    Returns:
        RunRecord with command string and YAML descriptor
    """
    descriptor = {
        "cluster": spec.cluster,
        "history": str(run_dir),
        "run_id": run_id,
        "type": spec.job_type,
        "dir": str(spec.dir),
        "cmd": spec.cmd,
        "args": list(argv),
        "env": list(spec.env or ()),
        "shell": shell_line(spec, argv),
    }
    return RunRecord(
        run_id=run_id,
        run_dir=run_dir,
        command_string=shlex.join([spec.cmd, *argv]),
        descriptor=yaml.safe_dump(
            descriptor, explicit_start=True, sort_keys=False, default_flow_style=False
        ),
    )


class RunHistory:
    """
    Creates and reads run directories.

    Usage:
        history = RunHistory()
        run_id, run_dir = history.prepare_run_dir("prod", "install")
        ...
        history.persist_record(record)
    """

    def __init__(self, settings: Optional[RunnerSettings] = None):
        self.settings = settings or get_settings()

    def prepare_run_dir(self, cluster: str, job_type: str) -> Tuple[str, Path]:
        """
        Create the history directory and a fresh run directory.

        Both creations are idempotent.

        Returns:
            (run_id, run_dir)

        Raises:
            SetupError: A directory could not be created
        """
        run_id = new_run_id(job_type)
        history_dir = self.settings.history_dir(cluster)
        try:
            history_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SetupError(f"cannot create historyDir : {history_dir} : {e}") from e

        run_dir = history_dir / run_id
        try:
            run_dir.mkdir(exist_ok=True)
        except OSError as e:
            raise SetupError(f"cannot create runDir : {run_dir} : {e}") from e

        return run_id, run_dir

    def log_path(self, run_dir: Path) -> Path:
        return run_dir / self.settings.log_filename

    def persist_record(self, record: RunRecord) -> List[str]:
        """
        Write command.string and command.yaml into the run directory.

        Best-effort: the process is already running, so failures are
        logged and returned instead of raised.

        Returns:
            Error messages, empty when both files were written
        """
        errors = []
        artifacts = (
            (COMMAND_STRING_FILE, record.command_string),
            (COMMAND_YAML_FILE, record.descriptor),
        )
        for name, content in artifacts:
            path = record.run_dir / name
            try:
                path.write_text(content)
            except OSError as e:
                message = f"failed to write {path} : {e}"
                logger.warning(f"[{record.run_id}] {message}")
                errors.append(message)
        return errors

    def remove_run_dir(self, run_dir: Path) -> None:
        """Remove a run directory left behind by a run that never started."""
        try:
            shutil.rmtree(run_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove run directory {run_dir}: {e}")

    def list_runs(self, cluster: str) -> List[str]:
        """List run ids for a cluster, oldest first."""
        history_dir = self.settings.history_dir(cluster)
        if not history_dir.exists():
            return []
        return sorted(p.name for p in history_dir.iterdir() if p.is_dir())

    def read_log(self, cluster: str, run_id: str) -> str:
        """
        Read a run's console log.

        Raises:
            FileNotFoundError: Unknown run
        """
        path = self.log_path(self.settings.history_dir(cluster) / run_id)
        return path.read_text(errors="replace")

    def read_record(self, cluster: str, run_id: str) -> dict:
        """Load a run's command.yaml descriptor."""
        path = self.settings.history_dir(cluster) / run_id / COMMAND_YAML_FILE
        with open(path) as f:
            return yaml.safe_load(f) or {}
