"""
Execute coordinator.

Runs one external job against a cluster in a background thread:

    LockWait -> Preparing -> Starting -> Running -> Finalizing -> Done

LockWait, Preparing and Starting may instead end in Failed.

The caller of Execute.run() blocks only until the process has started
(or failed to start) and gets the run id back; the job itself keeps
running in the background. Errors before the process starts are raised
to the caller. Errors after that are logged and appended to the run's
command.log, never raised.
"""

import logging
import subprocess
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional, Sequence, Tuple, Union

from cluster_runner.errors import (
    LedgerError,
    LockError,
    PostProcessingError,
    PreHookError,
    RunnerError,
    SetupError,
    SpawnError,
)
from cluster_runner.execution.history import RunHistory, RunRecord, build_record
from cluster_runner.execution.ledger import SuccessLedger
from cluster_runner.execution.lock import ClusterLock
from cluster_runner.execution.recap import NodeStatus, parse_recap
from cluster_runner.logging_config import run_extra
from cluster_runner.settings import RunnerSettings, get_settings
from cluster_runner.timestamps import now

logger = logging.getLogger(__name__)

DIVIDER = "\n\n\nCLUSTER RUNNER " + "*" * 65 + "\n"


class ExecuteState(Enum):
    """Coordinator states."""

    IDLE = "idle"
    LOCK_WAIT = "lock_wait"
    PREPARING = "preparing"
    STARTING = "starting"
    RUNNING = "running"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionOutcome:
    """
    Verdict of a finished run.

    Attributes:
        success: Every node reported unreachable=0 and failed=0
        node_status: Per-node recap counters, in recap order
        run_id: Run identifier
        run_dir: Run directory
        return_code: Exit code of the external process (informational)
        error: Why the recap could not be read, empty when it was
    """

    success: bool
    node_status: Tuple[NodeStatus, ...]
    run_id: str
    run_dir: Path
    return_code: Optional[int] = None
    error: str = ""


PreExecHook = Callable[[Path], None]
PostExecHook = Callable[[ExecutionOutcome], Optional[str]]


@dataclass(frozen=True)
class JobSpec:
    """
    What to run against a cluster.

    Attributes:
        cmd: Executable path
        args: Builds the argument list from the run directory
        cluster: Target cluster; the unit of mutual exclusion
        job_type: Tag appended to the run id and recorded in the ledger
        dir: Working directory of the process
        env: KEY=VALUE strings; None inherits this process's environment
        pre_exec: Called with the run directory before spawn; raise to abort
        post_exec: Called with the outcome after exit; returned text is
            appended to command.log
    """

    cmd: str
    args: Callable[[Path], Sequence[str]]
    cluster: str
    job_type: str
    dir: Union[str, Path] = "."
    env: Optional[Sequence[str]] = None
    pre_exec: Optional[PreExecHook] = None
    post_exec: Optional[PostExecHook] = None

    def __post_init__(self):
        if not self.cluster or "/" in self.cluster:
            raise ValueError(f"invalid cluster name: {self.cluster!r}")
        if not self.job_type:
            raise ValueError("job_type is required")
        for entry in self.env or ():
            if "=" not in entry:
                raise ValueError(f"env entry must be KEY=VALUE: {entry!r}")

    def env_dict(self) -> Optional[Dict[str, str]]:
        """Environment for subprocess, in declaration order."""
        if self.env is None:
            return None
        return dict(entry.split("=", 1) for entry in self.env)


class Execute:
    """
    Launches a JobSpec and observes it to completion.

    Usage:
        execute = Execute(spec)
        run_id = execute.run()        # returns once the process started
        outcome = execute.join()      # optional: wait for the whole run
    """

    def __init__(
        self,
        spec: JobSpec,
        settings: Optional[RunnerSettings] = None,
        history: Optional[RunHistory] = None,
        ledger: Optional[SuccessLedger] = None,
    ):
        self.spec = spec
        self.settings = settings or get_settings()
        self.history = history or RunHistory(self.settings)
        self.ledger = ledger or SuccessLedger(self.settings)

        self.state = ExecuteState.IDLE
        self.run_id: Optional[str] = None
        self.record: Optional[RunRecord] = None
        self.outcome: Optional[ExecutionOutcome] = None

        self._started: Future = Future()
        self._thread: Optional[threading.Thread] = None
        self._diagnostics: List[str] = []

    # =========================================================================
    # Caller side
    # =========================================================================

    def run(self) -> str:
        """
        Start the job and wait until the process is running.

        Returns:
            Run id

        Raises:
            LockError: Cluster is busy or its lock file is unusable
            SetupError: Run directory or log file could not be created
            PreHookError: pre_exec raised
            SpawnError: The executable could not be started
        """
        if self._thread is not None:
            raise RuntimeError("Execute.run() may only be called once")

        self._thread = threading.Thread(
            target=self._execute,
            name=f"execute-{self.spec.cluster}",
            daemon=True,
        )
        self._thread.start()

        logger.debug(f"[{self.spec.cluster}] Waiting for {self.spec.job_type} to start")
        return self._started.result()

    def join(self, timeout: Optional[float] = None) -> Optional[ExecutionOutcome]:
        """
        Wait for the background run to finish.

        Returns:
            The outcome if a post_exec hook was registered, else None
        """
        if self._thread is not None:
            self._thread.join(timeout)
        return self.outcome

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # =========================================================================
    # Background thread
    # =========================================================================

    def _set_state(self, state: ExecuteState) -> None:
        self.state = state
        logger.debug(
            f"[{self.spec.cluster}/{self.run_id or '-'}] state={state.value}",
            extra=run_extra(self.spec.cluster, run_id=self.run_id, state=state.value),
        )

    def _fail(self, error: Exception, lock: Optional[ClusterLock] = None) -> None:
        # The caller may retry as soon as run() raises; the lock must be free by then
        if lock is not None:
            lock.release()
        self._set_state(ExecuteState.FAILED)
        logger.warning(f"[{self.spec.cluster}] {self.spec.job_type} not started: {error}")
        self._started.set_exception(error)

    def _execute(self) -> None:
        spec = self.spec
        self._set_state(ExecuteState.LOCK_WAIT)
        try:
            lock = ClusterLock.acquire(spec.cluster, self.settings)
        except LockError as e:
            self._fail(e)
            return

        try:
            self._execute_locked(lock)
        except Exception as e:
            if not self._started.done():
                self._fail(e, lock)
            else:
                logger.exception(f"[{spec.cluster}/{self.run_id}] Unexpected error after start")
        finally:
            lock.release()
            if self.state != ExecuteState.FAILED:
                self._set_state(ExecuteState.DONE)

    def _execute_locked(self, lock: ClusterLock) -> None:
        spec = self.spec

        self._set_state(ExecuteState.PREPARING)
        try:
            run_id, run_dir = self.history.prepare_run_dir(spec.cluster, spec.job_type)
            self._pre_exec(run_dir)
        except RunnerError as e:
            self._fail(e, lock)
            return

        self._set_state(ExecuteState.STARTING)
        log_path = self.history.log_path(run_dir)
        try:
            log_file = open(log_path, "wb")
        except OSError as e:
            error = SetupError(f"cannot create logFile : {log_path} : {e}")
            error.__cause__ = e
            self._fail(error, lock)
            return

        with log_file:
            try:
                process, argv = self._spawn(run_dir, log_file)
            except SpawnError as e:
                log_file.close()
                self.history.remove_run_dir(run_dir)
                self._fail(e, lock)
                return

            self._set_state(ExecuteState.RUNNING)
            self._announce(lock, run_id, run_dir, argv)

            return_code = process.wait()
            log_file.flush()

        logger.info(
            f"[{spec.cluster}/{run_id}] {spec.job_type} exited with code {return_code}",
            extra=run_extra(spec.cluster, run_id=run_id, job_type=spec.job_type),
        )

        self._set_state(ExecuteState.FINALIZING)
        self.outcome = self._finalize(run_id, run_dir, log_path, return_code)

    def _pre_exec(self, run_dir: Path) -> None:
        if self.spec.pre_exec is None:
            return
        try:
            self.spec.pre_exec(run_dir)
        except Exception as e:
            raise PreHookError(f"failed to prepare for the task : {e}") from e

    def _spawn(self, run_dir: Path, log_file: IO[bytes]) -> Tuple[subprocess.Popen, List[str]]:
        spec = self.spec
        try:
            argv = [str(arg) for arg in spec.args(run_dir)]
        except Exception as e:
            raise SpawnError(f"failed to build arguments for {spec.cmd} : {e}") from e

        try:
            process = subprocess.Popen(
                [spec.cmd, *argv],
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                cwd=str(spec.dir),
                env=spec.env_dict(),
            )
        except (OSError, ValueError) as e:
            command = " ".join([spec.cmd, *argv])
            raise SpawnError(f"failed to start command {command} : {e}") from e

        return process, argv

    def _announce(self, lock: ClusterLock, run_id: str, run_dir: Path, argv: List[str]) -> None:
        """Persist the run record, mark the lock and unblock the caller."""
        spec = self.spec
        logger.info(
            f"[{spec.cluster}/{run_id}] Started {spec.job_type}: {spec.cmd}",
            extra=run_extra(spec.cluster, run_id=run_id, job_type=spec.job_type),
        )

        try:
            self.record = build_record(spec, run_id, run_dir, argv)
            self._diagnostics.extend(self.history.persist_record(self.record))
        except Exception as e:
            logger.warning(f"[{spec.cluster}/{run_id}] Failed to build run record: {e}")
            self._diagnostics.append(f"failed to build run record : {e}")

        try:
            lock.record_run(run_id)
        except LockError as e:
            logger.warning(f"[{spec.cluster}/{run_id}] {e}")
            self._diagnostics.append(str(e))

        self.run_id = run_id
        self._started.set_result(run_id)

    def _read_outcome(self, run_id: str, run_dir: Path, log_path: Path, return_code: int) -> ExecutionOutcome:
        try:
            output = log_path.read_text(encoding="utf-8", errors="replace")
            recap = parse_recap(output, self.settings.recap_banner)
        except (OSError, PostProcessingError) as e:
            return ExecutionOutcome(
                success=False,
                node_status=(),
                run_id=run_id,
                run_dir=run_dir,
                return_code=return_code,
                error=str(e),
            )

        return ExecutionOutcome(
            success=recap.success,
            node_status=recap.node_status,
            run_id=run_id,
            run_dir=run_dir,
            return_code=return_code,
        )

    def _finalize(
        self,
        run_id: str,
        run_dir: Path,
        log_path: Path,
        return_code: int,
    ) -> Optional[ExecutionOutcome]:
        spec = self.spec
        prefix = f"[{spec.cluster}/{run_id}]"

        # The recap is read from the tool's output alone, before anything is appended
        outcome = None
        if spec.post_exec is not None:
            outcome = self._read_outcome(run_id, run_dir, log_path, return_code)

        try:
            log = open(log_path, "a", encoding="utf-8")
        except OSError as e:
            logger.error(f"{prefix} Cannot reopen {log_path}: {e}")
            return None

        with log:
            if outcome is None:
                for message in self._diagnostics:
                    log.write(f"{message}\n")
                return None

            log.write(DIVIDER)
            for message in self._diagnostics:
                log.write(f"{message}\n")
            if outcome.error:
                logger.error(f"{prefix} Cannot read recap: {outcome.error}")
                log.write(f"Error in recap: {outcome.error}\n")
            log.flush()

            message = None
            try:
                message = spec.post_exec(outcome)
            except Exception as e:
                logger.error(f"{prefix} post_exec failed: {e}")
                log.write(f"Error in post_exec: {e}\n")

            if outcome.success:
                try:
                    self.ledger.append_success(spec.cluster, spec.job_type, now(), run_id)
                except LedgerError as e:
                    logger.warning(f"{prefix} failed to add success task: {e}")
                    log.write(f"Error in success ledger: {e}\n")

            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            if message:
                log.write(str(message))

        return outcome


def launch(spec: JobSpec, settings: Optional[RunnerSettings] = None) -> Execute:
    """
    Convenience function to start a job.

    Returns:
        The running Execute; its run_id is set

    Raises:
        RunnerError: The job could not be started
    """
    execute = Execute(spec, settings=settings)
    execute.run()
    return execute
