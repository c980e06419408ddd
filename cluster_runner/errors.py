"""
Error taxonomy for cluster job execution.

Error Hierarchy:
- RunnerError: base for everything raised by cluster_runner
  - LockError / ClusterBusyError: cluster lock could not be taken (retryable)
  - SetupError: history/run directory or log file could not be created
  - PreHookError: caller-supplied pre-execution hook rejected the run
  - SpawnError: the external executable could not be started
  - PostProcessingError: recap parsing or post hook failed after the run
    - RecapNotFoundError / RecapParseError
  - LedgerError: success ledger could not be updated

Errors raised before the process starts reach the caller of Execute.run().
Everything after that point is written into the run's own log file.

Usage:
    from cluster_runner.errors import ClusterBusyError, RunnerError

    try:
        run_id = Execute(spec).run()
    except ClusterBusyError as e:
        print(f"{e.cluster} is busy with {e.holder}")
    except RunnerError as e:
        print(f"{e.stage}: {e}")
"""

from typing import Optional


class RunnerError(Exception):
    """Base class for cluster_runner errors."""

    stage = "runner"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


# =============================================================================
# Pre-start errors (returned to the caller)
# =============================================================================

class LockError(RunnerError):
    """Cluster lock could not be acquired or written."""

    stage = "lock"


class ClusterBusyError(LockError):
    """Another run currently holds the cluster lock."""

    def __init__(self, cluster: str, holder: str = ""):
        message = f"cluster {cluster} is locked by another task"
        if holder:
            message += f" : {holder}"
        super().__init__(message)
        self.cluster = cluster
        self.holder = holder


class SetupError(RunnerError):
    """Run directory or log file could not be created."""

    stage = "setup"


class PreHookError(RunnerError):
    """Pre-execution hook failed."""

    stage = "pre_exec"


class SpawnError(RunnerError):
    """External process could not be started."""

    stage = "spawn"


# =============================================================================
# Post-start errors (logged into the run, never raised to the caller)
# =============================================================================

class PostProcessingError(RunnerError):
    """Failure after the process already ran."""

    stage = "post_exec"


class RecapNotFoundError(PostProcessingError):
    """Tool output does not contain a recap banner."""


class RecapParseError(PostProcessingError):
    """A recap line does not have the ``node : key=value`` shape."""


class LedgerError(RunnerError):
    """Success ledger could not be read or written."""

    stage = "ledger"
