"""
Cluster job execution.

This package launches external automation jobs against a cluster and
observes them:
- Cross-process cluster lock (one run per cluster)
- Timestamped run history with command.log, command.string, command.yaml
- PLAY RECAP parsing into per-node status
- Success ledger of completed job types

Usage:
    from cluster_runner.execution import Execute, JobSpec
    from cluster_runner.logging_config import configure_logging

    spec = JobSpec(
        cmd="ansible-playbook",
        args=lambda run_dir: ["-i", "inventory.yaml", "cluster.yml"],
        cluster="prod",
        job_type="install",
        dir="/opt/kubespray",
        post_exec=lambda outcome: f"success: {outcome.success}\\n",
    )

    configure_logging()            # once, at application startup
    run_id = Execute(spec).run()   # returns once the playbook started
"""

from cluster_runner.execution.executor import (
    Execute,
    ExecuteState,
    ExecutionOutcome,
    JobSpec,
    launch,
)
from cluster_runner.execution.history import RunHistory, RunRecord, new_run_id
from cluster_runner.execution.ledger import SuccessLedger, SuccessTask
from cluster_runner.execution.lock import ClusterLock, is_locked, read_lock_holder
from cluster_runner.execution.recap import NodeStatus, RecapResult, parse_recap

__all__ = [
    "ClusterLock",
    "Execute",
    "ExecuteState",
    "ExecutionOutcome",
    "JobSpec",
    "NodeStatus",
    "RecapResult",
    "RunHistory",
    "RunRecord",
    "SuccessLedger",
    "SuccessTask",
    "is_locked",
    "launch",
    "new_run_id",
    "parse_recap",
    "read_lock_holder",
]
