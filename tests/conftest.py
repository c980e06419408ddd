"""Shared pytest fixtures for cluster_runner tests."""
import os
import sys
import textwrap

import pytest

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)


RECAP_OK = """
PLAY RECAP *********************************************************************
node1                      : ok=12   changed=3    unreachable=0    failed=0    skipped=4    rescued=0    ignored=0
node2                      : ok=10   changed=2    unreachable=0    failed=0    skipped=4    rescued=0    ignored=1

Saturday 01 February 2025  10:02:11 +0000 (0:00:00.041)       0:03:21.512 ******
"""

RECAP_FAILED = """
PLAY RECAP *********************************************************************
node1                      : ok=12   changed=3    unreachable=0    failed=0    skipped=4    rescued=0    ignored=0
node2                      : ok=2    changed=0    unreachable=0    failed=1    skipped=0    rescued=0    ignored=0

"""


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a per-test data directory."""
    from cluster_runner.settings import RunnerSettings

    return RunnerSettings(data_dir=tmp_path / "inventory", log_format="text")


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Keep the settings singleton from leaking between tests."""
    yield
    from cluster_runner.settings import get_settings
    get_settings.cache_clear()


@pytest.fixture
def recap_ok():
    return RECAP_OK


@pytest.fixture
def recap_failed():
    return RECAP_FAILED


# =============================================================================
# Fake Tool Fixtures
# =============================================================================

def _tool_args(source: str):
    """Argument builder running ``source`` with the run dir as argv[1]."""
    script = textwrap.dedent(source)
    return lambda run_dir: ["-c", script, str(run_dir)]


@pytest.fixture
def make_spec(tmp_path):
    """Build a JobSpec that runs a small Python program as the tool."""
    from cluster_runner.execution.executor import JobSpec

    def _make(source: str = "print('hello')", **kwargs):
        kwargs.setdefault("cluster", "prod")
        kwargs.setdefault("job_type", "install")
        kwargs.setdefault("dir", str(tmp_path))
        return JobSpec(cmd=sys.executable, args=_tool_args(source), **kwargs)

    return _make


@pytest.fixture
def gate(tmp_path):
    """A file whose creation lets a waiting fake tool exit."""
    return tmp_path / "gate"


@pytest.fixture
def gated_source(gate):
    """Tool program that blocks until the gate file exists, then prints output."""

    def _source(output: str = "") -> str:
        return f"""
            import os, sys, time
            deadline = time.time() + 20
            while not os.path.exists({str(gate)!r}) and time.time() < deadline:
                time.sleep(0.02)
            sys.stdout.write({output!r})
        """

    return _source
