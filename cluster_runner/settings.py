"""
Central configuration using Pydantic BaseSettings.

Every field can be overridden with a CLUSTER_RUNNER_<FIELD> environment
variable or a .env file in the working directory.

Usage:
    from cluster_runner.settings import get_settings

    settings = get_settings()
    print(settings.cluster_dir("prod"))

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

LOG_FORMATS = ("json", "text")


class RunnerSettings(BaseSettings):
    """Filesystem layout, recap contract and logging configuration."""

    model_config = {
        "env_prefix": "CLUSTER_RUNNER_",
        "extra": "ignore",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    # Layout: <data_dir>/<cluster>/history/<run_id>/command.log
    data_dir: Path = Path("data/inventory")
    lock_dir: Optional[Path] = None  # Falls back to <data_dir>/<cluster>/
    history_dirname: str = "history"
    log_filename: str = "command.log"
    ledger_filename: str = "success_tasks.yaml"

    # Recap contract of the wrapped tool
    recap_banner: str = "PLAY RECAP"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    @field_validator("data_dir", "lock_dir")
    @classmethod
    def _absolute(cls, value: Optional[Path]) -> Optional[Path]:
        if value is None:
            return value
        return value.expanduser().resolve()

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        value = value.lower()
        if value not in LOG_FORMATS:
            raise ValueError(f"log_format must be one of {', '.join(LOG_FORMATS)}")
        return value

    @field_validator("recap_banner")
    @classmethod
    def _non_empty_banner(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("recap_banner must not be empty")
        return value

    def cluster_dir(self, cluster: str) -> Path:
        """Directory holding everything that belongs to one cluster."""
        return self.data_dir / cluster

    def history_dir(self, cluster: str) -> Path:
        return self.cluster_dir(cluster) / self.history_dirname

    def lock_path(self, cluster: str) -> Path:
        """Marker file used as the cluster's cross-process lock."""
        if self.lock_dir is not None:
            return self.lock_dir / f"{cluster}.lock"
        return self.cluster_dir(cluster) / "cluster.lock"

    def ledger_path(self, cluster: str) -> Path:
        return self.cluster_dir(cluster) / self.ledger_filename


@lru_cache(maxsize=1)
def get_settings() -> RunnerSettings:
    """
    Get the settings singleton.

    Lazy-initialized on first call. Tests can reset via:
    get_settings.cache_clear()
    """
    return RunnerSettings()
