"""
Structured JSON logging configuration.

Embedding applications call configure_logging() once at startup; it
attaches handlers to the ``cluster_runner`` logger only, leaving the root
logger alone. Run-scoped records carry the fields built by run_extra(),
which JSONFormatter lifts into top-level keys.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from cluster_runner.settings import RunnerSettings, get_settings

LOGGER_NAME = "cluster_runner"

RUN_CONTEXT_FIELDS = ('cluster', 'run_id', 'job_type', 'state')


def run_extra(
    cluster: str,
    run_id: Optional[str] = None,
    job_type: Optional[str] = None,
    state: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the ``extra=`` mapping for a run-scoped log record.

    Unset fields are left out so they do not show up as nulls.
    """
    values = {'cluster': cluster, 'run_id': run_id, 'job_type': job_type, 'state': state}
    return {k: v for k, v in values.items() if v is not None}


class JSONFormatter(logging.Formatter):
    """JSON formatter that keeps the run context of each record."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for attr in RUN_CONTEXT_FIELDS:
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        return json.dumps(log_entry)


def configure_logging(settings: Optional[RunnerSettings] = None) -> logging.Logger:
    """Install handlers on the cluster_runner logger.

    The console handler uses JSONFormatter or a plain text format depending
    on ``log_format``. When ``log_file`` is set, a rotating JSON file
    handler is added as well. Calling it again replaces the handlers.

    Args:
        settings: Settings to read level/format/file from (default: get_settings())

    Returns:
        The cluster_runner logger.
    """
    settings = settings or get_settings()

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    logger.handlers = []

    console_handler = logging.StreamHandler()
    if settings.log_format == 'json':
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s %(name)s: %(message)s'
        ))
    logger.addHandler(console_handler)

    if settings.log_file:
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8',
        )
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    return logger
