"""Logging setup for lead ingestion runs.

Every record is formatted with ``run_id`` and ``file`` fields. Pipeline code
passes them via ``extra=log_context(...)``; records from anywhere else show
``-`` for both.
"""

import logging
import os
import sys
from typing import Dict, Optional, TextIO, Union

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s run_id=%(run_id)s file=%(file)s %(message)s"
_CONTEXT_DEFAULTS = {"run_id": "-", "file": "-"}


def _resolve_level(level: Union[str, int, None]) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    level: Union[str, int, None] = None, *, stream: Optional[TextIO] = None
) -> int:
    """Install the run formatter on the root logger and return the level used."""

    resolved = _resolve_level(level)
    formatter = logging.Formatter(LOG_FORMAT, defaults=_CONTEXT_DEFAULTS)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.addHandler(logging.StreamHandler(stream or sys.stderr))

    root_logger.setLevel(resolved)
    for handler in root_logger.handlers:
        handler.setLevel(resolved)
        handler.setFormatter(formatter)

    # The pool reports every connection check at INFO.
    logging.getLogger("psycopg.pool").setLevel(max(resolved, logging.WARNING))
    return resolved


def log_context(run_id: str, file_name: str = "-") -> Dict[str, str]:
    return {"run_id": run_id, "file": file_name}


__all__ = ["LOG_FORMAT", "configure_logging", "log_context"]
