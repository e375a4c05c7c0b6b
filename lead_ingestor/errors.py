"""Error taxonomy for the lead ingestion pipeline.

Row-scoped errors (``MalformedRow``) are contained by the pipeline loop,
batch-scoped errors (``PersistenceFailed``) are contained per batch, and
run-scoped errors (``AlreadyRunning``, ``ExecutionTimeout``,
``ConfigurationError``) end the current file or invocation.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .batching import Batch


class LeadIngestError(RuntimeError):
    """Base class for every error raised by ``lead_ingestor``."""


class ConfigurationError(LeadIngestError):
    """Raised when settings are missing or invalid."""


class AlreadyRunning(LeadIngestError):
    """Raised when the run lock is already held by another invocation."""

    def __init__(self, lock_path: Path, pid: Optional[int] = None) -> None:
        holder = f" (pid {pid})" if pid else ""
        super().__init__(f"Another run holds {lock_path}{holder}")
        self.lock_path = lock_path
        self.pid = pid


class ExecutionTimeout(LeadIngestError):
    """Raised when a file exceeds the maximum execution duration."""

    def __init__(self, limit_seconds: float) -> None:
        super().__init__(f"Execution exceeded {limit_seconds:g} seconds")
        self.limit_seconds = limit_seconds


class MalformedRow(LeadIngestError, ValueError):
    """A CSV record that cannot be turned into a lead."""

    def __init__(self, line_number: int, reason: str) -> None:
        super().__init__(f"line {line_number}: {reason}")
        self.line_number = line_number
        self.reason = reason


class InvalidFileError(LeadIngestError, ValueError):
    """Raised when a CSV header cannot be mapped onto lead fields."""


class TransientStoreError(LeadIngestError):
    """A store failure that is expected to succeed when retried."""


class CampaignResolutionFailure(LeadIngestError):
    """Campaign lookup-or-create failed after exhausting its retries."""


class PersistenceFailed(LeadIngestError):
    """A batch could not be committed after exhausting its retries."""

    def __init__(self, batch: "Batch", original_exception: BaseException) -> None:
        super().__init__(f"Batch {batch.number} failed: {original_exception}")
        self.batch = batch
        self.original_exception = original_exception


__all__ = [
    "LeadIngestError",
    "ConfigurationError",
    "AlreadyRunning",
    "ExecutionTimeout",
    "MalformedRow",
    "InvalidFileError",
    "TransientStoreError",
    "CampaignResolutionFailure",
    "PersistenceFailed",
]
