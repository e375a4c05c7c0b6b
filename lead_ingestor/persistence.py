"""Batched, retried, transactional writes of admitted leads.

Each batch is one transaction covering its address rows and their phone
queue rows. Transient failures retry the whole transaction with exponential
backoff; once attempts run out the batch is reported as ``PersistenceFailed``
lead by lead and the engine moves on to the next batch. DMID conflicts that
slipped past the dedup gate are skipped row by row inside the transaction so
their siblings still commit.
"""

from __future__ import annotations

import logging
from concurrent.futures import ALL_COMPLETED, FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from .batching import Batch
from .db import InsertOutcome
from .errors import PersistenceFailed
from .guard import Deadline
from .models import ParsedLead
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class LeadWriter(Protocol):
    def insert_leads(self, leads: Sequence[ParsedLead]) -> InsertOutcome: ...


@dataclass(slots=True)
class BatchResult:
    batch: Batch
    inserted: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    error: Optional[PersistenceFailed] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PersistenceEngine:
    """Run batch transactions on a bounded worker pool.

    ``workers=1`` keeps commits strictly in batch order. ``submit`` blocks once
    ``max_in_flight`` batches are pending so parsing cannot outrun the store.
    """

    def __init__(
        self,
        store: LeadWriter,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        workers: int = 1,
        max_in_flight: Optional[int] = None,
        log_extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.workers = workers
        self.max_in_flight = max_in_flight or workers * 2
        self.log_extra: Dict[str, Any] = dict(log_extra or {})
        self.results: List[BatchResult] = []
        self._pending: List[Future] = []
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="lead-persist"
        )

    def __enter__(self) -> "PersistenceEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close(cancel_pending=exc_type is not None)

    # ------------------------------------------------------------------
    # Single batch
    # ------------------------------------------------------------------

    def persist(self, batch: Batch) -> BatchResult:
        try:
            outcome = self.retry_policy.call(self.store.insert_leads, batch.leads)
        except Exception as exc:  # noqa: BLE001 - contained per batch
            failure = PersistenceFailed(batch, exc)
            self._report_failure(failure)
            return BatchResult(batch=batch, error=failure)

        if outcome.conflicts:
            logger.warning(
                "Batch %d: %d row(s) skipped on DMID conflict: %s",
                batch.number,
                len(outcome.conflicts),
                ", ".join(outcome.conflicts[:10]),
                extra=self.log_extra,
            )
        logger.info(
            "Committed batch %d: %d row(s) inserted",
            batch.number,
            len(outcome.inserted),
            extra=self.log_extra,
        )
        return BatchResult(batch=batch, inserted=outcome.inserted, conflicts=outcome.conflicts)

    def _report_failure(self, failure: PersistenceFailed) -> None:
        batch = failure.batch
        logger.error(
            "Batch %d failed after retries (%s: %s); %d lead(s) not persisted",
            batch.number,
            failure.original_exception.__class__.__name__,
            failure.original_exception,
            len(batch),
            extra=self.log_extra,
        )
        for lead in batch.leads:
            logger.error(
                "PersistenceFailed line=%d dmid=%s",
                lead.line_number,
                lead.dmid,
                extra=self.log_extra,
            )

    # ------------------------------------------------------------------
    # Pipelined batches
    # ------------------------------------------------------------------

    def submit(self, batch: Batch, *, deadline: Optional[Deadline] = None) -> None:
        while len(self._pending) >= self.max_in_flight:
            self._wait(FIRST_COMPLETED, deadline)
        self._pending.append(self._executor.submit(self.persist, batch))

    def drain(self, deadline: Optional[Deadline] = None) -> List[BatchResult]:
        """Wait for every submitted batch; results come back in batch order."""

        while self._pending:
            self._wait(ALL_COMPLETED, deadline)
        return sorted(self.results, key=lambda result: result.batch.number)

    def close(self, *, cancel_pending: bool = False) -> None:
        """Stop the pool; queued batches are dropped when ``cancel_pending`` is set.

        Transactions already running are always allowed to finish.
        """

        self._executor.shutdown(wait=True, cancel_futures=cancel_pending)
        done = [future for future in self._pending if future.done() and not future.cancelled()]
        self._collect(done)
        cancelled = [future for future in self._pending if future.cancelled()]
        if cancelled:
            logger.warning(
                "Cancelled %d queued batch(es) before they reached the store",
                len(cancelled),
                extra=self.log_extra,
            )
        self._pending.clear()

    def _wait(self, return_when: str, deadline: Optional[Deadline]) -> None:
        timeout = deadline.remaining() if deadline is not None else None
        done, _ = wait(self._pending, timeout=timeout, return_when=return_when)
        self._collect(done)
        if not done and deadline is not None:
            deadline.check()

    def _collect(self, done) -> None:
        for future in done:
            if future in self._pending:
                self._pending.remove(future)
            self.results.append(future.result())


__all__ = ["BatchResult", "LeadWriter", "PersistenceEngine"]
