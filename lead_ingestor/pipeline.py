"""End-to-end ingestion of inbound lead CSV files.

A run takes the lock file, scans the inbound directory and processes each
matching file in name order:

* rows stream through the normalizer, the dedup gate and the campaign
  resolver in file order, so the first occurrence of a DMID or phone wins;
* admitted leads are accumulated into batches and handed to the
  persistence engine, which may commit several batches concurrently;
* the file is moved to the processed directory only after every batch has
  committed. A file with failed batches, or one that ran past the time
  limit, stays in the inbound directory and is picked up again next run;
  leads committed before the failure are rejected as duplicates then.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, List, Optional, Protocol

from .batching import Batch, BatchAccumulator, chunked
from .campaigns import CampaignResolver, CampaignStore
from .db import LeadStore
from .dedup import Decision, DedupGate, DedupIndex, DuplicateLookup
from .errors import (
    AlreadyRunning,
    CampaignResolutionFailure,
    ExecutionTimeout,
    InvalidFileError,
    MalformedRow,
)
from .guard import Deadline, ExecutionGuard
from .logging_setup import log_context
from .models import ImportStats, ParsedLead
from .normalizer import FileContext, HeaderMap, RowNormalizer, iter_records
from .persistence import BatchResult, LeadWriter, PersistenceEngine
from .retry import RetryPolicy
from .settings import Settings

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    OK = 0
    COMPLETED_WITH_REJECTIONS = 1
    PERSISTENCE_FAILED = 2
    ALREADY_RUNNING = 3
    EXECUTION_TIMEOUT = 4
    CONFIGURATION_ERROR = 5
    FATAL = 6


class FileStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    TIMED_OUT = "timed_out"
    INVALID = "invalid"
    ERROR = "error"


class Store(DuplicateLookup, CampaignStore, LeadWriter, Protocol):
    pass


StoreFactory = Callable[[Settings], ContextManager[Any]]


@dataclass(slots=True)
class FileReport:
    path: Path
    status: FileStatus
    stats: ImportStats = field(default_factory=ImportStats)
    destination: Optional[Path] = None

    @property
    def exit_code(self) -> ExitCode:
        if self.status is FileStatus.COMPLETED:
            if self.stats.rejected or self.stats.malformed or self.stats.conflicts:
                return ExitCode.COMPLETED_WITH_REJECTIONS
            return ExitCode.OK
        if self.status is FileStatus.PARTIAL:
            return ExitCode.PERSISTENCE_FAILED
        if self.status is FileStatus.TIMED_OUT:
            return ExitCode.EXECUTION_TIMEOUT
        if self.status is FileStatus.INVALID:
            return ExitCode.COMPLETED_WITH_REJECTIONS
        return ExitCode.FATAL


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def scan_inbound(upload_dir: Path, pattern: str = "*.csv") -> List[Path]:
    return sorted(path for path in Path(upload_dir).glob(pattern) if path.is_file())


def _move_file(file_path: Path, destination_dir: Path) -> Path:
    destination_dir.mkdir(parents=True, exist_ok=True)
    destination = destination_dir / file_path.name
    if destination.exists():
        destination.unlink()
    return file_path.replace(destination)


def _write_json_atomic(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    partial_path = path.with_suffix(path.suffix + ".partial")
    try:
        partial_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        partial_path.replace(path)
    finally:
        if partial_path.exists():
            partial_path.unlink(missing_ok=True)


def _quarantine(file_path: Path, failed_dir: Path, error: Exception, log_extra: Dict[str, Any]) -> Path:
    destination = _move_file(file_path, failed_dir)
    logger.info("Moved file to %s", destination, extra=log_extra)
    err_path = destination.with_name(f"{destination.name}.err.json")
    _write_json_atomic(
        err_path,
        {
            "file": destination.name,
            "error": {"message": str(error), "type": error.__class__.__name__},
            "created_at": datetime.now(timezone.utc).isoformat(),
        },
    )
    logger.info("Wrote failure report to %s", err_path, extra=log_extra)
    return destination


# ---------------------------------------------------------------------------
# Per-file processing
# ---------------------------------------------------------------------------


def _count_rejection(stats: ImportStats, decision: Decision) -> None:
    if decision is Decision.REJECT_DUPLICATE_PHONE:
        stats.duplicate_phone += 1
    elif decision is Decision.REJECT_DUPLICATE_ADDRESS:
        stats.duplicate_address += 1
    elif decision is Decision.REJECT_NO_PHONE:
        stats.no_phone += 1


def _tally_results(stats: ImportStats, results: List[BatchResult]) -> None:
    for result in results:
        if result.ok:
            stats.persisted += len(result.inserted)
            stats.conflicts += len(result.conflicts)
        else:
            stats.failed += len(result.batch)
            stats.failed_batches += 1


class _FileRun:
    """State for one file; lives only as long as ``process_file``."""

    def __init__(
        self,
        path: Path,
        store: Store,
        settings: Settings,
        *,
        dry_run: bool,
        deadline: Deadline,
        log_extra: Dict[str, Any],
        index: DedupIndex,
        resolver: CampaignResolver,
    ) -> None:
        self.path = path
        self.settings = settings
        self.dry_run = dry_run
        self.deadline = deadline
        self.log_extra = log_extra
        self.stats = ImportStats()
        self.gate = DedupGate(index, store)
        self.resolver = resolver
        self.accumulator = BatchAccumulator(settings.batch_size)
        self.engine: Optional[PersistenceEngine] = None
        if not dry_run:
            self.engine = PersistenceEngine(
                store,
                RetryPolicy.from_settings(settings),
                workers=settings.persist_workers,
                log_extra=log_extra,
            )

    def _on_csv_error(self, line_number: int, exc: Exception) -> None:
        self.stats.total_rows += 1
        self.stats.malformed += 1
        logger.warning("MalformedRow line %s: %s", line_number, exc, extra=self.log_extra)

    def _parse(self, normalizer: RowNormalizer, line_number: int, record: List[str]) -> Optional[ParsedLead]:
        self.stats.total_rows += 1
        try:
            return normalizer.parse(record, line_number)
        except MalformedRow as exc:
            self.stats.malformed += 1
            logger.warning("MalformedRow %s", exc, extra=self.log_extra)
            return None

    def _admit(self, lead: ParsedLead) -> None:
        decision = self.gate.check(lead)
        if not decision.admitted:
            _count_rejection(self.stats, decision)
            logger.debug(
                "%s line=%d dmid=%s",
                decision.value,
                lead.line_number,
                lead.dmid,
                extra=self.log_extra,
            )
            return

        self.stats.admitted += 1
        try:
            campaign = self.resolver.resolve(lead.campaign)
        except CampaignResolutionFailure as exc:
            self.stats.failed += 1
            logger.error(
                "PersistenceFailed line=%d dmid=%s: %s",
                lead.line_number,
                lead.dmid,
                exc,
                extra=self.log_extra,
            )
            return
        lead.attach_campaign(campaign)

        batch = self.accumulator.add(lead)
        if batch is not None:
            self._hand_off(batch)

    def _hand_off(self, batch: Batch) -> None:
        self.stats.batches += 1
        if self.engine is None:
            logger.info(
                "Dry-run: batch %d would write %d row(s)",
                batch.number,
                len(batch),
                extra=self.log_extra,
            )
            return
        self.engine.submit(batch, deadline=self.deadline)

    def execute(self) -> None:
        with self.path.open(
            "r", encoding="utf-8-sig", errors="surrogateescape", newline=""
        ) as handle:
            records = iter_records(handle, on_error=self._on_csv_error)
            try:
                _, header = next(records)
            except StopIteration:
                raise InvalidFileError("CSV file is missing a header row") from None
            normalizer = RowNormalizer(HeaderMap(header), FileContext.from_path(self.path))

            for window in chunked(records, self.settings.batch_size):
                leads: List[ParsedLead] = []
                for line_number, record in window:
                    self.deadline.check()
                    lead = self._parse(normalizer, line_number, record)
                    if lead is not None:
                        leads.append(lead)
                self.gate.prime(leads)
                for lead in leads:
                    self.deadline.check()
                    self._admit(lead)

        remainder = self.accumulator.flush()
        if remainder is not None:
            self._hand_off(remainder)
        if self.engine is not None:
            self.engine.drain(self.deadline)

    def finish(self, *, cancel_pending: bool) -> None:
        if self.engine is None:
            return
        self.engine.close(cancel_pending=cancel_pending)
        _tally_results(self.stats, self.engine.results)


def _log_summary(report: FileReport, log_extra: Dict[str, Any]) -> None:
    stats = report.stats
    logger.info(
        "Summary (%s): rows=%d admitted=%d persisted=%d rejected=%d "
        "[dup_phone=%d dup_address=%d no_phone=%d] malformed=%d conflicts=%d "
        "failed=%d batches=%d failed_batches=%d",
        report.status.value,
        stats.total_rows,
        stats.admitted,
        stats.persisted,
        stats.rejected,
        stats.duplicate_phone,
        stats.duplicate_address,
        stats.no_phone,
        stats.malformed,
        stats.conflicts,
        stats.failed,
        stats.batches,
        stats.failed_batches,
        extra=log_extra,
    )


def process_file(
    path: Path,
    *,
    store: Store,
    settings: Settings,
    dry_run: bool = False,
    run_id: str = "-",
    index: Optional[DedupIndex] = None,
    resolver: Optional[CampaignResolver] = None,
    clock: Callable[[], float] = time.monotonic,
) -> FileReport:
    """Ingest one CSV file and report what happened to it.

    ``index`` and ``resolver`` are shared across the files of one run; when
    omitted, fresh ones are created for this file alone.
    """

    log_extra: Dict[str, Any] = log_context(run_id, path.name)
    logger.info("Processing %s", path, extra=log_extra)
    deadline = Deadline(settings.max_execution_seconds, clock=clock)
    file_run = _FileRun(
        path,
        store,
        settings,
        dry_run=dry_run,
        deadline=deadline,
        log_extra=log_extra,
        index=index if index is not None else DedupIndex(),
        resolver=resolver if resolver is not None else CampaignResolver(store, read_only=dry_run),
    )

    status = FileStatus.COMPLETED
    destination: Optional[Path] = None
    invalid: Optional[InvalidFileError] = None
    try:
        file_run.execute()
    except ExecutionTimeout as exc:
        status = FileStatus.TIMED_OUT
        logger.error("%s; leaving file for the next run", exc, extra=log_extra)
    except InvalidFileError as exc:
        status = FileStatus.INVALID
        invalid = exc
        logger.error("CSV validation failed: %s", exc, extra=log_extra)
    except BaseException:
        status = FileStatus.ERROR
        raise
    finally:
        file_run.finish(cancel_pending=status is not FileStatus.COMPLETED)

    if status is FileStatus.COMPLETED and file_run.stats.failed:
        status = FileStatus.PARTIAL
        logger.error(
            "%d lead(s) were not persisted; leaving file for the next run",
            file_run.stats.failed,
            extra=log_extra,
        )

    if not dry_run:
        if status is FileStatus.COMPLETED:
            destination = _move_file(path, settings.processed_dir)
            logger.info("Moved file to %s", destination, extra=log_extra)
        elif invalid is not None:
            destination = _quarantine(path, settings.failed_dir, invalid, log_extra)

    report = FileReport(path=path, status=status, stats=file_run.stats, destination=destination)
    _log_summary(report, log_extra)
    return report


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


def _log_run_summary(reports: List[FileReport], log_extra: Dict[str, Any]) -> None:
    totals = ImportStats()
    for report in reports:
        totals.merge(report.stats)
    logger.info(
        "Run complete: files=%d persisted=%d rejected=%d malformed=%d failed=%d",
        len(reports),
        totals.persisted,
        totals.rejected,
        totals.malformed,
        totals.failed,
        extra=log_extra,
    )
    for report in reports:
        if report.status is not FileStatus.COMPLETED:
            logger.warning(
                "%s: %s", report.path.name, report.status.value, extra=log_extra
            )


def run(
    settings: Settings,
    *,
    store_factory: Optional[StoreFactory] = None,
    dry_run: bool = False,
    clock: Callable[[], float] = time.monotonic,
) -> ExitCode:
    """Process every inbound file under the run lock; return the worst outcome."""

    run_id = uuid.uuid4().hex[:8]
    log_extra: Dict[str, Any] = log_context(run_id)

    guard = ExecutionGuard(settings.lock_file)
    try:
        guard.acquire()
    except AlreadyRunning as exc:
        logger.warning("%s; exiting", exc, extra=log_extra)
        return ExitCode.ALREADY_RUNNING

    try:
        for directory in (settings.upload_dir, settings.processed_dir, settings.failed_dir):
            directory.mkdir(parents=True, exist_ok=True)

        files = scan_inbound(settings.upload_dir, settings.file_glob)
        if not files:
            logger.info(
                "No files matching %s in %s",
                settings.file_glob,
                settings.upload_dir,
                extra=log_extra,
            )
            return ExitCode.OK

        logger.info(
            "Found %d file(s) to process%s",
            len(files),
            " (dry-run)" if dry_run else "",
            extra=log_extra,
        )
        exit_code = ExitCode.OK
        reports: List[FileReport] = []
        factory = store_factory or LeadStore.from_settings
        with factory(settings) as store:
            index = DedupIndex()
            resolver = CampaignResolver(store, read_only=dry_run)
            for path in files:
                try:
                    report = process_file(
                        path,
                        store=store,
                        settings=settings,
                        dry_run=dry_run,
                        run_id=run_id,
                        index=index,
                        resolver=resolver,
                        clock=clock,
                    )
                except Exception:  # noqa: BLE001 - one bad file must not stop the run
                    logger.exception(
                        "Unexpected failure; leaving file for the next run",
                        extra=log_context(run_id, path.name),
                    )
                    report = FileReport(path=path, status=FileStatus.ERROR)
                reports.append(report)
                exit_code = max(exit_code, report.exit_code)

        _log_run_summary(reports, log_extra)
        return exit_code
    finally:
        guard.release()


__all__ = [
    "ExitCode",
    "FileReport",
    "FileStatus",
    "Store",
    "process_file",
    "run",
    "scan_inbound",
]
