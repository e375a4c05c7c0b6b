"""Run exclusivity and per-file time limits."""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .errors import AlreadyRunning, ExecutionTimeout

logger = logging.getLogger(__name__)


class ExecutionGuard:
    """Create-exclusive lock file held for the duration of a run.

    The lock is taken with ``O_CREAT | O_EXCL`` so two invocations can never
    both succeed, and it is released from ``__exit__`` on every exit path
    (success, error, ``SystemExit`` raised from a signal handler). Release
    only removes a lock file that still records this process.
    """

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = Path(lock_path)
        self.pid = os.getpid()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            raise AlreadyRunning(self.lock_path, _read_pid(self.lock_path)) from exc

        started = datetime.now(timezone.utc).isoformat(timespec="seconds")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{self.pid}\n{started}\n")
        self._held = True
        logger.debug("Acquired run lock %s", self.lock_path)

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            recorded = _read_pid(self.lock_path)
            if recorded is not None and recorded != self.pid:
                logger.warning(
                    "Lock %s now belongs to pid %s; leaving it in place",
                    self.lock_path,
                    recorded,
                )
                return
            self.lock_path.unlink(missing_ok=True)
            logger.debug("Released run lock %s", self.lock_path)
        except OSError:
            logger.error("Failed to remove lock file %s", self.lock_path, exc_info=True)

    def __enter__(self) -> "ExecutionGuard":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _read_pid(path: Path) -> Optional[int]:
    try:
        first_line = path.read_text(encoding="utf-8").splitlines()[0].strip()
    except (OSError, IndexError):
        return None
    try:
        return int(first_line)
    except ValueError:
        return None


class Deadline:
    """Monotonic per-file execution budget."""

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if seconds <= 0:
            raise ValueError("deadline must be positive")
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self) -> None:
        if self.expired:
            raise ExecutionTimeout(self.seconds)


__all__ = ["Deadline", "ExecutionGuard"]
