"""Group admitted leads into fixed-size batches for the persistence engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional, Sequence, TypeVar

from .models import ParsedLead

T = TypeVar("T")


def chunked(iterable: Iterable[T], size: int) -> Iterator[List[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")

    buffer: List[T] = []
    for item in iterable:
        buffer.append(item)
        if len(buffer) == size:
            yield buffer.copy()
            buffer.clear()

    if buffer:
        yield buffer.copy()


@dataclass(slots=True)
class Batch:
    number: int
    leads: List[ParsedLead] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.leads)

    @property
    def dmids(self) -> List[str]:
        return [lead.dmid for lead in self.leads]

    @property
    def line_numbers(self) -> Sequence[int]:
        return [lead.line_number for lead in self.leads]


class BatchAccumulator:
    """Buffer leads and release them ``batch_size`` at a time.

    ``add`` returns a full batch as soon as one is ready; ``flush`` releases
    whatever is left at end of input.
    """

    def __init__(self, batch_size: int) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self._buffer: List[ParsedLead] = []
        self._issued = 0

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def batches_issued(self) -> int:
        return self._issued

    def add(self, lead: ParsedLead) -> Optional[Batch]:
        self._buffer.append(lead)
        if len(self._buffer) >= self.batch_size:
            return self._release()
        return None

    def flush(self) -> Optional[Batch]:
        if not self._buffer:
            return None
        return self._release()

    def _release(self) -> Batch:
        self._issued += 1
        batch = Batch(number=self._issued, leads=self._buffer)
        self._buffer = []
        return batch


__all__ = ["Batch", "BatchAccumulator", "chunked"]
