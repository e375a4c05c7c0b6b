"""Duplicate detection against the current file and the persisted tables."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Iterable, Optional, Protocol, Sequence, Set

from .models import ParsedLead

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    ADMIT = "admit"
    REJECT_DUPLICATE_PHONE = "reject_duplicate_phone"
    REJECT_DUPLICATE_ADDRESS = "reject_duplicate_address"
    REJECT_NO_PHONE = "reject_no_phone"

    @property
    def admitted(self) -> bool:
        return self is Decision.ADMIT


class DuplicateLookup(Protocol):
    def existing_dmids(self, dmids: Iterable[str]) -> Set[str]: ...

    def existing_phones(self, phones: Iterable[str]) -> Set[str]: ...


class DedupIndex:
    """Phones and DMIDs already claimed during one run.

    ``admit`` is the only mutation that matters for correctness: it checks and
    marks under a single lock so first-seen wins even when callers race.
    """

    def __init__(self) -> None:
        self.phones: Set[str] = set()
        self.ids: Set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.ids)

    def seed(self, *, phones: Iterable[str] = (), ids: Iterable[str] = ()) -> None:
        with self._lock:
            self.phones.update(phones)
            self.ids.update(ids)

    def admit(self, phone: str, dmid: str) -> Decision:
        with self._lock:
            if phone in self.phones:
                return Decision.REJECT_DUPLICATE_PHONE
            if dmid in self.ids:
                return Decision.REJECT_DUPLICATE_ADDRESS
            self.phones.add(phone)
            self.ids.add(dmid)
            return Decision.ADMIT


class DedupGate:
    """Decide whether a lead may be written.

    Persisted duplicates are looked up lazily: ``prime`` fetches a window of
    leads in two queries, and ``check`` falls back to a single-lead lookup
    for anything that was not primed. Hits are seeded into the index, so
    after the lookup an in-file and a cross-run duplicate look the same.
    """

    def __init__(self, index: DedupIndex, store: Optional[DuplicateLookup] = None) -> None:
        self.index = index
        self.store = store
        self._looked_up_ids: Set[str] = set()
        self._looked_up_phones: Set[str] = set()

    def prime(self, leads: Sequence[ParsedLead]) -> None:
        if self.store is None:
            return
        dmids = {lead.dmid for lead in leads} - self._looked_up_ids
        phones = {
            lead.primary_phone for lead in leads if lead.primary_phone is not None
        } - self._looked_up_phones

        persisted_ids = self.store.existing_dmids(dmids) if dmids else set()
        persisted_phones = self.store.existing_phones(phones) if phones else set()
        self._looked_up_ids.update(dmids)
        self._looked_up_phones.update(phones)

        if persisted_ids or persisted_phones:
            logger.debug(
                "Seeded %d persisted DMIDs and %d persisted phones",
                len(persisted_ids),
                len(persisted_phones),
            )
            self.index.seed(phones=persisted_phones, ids=persisted_ids)

    def check(self, lead: ParsedLead) -> Decision:
        phone = lead.primary_phone
        if phone is None:
            return Decision.REJECT_NO_PHONE
        if self.store is not None and (
            lead.dmid not in self._looked_up_ids or phone not in self._looked_up_phones
        ):
            self.prime([lead])
        return self.index.admit(phone, lead.dmid)


__all__ = ["Decision", "DedupGate", "DedupIndex", "DuplicateLookup"]
