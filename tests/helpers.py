"""Test doubles shared across the lead_ingestor test suite."""

from __future__ import annotations

import threading
from pathlib import Path
from textwrap import dedent
from typing import Dict, Iterable, List, Optional, Sequence, Set

from lead_ingestor.db import InsertOutcome
from lead_ingestor.errors import TransientStoreError
from lead_ingestor.models import Campaign, CampaignMeta, ParsedLead

LEAD_HEADER = (
    "lead_id,owner_1_firstname,owner_1_lastname,property_address_line_1,"
    "property_address_city,property_address_state,property_address_zipcode,"
    "contact_1_phone1,contact_1_phone2,campaign_name,vertical,texting_active,flag"
)


def write_csv(directory: Path, name: str, body: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(dedent(body), encoding="utf-8")
    return path


def lead_rows(count: int, *, start: int = 1, campaign: str = "Spring", flag: int = 7) -> str:
    lines = [LEAD_HEADER]
    for number in range(start, start + count):
        lines.append(
            f"L{number:03d},Ann,Lee,{number} Main St,Austin,TX,78701,"
            f"512555{number:04d},,{campaign},1,0,{flag}"
        )
    return "\n".join(lines) + "\n"


def make_lead(
    dmid: str,
    phones: Sequence[str] = ("5551234567",),
    *,
    line_number: int = 2,
    campaign: Optional[CampaignMeta] = None,
) -> ParsedLead:
    return ParsedLead(
        line_number=line_number,
        dmid=dmid,
        street="1 Main St",
        phones=list(phones),
        campaign=campaign or CampaignMeta(name="Spring", vertical=1, flag=7),
    )


class FakeStore:
    """In-memory stand-in for ``LeadStore``.

    ``failing_dmids`` makes every batch containing one of those DMIDs raise a
    transient error; ``transient_failures`` fails that many insert calls
    before succeeding.
    """

    def __init__(
        self,
        *,
        failing_dmids: Iterable[str] = (),
        transient_failures: int = 0,
        emoji: Sequence[str] = ("🏠",),
    ) -> None:
        self.failing_dmids: Set[str] = set(failing_dmids)
        self.transient_failures = transient_failures
        self.emoji = list(emoji)
        self.addresses: Dict[str, Dict[str, object]] = {}
        self.phone_queue: List[Dict[str, object]] = []
        self.campaigns: List[Campaign] = []
        self.transactions: List[List[str]] = []
        self.insert_calls = 0
        self.campaign_calls = 0
        self.entered = False
        self.closed = False
        self._lock = threading.Lock()

    def __enter__(self) -> "FakeStore":
        self.entered = True
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.closed = True

    # DuplicateLookup

    def existing_dmids(self, dmids: Iterable[str]) -> Set[str]:
        with self._lock:
            return {dmid for dmid in dmids if dmid in self.addresses}

    def existing_phones(self, phones: Iterable[str]) -> Set[str]:
        with self._lock:
            known = {row["phone1"] for row in self.phone_queue}
        return {phone for phone in phones if phone in known}

    # CampaignStore

    def _match(self, meta: CampaignMeta) -> Optional[Campaign]:
        for campaign in self.campaigns:
            if campaign.name != meta.name or campaign.vertical != meta.vertical:
                continue
            if meta.flag is None or campaign.flag == meta.flag:
                return campaign
        return None

    def find_campaign(self, meta: CampaignMeta) -> Optional[Campaign]:
        with self._lock:
            return self._match(meta)

    def find_or_create_campaign(self, meta: CampaignMeta) -> Campaign:
        with self._lock:
            self.campaign_calls += 1
            existing = self._match(meta)
            if existing is not None:
                return existing
            flag = meta.flag
            if flag is None:
                flag = max((c.flag for c in self.campaigns), default=0) + 1
            campaign = Campaign(
                id=len(self.campaigns) + 1,
                name=meta.name,
                vertical=meta.vertical,
                texting_active=meta.texting_active,
                flag=flag,
                emoji=meta.emoji or (self.emoji[0] if self.emoji else None),
            )
            self.campaigns.append(campaign)
            return campaign

    # LeadWriter

    def insert_leads(self, leads: Sequence[ParsedLead]) -> InsertOutcome:
        with self._lock:
            self.insert_calls += 1
            if self.transient_failures > 0:
                self.transient_failures -= 1
                raise TransientStoreError("connection reset")
            if any(lead.dmid in self.failing_dmids for lead in leads):
                raise TransientStoreError("deadlock detected")

            outcome = InsertOutcome()
            for lead in leads:
                if lead.dmid in self.addresses:
                    outcome.conflicts.append(lead.dmid)
                    continue
                aid = len(self.addresses) + 1
                self.addresses[lead.dmid] = {
                    "id": aid,
                    "dmid": lead.dmid,
                    "street": lead.street,
                    "flag": lead.flag,
                    "via": lead.via,
                    "map_image_url": lead.map_image_url,
                }
                phone1, phone2, phone3 = lead.phone_slots()
                self.phone_queue.append(
                    {"aid": aid, "phone1": phone1, "phone2": phone2, "phone3": phone3, "step": 11}
                )
                outcome.inserted.append(lead.dmid)
            self.transactions.append(list(outcome.inserted))
            return outcome


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
