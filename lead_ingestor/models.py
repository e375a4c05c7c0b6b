"""Data models shared by the ingestion stages."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import List, Optional, Tuple

CampaignKey = Tuple[str, int, Optional[int]]


@dataclass(slots=True, frozen=True)
class CampaignMeta:
    """Campaign columns as they appear on a CSV row."""

    name: str
    vertical: int = 1
    texting_active: int = 0
    flag: Optional[int] = None
    emoji: Optional[str] = None

    @property
    def key(self) -> CampaignKey:
        return (self.name, self.vertical, self.flag)


@dataclass(slots=True, frozen=True)
class Campaign:
    """A persisted row of the ``campaigns`` table."""

    id: Optional[int]
    name: str
    vertical: int
    texting_active: int
    flag: int
    emoji: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class ParsedLead:
    """Normalized representation of one CSV row."""

    line_number: int
    dmid: str
    fullname: str = ""
    fname: str = ""
    lname: str = ""
    street: str = ""
    unit_type: str = ""
    unit_num: str = ""
    mail_city: str = ""
    state: str = ""
    zip: str = ""
    latitude: str = ""
    longitude: str = ""
    mailing_address: str = ""
    mailing_city: str = ""
    mailing_state: str = ""
    mailing_zip: str = ""
    via: int = 0
    map_image_url: str = "0"
    phones: List[str] = field(default_factory=list)
    campaign: CampaignMeta = field(default_factory=lambda: CampaignMeta(name=""))
    campaign_id: Optional[int] = None
    flag: Optional[int] = None

    @property
    def primary_phone(self) -> Optional[str]:
        return self.phones[0] if self.phones else None

    def phone_slots(self) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        padded = list(self.phones[:3]) + [None, None, None]
        return padded[0], padded[1], padded[2]

    def attach_campaign(self, campaign: Campaign) -> None:
        self.campaign_id = campaign.id
        self.flag = campaign.flag


@dataclass(slots=True)
class ImportStats:
    """Per-file counters reported in the run summary."""

    total_rows: int = 0
    admitted: int = 0
    malformed: int = 0
    duplicate_phone: int = 0
    duplicate_address: int = 0
    no_phone: int = 0
    persisted: int = 0
    conflicts: int = 0
    failed: int = 0
    batches: int = 0
    failed_batches: int = 0

    @property
    def rejected(self) -> int:
        return self.duplicate_phone + self.duplicate_address + self.no_phone

    def merge(self, other: "ImportStats") -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


__all__ = ["CampaignKey", "CampaignMeta", "Campaign", "ParsedLead", "ImportStats"]
