"""Map CSV campaign columns onto persisted campaign rows."""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Protocol

from .models import Campaign, CampaignKey, CampaignMeta

logger = logging.getLogger(__name__)


class CampaignStore(Protocol):
    def find_campaign(self, meta: CampaignMeta) -> Optional[Campaign]: ...

    def find_or_create_campaign(self, meta: CampaignMeta) -> Campaign: ...


class CampaignResolver:
    """Resolve campaign metadata to a campaign, caching results for the run.

    Creation is serialised by the store (one retried transaction under an
    advisory lock); the in-memory cache only saves round trips. In read-only
    mode unknown campaigns resolve to an unsaved placeholder.
    """

    def __init__(self, store: CampaignStore, *, read_only: bool = False) -> None:
        self.store = store
        self.read_only = read_only
        self._cache: Dict[CampaignKey, Campaign] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._cache)

    def resolve(self, meta: CampaignMeta) -> Campaign:
        with self._lock:
            cached = self._cache.get(meta.key)
        if cached is not None:
            return cached

        if self.read_only:
            campaign = self.store.find_campaign(meta) or _placeholder(meta)
        else:
            campaign = self.store.find_or_create_campaign(meta)

        with self._lock:
            # Another caller may have resolved the same key meanwhile; keep the first.
            campaign = self._cache.setdefault(meta.key, campaign)
        logger.debug(
            "Resolved campaign %r vertical=%s flag=%s -> id=%s",
            meta.name,
            meta.vertical,
            meta.flag,
            campaign.id,
        )
        return campaign


def _placeholder(meta: CampaignMeta) -> Campaign:
    return Campaign(
        id=None,
        name=meta.name,
        vertical=meta.vertical,
        texting_active=meta.texting_active,
        flag=meta.flag if meta.flag is not None else 0,
        emoji=meta.emoji,
    )


__all__ = ["CampaignResolver", "CampaignStore"]
