"""PostgreSQL access for the lead ingestor.

SQL lives in small module-level helpers that take an open connection; the
:class:`LeadStore` wraps them in pooled, retried transactions. Column names
follow ``sql/create_tables.sql`` (unquoted, so PostgreSQL folds them to lower
case).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, TypeVar, cast

import psycopg
from psycopg import Connection, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .batching import chunked
from .errors import CampaignResolutionFailure
from .models import Campaign, CampaignMeta, ParsedLead
from .retry import RetryPolicy, is_transient_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Transaction-scoped advisory lock that serialises campaign creation across
# threads and processes; the campaigns table carries no unique key of its own.
CAMPAIGN_LOCK_KEY = 0x4C454144

ADDRESS_COLUMNS: Sequence[str] = (
    "street",
    "unit_type",
    "unit_num",
    "mail_city",
    "state",
    "zip",
    "latitude",
    "longitude",
    "fullname",
    "fname",
    "lname",
    "mailingaddress",
    "mailingcity",
    "mailingstate",
    "mailingzip",
    "flag",
    "dmid",
    "via",
    "map_image_url",
)

PHONE_QUEUE_COLUMNS: Sequence[str] = ("aid", "phone1", "phone2", "phone3", "step")

# PostgreSQL caps a statement at 65535 bind parameters.
MAX_ADDRESS_ROWS_PER_STATEMENT = 65535 // len(ADDRESS_COLUMNS)

_CAMPAIGN_SELECT = """
    SELECT id, campaignname, vertical, textingactive, flag, emoji, created_at
    FROM campaigns
"""


@dataclass(slots=True)
class InsertOutcome:
    """Result of one batch write: DMIDs committed and DMIDs skipped on conflict."""

    inserted: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# SQL helpers
# ---------------------------------------------------------------------------


def _campaign_from_row(row: dict) -> Campaign:
    return Campaign(
        id=int(row["id"]),
        name=row["campaignname"],
        vertical=int(row["vertical"]),
        texting_active=int(row["textingactive"]),
        flag=int(row["flag"]),
        emoji=row.get("emoji"),
        created_at=row.get("created_at"),
    )


def select_existing_dmids(conn: Connection, dmids: Sequence[str]) -> Set[str]:
    if not dmids:
        return set()
    with conn.cursor() as cur:
        cur.execute("SELECT dmid FROM address WHERE dmid = ANY(%s)", (list(dmids),))
        return {row[0] for row in cur.fetchall()}


def select_existing_phones(conn: Connection, phones: Sequence[str]) -> Set[str]:
    if not phones:
        return set()
    with conn.cursor() as cur:
        cur.execute("SELECT phone1 FROM phonequeue WHERE phone1 = ANY(%s)", (list(phones),))
        return {row[0] for row in cur.fetchall()}


def select_campaign(conn: Connection, meta: CampaignMeta) -> Optional[Campaign]:
    """Find the campaign for ``meta``; a blank flag matches any flag."""

    query = _CAMPAIGN_SELECT + " WHERE campaignname = %s AND vertical = %s"
    params: List[object] = [meta.name, meta.vertical]
    if meta.flag is not None:
        query += " AND flag = %s"
        params.append(meta.flag)
    query += " ORDER BY id LIMIT 1"
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(cast(Any, query), params)
        row = cur.fetchone()
    return _campaign_from_row(row) if row else None


def lock_campaigns(conn: Connection) -> None:
    with conn.cursor() as cur:
        cur.execute("SELECT pg_advisory_xact_lock(%s)", (CAMPAIGN_LOCK_KEY,))


def next_campaign_flag(conn: Connection) -> int:
    with conn.cursor() as cur:
        cur.execute("SELECT COALESCE(MAX(flag), 0) + 1 FROM campaigns")
        row = cur.fetchone()
    return int(row[0]) if row else 1


def random_emoji(conn: Connection) -> Optional[str]:
    with conn.cursor() as cur:
        cur.execute("SELECT e FROM emoji ORDER BY random() LIMIT 1")
        row = cur.fetchone()
    return row[0] if row else None


def insert_campaign(conn: Connection, meta: CampaignMeta, *, flag: int, emoji: Optional[str]) -> Campaign:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            INSERT INTO campaigns (campaignname, vertical, textingactive, flag, emoji)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id, campaignname, vertical, textingactive, flag, emoji, created_at
            """,
            (meta.name, meta.vertical, meta.texting_active, flag, emoji),
        )
        row = cur.fetchone()
    if row is None:
        raise CampaignResolutionFailure(f"Failed to insert campaign {meta.name!r}")
    return _campaign_from_row(row)


def find_or_create_campaign(conn: Connection, meta: CampaignMeta) -> Campaign:
    """Lookup-or-insert under the campaign advisory lock.

    Must run inside a transaction; the lock is released on commit/rollback.
    """

    lock_campaigns(conn)
    existing = select_campaign(conn, meta)
    if existing is not None:
        return existing
    flag = meta.flag if meta.flag is not None else next_campaign_flag(conn)
    emoji = meta.emoji or random_emoji(conn)
    campaign = insert_campaign(conn, meta, flag=flag, emoji=emoji)
    logger.info(
        "Created campaign id=%s name=%r vertical=%s flag=%s",
        campaign.id,
        campaign.name,
        campaign.vertical,
        campaign.flag,
    )
    return campaign


def _address_params(lead: ParsedLead) -> tuple:
    return (
        lead.street,
        lead.unit_type,
        lead.unit_num,
        lead.mail_city,
        lead.state,
        lead.zip,
        lead.latitude,
        lead.longitude,
        lead.fullname,
        lead.fname,
        lead.lname,
        lead.mailing_address,
        lead.mailing_city,
        lead.mailing_state,
        lead.mailing_zip,
        lead.flag,
        lead.dmid,
        lead.via,
        lead.map_image_url,
    )


def build_address_insert(row_count: int) -> sql.Composed:
    row_placeholder = sql.SQL("({})").format(
        sql.SQL(", ").join(sql.Placeholder() * len(ADDRESS_COLUMNS))
    )
    return sql.SQL(
        "INSERT INTO address ({}) VALUES {} ON CONFLICT (dmid) DO NOTHING RETURNING id, dmid"
    ).format(
        sql.SQL(", ").join(sql.Identifier(name) for name in ADDRESS_COLUMNS),
        sql.SQL(", ").join([row_placeholder] * row_count),
    )


def insert_leads(conn: Connection, leads: Sequence[ParsedLead], *, step: int) -> InsertOutcome:
    """Write address rows and their phone queue rows for ``leads``.

    Rows whose DMID already exists are skipped by ``ON CONFLICT`` and get no
    phone queue row; both inserts belong to the caller's transaction.
    """

    outcome = InsertOutcome()
    if not leads:
        return outcome

    with conn.cursor() as cur:
        address_ids: Dict[str, int] = {}
        for chunk in chunked(leads, MAX_ADDRESS_ROWS_PER_STATEMENT):
            params: List[object] = []
            for lead in chunk:
                params.extend(_address_params(lead))
            cur.execute(build_address_insert(len(chunk)), params)
            address_ids.update((row[1], int(row[0])) for row in cur.fetchall())

        phone_rows = []
        for lead in leads:
            aid = address_ids.get(lead.dmid)
            if aid is None:
                outcome.conflicts.append(lead.dmid)
                continue
            phone1, phone2, phone3 = lead.phone_slots()
            phone_rows.append((aid, phone1, phone2, phone3, step))
            outcome.inserted.append(lead.dmid)

        if phone_rows:
            cur.executemany(
                sql.SQL("INSERT INTO phonequeue ({}) VALUES (%s, %s, %s, %s, %s)").format(
                    sql.SQL(", ").join(sql.Identifier(name) for name in PHONE_QUEUE_COLUMNS)
                ),
                phone_rows,
            )
    return outcome


# ---------------------------------------------------------------------------
# Store facade
# ---------------------------------------------------------------------------


class LeadStore:
    """Pooled, retried access to the campaigns/address/phonequeue tables."""

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        phone_queue_step: int = 11,
    ) -> None:
        self.pool = pool
        self.retry_policy = retry_policy or RetryPolicy()
        self.phone_queue_step = phone_queue_step

    @classmethod
    def from_settings(cls, settings: Any) -> "LeadStore":
        pool = ConnectionPool(
            settings.database_url,
            min_size=1,
            max_size=settings.persist_workers + 1,
            open=True,
            name="lead_ingestor",
        )
        return cls(
            pool,
            retry_policy=RetryPolicy.from_settings(settings),
            phone_queue_step=settings.phone_queue_step,
        )

    def __enter__(self) -> "LeadStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.pool.close()

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        with self.pool.connection() as conn:
            with conn.transaction():
                yield conn

    def _run(self, fn: Callable[..., T], *args: Any) -> T:
        def attempt() -> T:
            with self.transaction() as conn:
                return fn(conn, *args)

        return self.retry_policy.call(attempt)

    def existing_dmids(self, dmids: Iterable[str]) -> Set[str]:
        return self._run(select_existing_dmids, sorted(set(dmids)))

    def existing_phones(self, phones: Iterable[str]) -> Set[str]:
        return self._run(select_existing_phones, sorted(set(phones)))

    def find_campaign(self, meta: CampaignMeta) -> Optional[Campaign]:
        return self._run(select_campaign, meta)

    def find_or_create_campaign(self, meta: CampaignMeta) -> Campaign:
        try:
            return self._run(find_or_create_campaign, meta)
        except Exception as exc:
            # Rejected values fail this campaign only; anything else propagates.
            if is_transient_error(exc) or isinstance(exc, psycopg.DataError):
                raise CampaignResolutionFailure(
                    f"Campaign {meta.name!r} could not be resolved: {exc}"
                ) from exc
            raise

    def insert_leads(self, leads: Sequence[ParsedLead]) -> InsertOutcome:
        """Single attempt; the persistence engine owns the retry loop for batches."""

        with self.transaction() as conn:
            return insert_leads(conn, leads, step=self.phone_queue_step)


__all__ = [
    "ADDRESS_COLUMNS",
    "PHONE_QUEUE_COLUMNS",
    "InsertOutcome",
    "LeadStore",
    "build_address_insert",
    "find_or_create_campaign",
    "insert_leads",
    "select_campaign",
    "select_existing_dmids",
    "select_existing_phones",
]
