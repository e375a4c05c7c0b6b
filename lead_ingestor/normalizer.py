"""Turn raw CSV records into :class:`ParsedLead` objects.

Fields are resolved through a header-name map built once per file, never by
position, so a blank or missing optional column cannot shift the phone
columns. Each lead field lists candidate headers in priority order and the
first candidate holding a non-blank value wins; this is how owner 1 data is
preferred over owner 2 data and contact 1 phones over contact 2 phones.
"""

from __future__ import annotations

import csv
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, TextIO, Tuple

from .errors import InvalidFileError, MalformedRow
from .models import CampaignMeta, ParsedLead

FILENAME_PATTERN = re.compile(r"^(\d+)_skipAI_(\d+)_(.+\.csv)$")
SKIP_AI_VIA = 100
SKIP_AI_MAP_IMAGE_URL = "google/img/missing.webp"
DEFAULT_MAP_IMAGE_URL = "0"
DEFAULT_VERTICAL = 1

DMID_CANDIDATES: Sequence[str] = ("lead_id", "dmid")

FIELD_CANDIDATES: Mapping[str, Sequence[str]] = {
    "fullname": ("owner_1_name", "fullname", "full_name", "owner_2_name"),
    "fname": ("owner_1_firstname", "fname", "first_name", "owner_2_firstname"),
    "lname": ("owner_1_lastname", "lname", "last_name", "owner_2_lastname"),
    "street": ("property_address_line_1", "street"),
    "unit_type": ("property_address_unit_type", "unit_type"),
    "unit_num": ("property_address_line_2", "unit_num"),
    "mail_city": ("property_address_city", "mail_city"),
    "state": ("property_address_state", "state"),
    "zip": ("property_address_zipcode", "zip"),
    "latitude": ("property_lat", "latitude"),
    "longitude": ("property_lng", "longitude"),
    "mailing_address": ("owner_address_line_1", "mailing_address", "mailingaddress"),
    "mailing_city": ("owner_address_city", "mailing_city", "mailingcity"),
    "mailing_state": ("owner_address_state", "mailing_state", "mailingstate"),
    "mailing_zip": ("owner_address_zip", "mailing_zip", "mailingzip"),
    "map_image_url": ("map_image_url",),
}

PHONE_SLOT_CANDIDATES: Sequence[Sequence[str]] = tuple(
    (f"contact_1_phone{slot}", f"phone{slot}", f"contact_2_phone{slot}") for slot in (1, 2, 3)
)

CAMPAIGN_CANDIDATES: Mapping[str, Sequence[str]] = {
    "name": ("campaign_name", "campaignname", "campaign"),
    "vertical": ("vertical",),
    "texting_active": ("texting_active", "textingactive"),
    "flag": ("flag", "campaign_flag"),
    "emoji": ("emoji",),
}

VIA_CANDIDATES: Sequence[str] = ("via",)

# Bytes that are not valid UTF-8 reach the parser as lone surrogates
# (``surrogateescape``) and are re-read in this encoding.
LEGACY_ENCODING = "cp1252"
_ESCAPED_BYTES = re.compile(r"[\udc80-\udcff]+")

INT4_MIN = -(2**31)
INT4_MAX = 2**31 - 1

# varchar limits of sql/create_tables.sql, keyed by ParsedLead attribute.
MAX_LENGTHS: Mapping[str, int] = {
    "dmid": 100,
    "fullname": 255,
    "fname": 100,
    "lname": 100,
    "street": 255,
    "unit_type": 50,
    "unit_num": 50,
    "mail_city": 100,
    "state": 50,
    "zip": 20,
    "latitude": 50,
    "longitude": 50,
    "mailing_address": 255,
    "mailing_city": 100,
    "mailing_state": 50,
    "mailing_zip": 20,
    "map_image_url": 255,
}
CAMPAIGN_NAME_MAX_LENGTH = 255
EMOJI_MAX_LENGTH = 50

_TRUE_VALUES = {"1", "true", "yes", "y", "t"}
_FALSE_VALUES = {"0", "false", "no", "n", "f"}


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def _normalize_header(value: Optional[str]) -> str:
    return _clean(value).lstrip("\ufeff").lower()


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Return a 10-digit phone number, or ``None`` when the value is unusable."""

    cleaned = _clean(value)
    if not cleaned:
        return None
    # Spreadsheet exports sometimes render phone columns as floats.
    cleaned = re.sub(r"\.0+$", "", cleaned)
    digits = re.sub(r"\D", "", cleaned)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return None
    return digits


def _parse_int(value: str, *, column: str, line_number: int) -> int:
    try:
        number = Decimal(value)
    except InvalidOperation as exc:
        raise MalformedRow(line_number, f"{column} is not a number: {value!r}") from exc
    if not number.is_finite() or number != number.to_integral_value():
        raise MalformedRow(line_number, f"{column} is not an integer: {value!r}")
    if not INT4_MIN <= number <= INT4_MAX:
        raise MalformedRow(line_number, f"{column} is out of range: {value!r}")
    return int(number)


def _check_length(value: str, limit: int, *, column: str, line_number: int) -> None:
    if len(value) > limit:
        raise MalformedRow(
            line_number, f"{column} is longer than {limit} characters ({len(value)})"
        )


def _decode_cell(value: str, line_number: int) -> str:
    if "\x00" in value:
        raise MalformedRow(line_number, "field contains a NUL character")

    def redecode(match: "re.Match[str]") -> str:
        raw = bytes(ord(char) - 0xDC00 for char in match.group())
        try:
            return raw.decode(LEGACY_ENCODING)
        except UnicodeDecodeError as exc:
            raise MalformedRow(line_number, f"undecodable bytes {raw!r}") from exc

    return _ESCAPED_BYTES.sub(redecode, value)


def _parse_flag_bit(value: str, *, column: str, line_number: int) -> int:
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return 1
    if lowered in _FALSE_VALUES:
        return 0
    raise MalformedRow(line_number, f"{column} is not a boolean: {value!r}")


# ---------------------------------------------------------------------------
# File-level context
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class FileContext:
    """Defaults derived from the inbound file name."""

    file_name: str
    campaign_name: str
    skip_ai: bool = False

    @classmethod
    def from_path(cls, path: Path) -> "FileContext":
        match = FILENAME_PATTERN.match(path.name)
        if match is None:
            return cls(file_name=path.name, campaign_name=path.stem)
        return cls(
            file_name=path.name,
            campaign_name=Path(match.group(3)).stem,
            skip_ai=int(match.group(2)) != 0,
        )

    @property
    def default_via(self) -> int:
        return SKIP_AI_VIA if self.skip_ai else 0

    @property
    def default_map_image_url(self) -> str:
        return SKIP_AI_MAP_IMAGE_URL if self.skip_ai else DEFAULT_MAP_IMAGE_URL


# ---------------------------------------------------------------------------
# Header mapping
# ---------------------------------------------------------------------------


class HeaderMap:
    """Case-insensitive lookup from header names to column indexes."""

    def __init__(self, header: Sequence[str]) -> None:
        self.width = len(header)
        self._positions: Dict[str, int] = {}
        for index, name in enumerate(header):
            self._positions.setdefault(_normalize_header(name), index)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._positions

    def indexes(self, candidates: Sequence[str]) -> Tuple[int, ...]:
        return tuple(
            self._positions[name] for name in candidates if name in self._positions
        )

    def validate(self) -> None:
        if not self.indexes(DMID_CANDIDATES):
            raise InvalidFileError(
                "CSV header has no lead identifier column (expected one of: "
                + ", ".join(DMID_CANDIDATES)
                + ")"
            )
        phone_columns = [name for slot in PHONE_SLOT_CANDIDATES for name in slot]
        if not self.indexes(phone_columns):
            raise InvalidFileError("CSV header has no phone columns")


def _first_value(record: Sequence[str], indexes: Sequence[int]) -> str:
    for index in indexes:
        if index < len(record):
            value = _clean(record[index])
            if value:
                return value
    return ""


# ---------------------------------------------------------------------------
# Record parsing
# ---------------------------------------------------------------------------


class RowNormalizer:
    """Parse records of one file; column indexes are resolved once up front."""

    def __init__(self, header_map: HeaderMap, context: FileContext) -> None:
        header_map.validate()
        self.header_map = header_map
        self.context = context
        self._dmid = header_map.indexes(DMID_CANDIDATES)
        self._fields = {name: header_map.indexes(c) for name, c in FIELD_CANDIDATES.items()}
        self._phones = [header_map.indexes(c) for c in PHONE_SLOT_CANDIDATES]
        self._campaign = {name: header_map.indexes(c) for name, c in CAMPAIGN_CANDIDATES.items()}
        self._via = header_map.indexes(VIA_CANDIDATES)

    def parse(self, record: Sequence[str], line_number: int) -> ParsedLead:
        if len(record) > self.header_map.width:
            raise MalformedRow(
                line_number,
                f"row has {len(record)} fields but the header has {self.header_map.width}",
            )
        record = [_decode_cell(cell, line_number) for cell in record]

        dmid = _first_value(record, self._dmid)
        if not dmid:
            raise MalformedRow(line_number, "missing lead identifier")

        values = {name: _first_value(record, indexes) for name, indexes in self._fields.items()}
        values["dmid"] = dmid
        values["map_image_url"] = values["map_image_url"] or self.context.default_map_image_url
        for name, limit in MAX_LENGTHS.items():
            _check_length(values[name], limit, column=name, line_number=line_number)
        via_raw = _first_value(record, self._via)
        via = (
            _parse_int(via_raw, column="via", line_number=line_number)
            if via_raw
            else self.context.default_via
        )

        return ParsedLead(
            line_number=line_number,
            dmid=dmid,
            fullname=values["fullname"],
            fname=values["fname"],
            lname=values["lname"],
            street=values["street"],
            unit_type=values["unit_type"],
            unit_num=values["unit_num"],
            mail_city=values["mail_city"],
            state=values["state"],
            zip=values["zip"],
            latitude=values["latitude"],
            longitude=values["longitude"],
            mailing_address=values["mailing_address"],
            mailing_city=values["mailing_city"],
            mailing_state=values["mailing_state"],
            mailing_zip=values["mailing_zip"],
            via=via,
            map_image_url=values["map_image_url"],
            phones=self._extract_phones(record),
            campaign=self._extract_campaign(record, line_number),
        )

    def _extract_phones(self, record: Sequence[str]) -> List[str]:
        phones: List[str] = []
        for indexes in self._phones:
            for index in indexes:
                if index >= len(record):
                    continue
                phone = normalize_phone(record[index])
                if phone is not None:
                    if phone not in phones:
                        phones.append(phone)
                    break
        return phones

    def _extract_campaign(self, record: Sequence[str], line_number: int) -> CampaignMeta:
        raw = {name: _first_value(record, indexes) for name, indexes in self._campaign.items()}
        vertical = (
            _parse_int(raw["vertical"], column="vertical", line_number=line_number)
            if raw["vertical"]
            else DEFAULT_VERTICAL
        )
        texting_active = (
            _parse_flag_bit(raw["texting_active"], column="texting_active", line_number=line_number)
            if raw["texting_active"]
            else 0
        )
        flag = (
            _parse_int(raw["flag"], column="flag", line_number=line_number)
            if raw["flag"]
            else None
        )
        name = raw["name"] or self.context.campaign_name
        _check_length(
            name, CAMPAIGN_NAME_MAX_LENGTH, column="campaign_name", line_number=line_number
        )
        _check_length(raw["emoji"], EMOJI_MAX_LENGTH, column="emoji", line_number=line_number)
        return CampaignMeta(
            name=name,
            vertical=vertical,
            texting_active=texting_active,
            flag=flag,
            emoji=raw["emoji"] or None,
        )


def iter_records(
    handle: TextIO,
    *,
    on_error: Optional[Callable[[int, csv.Error], None]] = None,
) -> Iterator[Tuple[int, List[str]]]:
    """Yield ``(line_number, record)`` pairs, skipping fully blank lines.

    The first pair is the header row. Records the csv module cannot decode are
    reported through ``on_error`` and skipped. Open ``handle`` with
    ``errors="surrogateescape"`` so stray non-UTF-8 bytes reach
    :meth:`RowNormalizer.parse` instead of failing the read.
    """

    reader = csv.reader(handle)
    while True:
        try:
            record = next(reader)
        except StopIteration:
            return
        except csv.Error as exc:
            if on_error is None:
                raise
            on_error(reader.line_num, exc)
            continue
        if not any(cell.strip() for cell in record):
            continue
        yield reader.line_num, record


__all__ = [
    "FileContext",
    "HeaderMap",
    "RowNormalizer",
    "iter_records",
    "normalize_phone",
]
