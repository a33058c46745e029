from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Iterable, Mapping, Optional, Union

TIME_RE = re.compile(r"^([+-]?\d{1,6})-(\d{2})-(\d{2})T")
GREGORIAN_CALENDAR = "http://www.wikidata.org/entity/Q1985727"


class Rank(IntEnum):
    """Statement rank ordered by authority; absent ranks sort below deprecated."""

    UNRANKED = 0
    DEPRECATED = 1
    NORMAL = 2
    PREFERRED = 3

    @classmethod
    def from_raw(cls, raw: Optional[str]) -> "Rank":
        return _RANKS.get((raw or "").strip().lower(), cls.UNRANKED)

    @property
    def label(self) -> str:
        return self.name.lower()


_RANKS = {"preferred": Rank.PREFERRED, "normal": Rank.NORMAL, "deprecated": Rank.DEPRECATED}


@dataclass(frozen=True)
class ItemValue:
    qid: str


@dataclass(frozen=True)
class TimeValue:
    time: str
    precision: Optional[int] = None
    calendar_model: Optional[str] = None


@dataclass(frozen=True)
class StringValue:
    text: str


@dataclass(frozen=True)
class QuantityValue:
    amount: float
    unit: Optional[str] = None


ClaimValue = Union[ItemValue, TimeValue, StringValue, QuantityValue]

VALUE_TYPES: dict[str, type] = {
    "item": ItemValue,
    "time": TimeValue,
    "string": StringValue,
    "quantity": QuantityValue,
}


@dataclass(frozen=True)
class Statement:
    property_id: str
    claim_id: Optional[str]
    rank: Rank
    value: Optional[ClaimValue]
    qualifiers: Mapping[str, tuple[ClaimValue, ...]] = field(default_factory=dict)

    def qualifier_item(self, *property_ids: str) -> Optional[str]:
        """Return the first item-valued qualifier among property_ids, in argument order."""
        for property_id in property_ids:
            for value in self.qualifiers.get(property_id, ()):
                if isinstance(value, ItemValue):
                    return value.qid
        return None


def value_key(value: ClaimValue) -> str:
    """Natural dedupe key for a claim value."""
    if isinstance(value, ItemValue):
        return value.qid
    if isinstance(value, StringValue):
        return value.text.strip().lower()
    if isinstance(value, TimeValue):
        return f"{value.time}/{value.precision}"
    if isinstance(value, QuantityValue):
        return f"{value.amount}|{value.unit or ''}"
    raise TypeError(f"Unhandled claim value: {value!r}")


def parse_datavalue(datavalue: Optional[Mapping[str, Any]]) -> Optional[ClaimValue]:
    if not isinstance(datavalue, Mapping):
        return None
    kind = datavalue.get("type")
    value = datavalue.get("value")
    if kind == "wikibase-entityid" and isinstance(value, Mapping):
        qid = value.get("id")
        if not qid and value.get("numeric-id") is not None and value.get("entity-type") == "item":
            qid = f"Q{value['numeric-id']}"
        if isinstance(qid, str) and qid.startswith("Q"):
            return ItemValue(qid)
        return None
    if kind == "time" and isinstance(value, Mapping) and isinstance(value.get("time"), str):
        precision = value.get("precision")
        return TimeValue(
            value["time"],
            int(precision) if precision is not None else None,
            value.get("calendarmodel"),
        )
    if kind == "string" and isinstance(value, str):
        text = value.strip()
        return StringValue(text) if text else None
    if kind == "monolingualtext" and isinstance(value, Mapping):
        text = (value.get("text") or "").strip()
        return StringValue(text) if text else None
    if kind == "quantity" and isinstance(value, Mapping):
        try:
            amount = float(value.get("amount"))
        except (TypeError, ValueError):
            return None
        unit = value.get("unit")
        if unit == "1":
            unit = None
        return QuantityValue(amount, unit)
    return None


def parse_snak(snak: Optional[Mapping[str, Any]]) -> Optional[ClaimValue]:
    if not isinstance(snak, Mapping) or snak.get("snaktype") != "value":
        return None
    return parse_datavalue(snak.get("datavalue"))


def parse_statement(property_id: str, raw: Mapping[str, Any]) -> Statement:
    qualifiers: dict[str, tuple[ClaimValue, ...]] = {}
    for qualifier_pid, snaks in (raw.get("qualifiers") or {}).items():
        values = tuple(value for value in (parse_snak(snak) for snak in snaks or []) if value is not None)
        if values:
            qualifiers[qualifier_pid] = values
    return Statement(
        property_id=property_id,
        claim_id=raw.get("id"),
        rank=Rank.from_raw(raw.get("rank")),
        value=parse_snak(raw.get("mainsnak")),
        qualifiers=qualifiers,
    )


def parse_claims(
    raw_claims: Optional[Mapping[str, Any]],
    property_ids: Optional[Iterable[str]] = None,
) -> dict[str, tuple[Statement, ...]]:
    """Turn a raw claims map into typed statements, keeping list order.

    When property_ids is given, every other property is skipped without being parsed.
    """
    if not isinstance(raw_claims, Mapping):
        return {}
    wanted = set(property_ids) if property_ids is not None else None
    document: dict[str, tuple[Statement, ...]] = {}
    for property_id, statements in raw_claims.items():
        if wanted is not None and property_id not in wanted:
            continue
        if not isinstance(statements, list):
            continue
        document[property_id] = tuple(parse_statement(property_id, raw) for raw in statements if isinstance(raw, Mapping))
    return document


# Dates ------------------------------------------------------------------


class DateCategory(str, Enum):
    YEAR = "year"
    YEAR_MONTH = "year_month"
    FULL_DATE = "full_date"


@dataclass(frozen=True)
class DateParts:
    year: int
    month: Optional[int]
    day: Optional[int]
    precision: Optional[int]


def parse_time(time: Optional[str], precision: Optional[int] = None) -> Optional[DateParts]:
    """Decode a Wikibase time string into its parts; None for unparseable or non-positive years."""
    if not time:
        return None
    match = TIME_RE.match(time.strip())
    if not match:
        return None
    year = int(match.group(1))
    if year <= 0:
        return None
    month = int(match.group(2))
    day = int(match.group(3))
    month = month if 1 <= month <= 12 else None
    day = day if month is not None and 1 <= day <= 31 else None
    return DateParts(year, month, day, precision)


def classify_date(parts: DateParts) -> DateCategory:
    precision = parts.precision
    if precision is not None and precision <= 9:
        return DateCategory.YEAR
    if precision == 10:
        return DateCategory.YEAR_MONTH if parts.month else DateCategory.YEAR
    if parts.month and parts.day:
        return DateCategory.FULL_DATE
    if parts.month:
        return DateCategory.YEAR_MONTH
    return DateCategory.YEAR


def human_date(parts: DateParts, category: Optional[DateCategory] = None) -> str:
    category = category or classify_date(parts)
    if category is DateCategory.FULL_DATE:
        return f"{parts.year:04d}-{parts.month:02d}-{parts.day:02d}"
    if category is DateCategory.YEAR_MONTH:
        return f"{parts.year:04d}-{parts.month:02d}"
    return f"{parts.year:04d}"


def iso_date(parts: DateParts, category: Optional[DateCategory] = None) -> str:
    """Return a sortable ISO timestamp, padding missing month/day with the first of the period."""
    category = category or classify_date(parts)
    month = parts.month if category is not DateCategory.YEAR and parts.month else 1
    day = parts.day if category is DateCategory.FULL_DATE and parts.day else 1
    return f"{parts.year:04d}-{month:02d}-{day:02d}T00:00:00Z"
