from __future__ import annotations

import re
import statistics
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from .claims import (
    GREGORIAN_CALENDAR,
    VALUE_TYPES,
    ClaimValue,
    DateCategory,
    ItemValue,
    Rank,
    Statement,
    StringValue,
    TimeValue,
    classify_date,
    human_date,
    iso_date,
    parse_claims,
    parse_time,
    value_key,
)
from .registry import GAME, RegistryEntry, sources_for
from .utils import commons_file_url

# Target -> (table, column holding the subject entity's QID)
TARGET_TABLES: dict[str, tuple[str, str]] = {
    "game_platform": ("game_platforms", "game_qid"),
    "game_tag": ("game_tags", "game_qid"),
    "game_company": ("game_companies", "game_qid"),
    "game_relation": ("game_relations", "from_game_qid"),
    "release_date": ("release_dates", "game_qid"),
    "website": ("websites", "game_qid"),
    "external_game": ("external_games", "game_qid"),
    "game_image": ("game_images", "game_qid"),
    "game_video": ("game_videos", "game_qid"),
    "game_age_rating": ("game_age_ratings", "game_qid"),
    "game_score": ("game_scores", "game_qid"),
    "platform_controller": ("platform_controllers", "platform_qid"),
    "platform_family": ("platform_family_members", "platform_qid"),
}

OTHER = "OTHER"

# "92/100", "8.5 / 10", "85%" or a bare number on a 100 scale
REVIEW_SCORE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(?:/\s*(\d+(?:\.\d+)?)|(%))?$")
REVIEWER_QUALIFIER = "P447"


@dataclass(frozen=True)
class EntitySnapshot:
    """One entity's raw claim document plus the scalar values currently stored for it."""

    qid: str
    claims: Optional[Mapping[str, Any]]
    current: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Candidate:
    value: Any
    rank: Rank
    order: int
    year: Optional[int] = None


def pick_best(candidates: Sequence[Candidate]) -> Optional[Candidate]:
    """Highest rank wins; ties go to the earliest year, then to first-seen order."""
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda c: (-int(c.rank), c.year if c.year is not None else sys.maxsize, c.order),
    )


def should_apply_scalar(candidate: Optional[Candidate], stored: Any) -> bool:
    if candidate is None or candidate.rank < Rank.NORMAL:
        return False
    return candidate.value != stored


@dataclass
class ParsedBatch:
    subject: str
    entity_qids: tuple[str, ...]
    sources: tuple[str, ...]
    rows: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    lookups: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    scalar_patches: dict[str, dict[str, Any]] = field(default_factory=dict)
    missing_claims: list[str] = field(default_factory=list)
    shape_mismatches: int = 0

    def add_row(self, table: str, row: dict[str, Any]) -> None:
        self.rows.setdefault(table, []).append(row)

    def add_lookup(self, table: str, row: dict[str, Any]) -> None:
        self.lookups.setdefault(table, []).append(row)

    def patch(self, qid: str, **values: Any) -> None:
        self.scalar_patches.setdefault(qid, {}).update(values)

    def row_count(self) -> int:
        return sum(len(rows) for rows in self.rows.values())


class _EntityContext:
    """Per-entity dedupe state shared by the target handlers."""

    def __init__(self, batch: ParsedBatch, snapshot: EntitySnapshot) -> None:
        self.batch = batch
        self.snapshot = snapshot
        self.qid = snapshot.qid
        self._seen: set[tuple[Any, ...]] = set()
        self._lookup_seen: set[tuple[Any, ...]] = set()

    def emit(self, table: str, key: tuple[Any, ...], row: dict[str, Any]) -> bool:
        token = (table, *key)
        if token in self._seen:
            return False
        self._seen.add(token)
        self.batch.add_row(table, row)
        return True

    def lookup(self, table: str, key: tuple[Any, ...], row: dict[str, Any]) -> None:
        token = (table, *key)
        if token in self._lookup_seen:
            return
        self._lookup_seen.add(token)
        self.batch.add_lookup(table, row)


def _values(ctx: _EntityContext, statements: Iterable[Statement], entry: RegistryEntry) -> list[tuple[Statement, ClaimValue]]:
    """Statements whose main value has the registry's expected shape, in document order."""
    expected = VALUE_TYPES[entry.value_type]
    out = []
    for statement in statements:
        if statement.value is None:
            continue
        if not isinstance(statement.value, expected):
            ctx.batch.shape_mismatches += 1
            continue
        out.append((statement, statement.value))
    return out


def _narrow(pairs: Sequence[tuple[Statement, Any]], entry: RegistryEntry) -> Sequence[tuple[Statement, Any]]:
    """Single-valued entries keep only their best-ranked statement."""
    if not entry.single_valued or len(pairs) < 2:
        return pairs
    best = pick_best([Candidate(None, statement.rank, order) for order, (statement, _) in enumerate(pairs)])
    return [pairs[best.order]]


def _item_rows(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry, build: Callable[[str, Statement], Optional[tuple[tuple[Any, ...], dict[str, Any]]]]) -> None:
    table, _ = TARGET_TABLES[entry.target]
    for statement, value in _narrow(_values(ctx, statements, entry), entry):
        assert isinstance(value, ItemValue)
        built = build(value.qid, statement)
        if built is None:
            continue
        key, row = built
        ctx.emit(table, key, row)


def _game_platform(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    _item_rows(
        ctx,
        statements,
        entry,
        lambda qid, st: ((ctx.qid, qid), {"game_qid": ctx.qid, "platform_qid": qid, "source": entry.source, "claim_id": st.claim_id}),
    )


def _game_tag(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    def build(qid: str, st: Statement):
        ctx.lookup("tags", (entry.kind, qid), {"kind": entry.kind, "qid": qid, "label": qid})
        row = {"game_qid": ctx.qid, "tag_kind": entry.kind, "tag_qid": qid, "source": entry.source, "claim_id": st.claim_id}
        return (ctx.qid, entry.kind, qid), row

    _item_rows(ctx, statements, entry, build)


def _game_company(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    def build(qid: str, st: Statement):
        ctx.lookup("companies", (qid,), {"qid": qid, "name": qid})
        row = {"game_qid": ctx.qid, "company_qid": qid, "role": entry.kind, "source": entry.source, "claim_id": st.claim_id}
        return (ctx.qid, qid, entry.kind), row

    _item_rows(ctx, statements, entry, build)


def _game_relation(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    def build(qid: str, st: Statement):
        if qid == ctx.qid:
            return None
        row = {"from_game_qid": ctx.qid, "to_game_qid": qid, "kind": entry.kind, "source": entry.source, "claim_id": st.claim_id}
        return (ctx.qid, qid, entry.kind), row

    _item_rows(ctx, statements, entry, build)


def _game_age_rating(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    _item_rows(
        ctx,
        statements,
        entry,
        lambda qid, st: (
            (ctx.qid, entry.kind, qid),
            {"game_qid": ctx.qid, "organization": entry.kind, "rating_qid": qid, "source": entry.source, "claim_id": st.claim_id},
        ),
    )


def _platform_controller(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    def build(qid: str, st: Statement):
        ctx.lookup("controllers", (qid,), {"qid": qid, "name": qid})
        return (ctx.qid, qid), {"platform_qid": ctx.qid, "controller_qid": qid, "source": entry.source, "claim_id": st.claim_id}

    _item_rows(ctx, statements, entry, build)


def _platform_family(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    def build(qid: str, st: Statement):
        ctx.lookup("platform_families", (qid,), {"qid": qid, "name": qid})
        return (ctx.qid, qid), {"platform_qid": ctx.qid, "family_qid": qid, "source": entry.source, "claim_id": st.claim_id}

    _item_rows(ctx, statements, entry, build)


def _calendar_name(calendar_model: Optional[str]) -> Optional[str]:
    if not calendar_model:
        return None
    if calendar_model == GREGORIAN_CALENDAR:
        return "gregorian"
    return calendar_model.rsplit("/", 1)[-1]


def _release_date(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    table, _ = TARGET_TABLES[entry.target]
    candidates: list[Candidate] = []
    for order, (statement, value) in enumerate(_values(ctx, statements, entry)):
        assert isinstance(value, TimeValue)
        parts = parse_time(value.time, value.precision)
        if parts is None:
            continue
        category = classify_date(parts)
        human = human_date(parts, category)
        platform_qid = statement.qualifier_item("P400")
        region_qid = statement.qualifier_item("P291", "P3005")
        claim_key = statement.claim_id or f"{human}|{platform_qid or ''}|{region_qid or ''}"
        row = {
            "game_qid": ctx.qid,
            "claim_key": claim_key,
            "claim_id": statement.claim_id,
            "date": human,
            "year": parts.year,
            "month": parts.month if category is not DateCategory.YEAR else None,
            "day": parts.day if category is DateCategory.FULL_DATE else None,
            "precision": parts.precision,
            "category": category.value,
            "platform_qid": platform_qid,
            "region_qid": region_qid,
            "rank": statement.rank.label,
            "calendar_model": _calendar_name(value.calendar_model),
            "source": entry.source,
        }
        if ctx.emit(table, (ctx.qid, claim_key), row):
            candidates.append(Candidate((parts.year, iso_date(parts, category)), statement.rank, order, parts.year))

    if not entry.single_valued:
        return
    best = pick_best(candidates)
    current = (ctx.snapshot.current.get("release_year"), ctx.snapshot.current.get("first_release_at"))
    if should_apply_scalar(best, current):
        year, first_release_at = best.value
        ctx.batch.patch(ctx.qid, release_year=year, first_release_at=first_release_at)


def _string_rows(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> list[tuple[Statement, str]]:
    """Trimmed string values, first occurrence kept when values repeat case-insensitively."""
    out = []
    seen: set[str] = set()
    for statement, value in _values(ctx, statements, entry):
        assert isinstance(value, StringValue)
        key = value_key(value)
        if not key or key in seen:
            continue
        seen.add(key)
        out.append((statement, value.text.strip()))
    return out


def _website(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    table, _ = TARGET_TABLES[entry.target]
    for statement, url in _narrow(_string_rows(ctx, statements, entry), entry):
        row = {"game_qid": ctx.qid, "url": url, "category": entry.kind, "source": entry.source, "claim_id": statement.claim_id}
        ctx.emit(table, (ctx.qid, url.lower()), row)


def _external_game(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    table, _ = TARGET_TABLES[entry.target]
    for statement, uid in _narrow(_string_rows(ctx, statements, entry), entry):
        row = {
            "game_qid": ctx.qid,
            "category": entry.kind,
            "uid": uid,
            "url": entry.format_url(uid),
            "source": entry.source,
            "claim_id": statement.claim_id,
        }
        ctx.emit(table, (ctx.qid, entry.kind, uid.lower()), row)


def _game_video(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    table, _ = TARGET_TABLES[entry.target]
    for statement, video_id in _narrow(_string_rows(ctx, statements, entry), entry):
        row = {"game_qid": ctx.qid, "provider": entry.kind, "video_id": video_id, "source": entry.source, "claim_id": statement.claim_id}
        ctx.emit(table, (ctx.qid, entry.kind, video_id.lower()), row)


def _game_image(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    table, _ = TARGET_TABLES[entry.target]
    found: list[tuple[Statement, str, str]] = []
    for statement, name in _string_rows(ctx, statements, entry):
        found.append((statement, name, commons_file_url(name)))
    candidates = [Candidate((name, url), statement.rank, order) for order, (statement, name, url) in enumerate(found)]
    best = pick_best(candidates) if entry.single_valued else None
    for order, (statement, name, url) in enumerate(found):
        kind = entry.kind if best is None or order == best.order else OTHER
        row = {
            "game_qid": ctx.qid,
            "kind": kind,
            "url": url,
            "commons_name": name,
            "rank": statement.rank.label,
            "source": entry.source,
            "claim_id": statement.claim_id,
        }
        ctx.emit(table, (ctx.qid, kind, url), row)
    current = (ctx.snapshot.current.get("image_commons"), ctx.snapshot.current.get("image_url"))
    if should_apply_scalar(best, current):
        name, url = best.value
        ctx.batch.patch(ctx.qid, image_commons=name, image_url=url)


def parse_review_score(text: str) -> Optional[float]:
    """Normalize a review score string to a 0-100 scale, or None when it cannot be read."""
    match = REVIEW_SCORE_RE.match(text.strip().replace(",", "."))
    if match is None:
        return None
    value = float(match.group(1))
    if match.group(2) is not None:
        scale = float(match.group(2))
        if scale <= 0:
            return None
        value = value * 100 / scale
    if value > 100:
        return None
    return round(value, 2)


def _game_score(ctx: _EntityContext, statements: Sequence[Statement], entry: RegistryEntry) -> None:
    table, _ = TARGET_TABLES[entry.target]
    by_provider: dict[str, list[tuple[Statement, float]]] = {}
    for statement, value in _narrow(_values(ctx, statements, entry), entry):
        assert isinstance(value, StringValue)
        score = parse_review_score(value.text)
        if score is None:
            ctx.batch.shape_mismatches += 1
            continue
        provider = statement.qualifier_item(REVIEWER_QUALIFIER) or entry.kind
        by_provider.setdefault(provider, []).append((statement, score))

    scores = []
    for provider, found in by_provider.items():
        values = [score for _, score in found]
        scores.extend(values)
        row = {
            "game_qid": ctx.qid,
            "provider": provider,
            "score": round(statistics.median(values), 2),
            "score_count": len(values),
            "source": entry.source,
            "claim_id": found[0][0].claim_id if len(found) == 1 else None,
        }
        ctx.emit(table, (ctx.qid, provider), row)
    if scores:
        rating, count = round(sum(scores) / len(scores), 2), len(scores)
    else:
        rating, count = None, None
    current = ctx.snapshot.current
    if current.get("aggregated_rating") != rating or current.get("aggregated_rating_count") != count:
        ctx.batch.patch(ctx.qid, aggregated_rating=rating, aggregated_rating_count=count)


TARGET_HANDLERS: dict[str, Callable[[_EntityContext, Sequence[Statement], RegistryEntry], None]] = {
    "game_platform": _game_platform,
    "game_tag": _game_tag,
    "game_company": _game_company,
    "game_relation": _game_relation,
    "release_date": _release_date,
    "website": _website,
    "external_game": _external_game,
    "game_image": _game_image,
    "game_video": _game_video,
    "game_age_rating": _game_age_rating,
    "game_score": _game_score,
    "platform_controller": _platform_controller,
    "platform_family": _platform_family,
}


def parse_batch(entities: Sequence[EntitySnapshot], entries: Sequence[RegistryEntry], subject: str = GAME) -> ParsedBatch:
    """Derive every relation row and scalar patch for a batch of entities.

    Only properties named by entries are parsed. Entities without a claims document are
    reported in missing_claims and contribute no rows.
    """
    for entry in entries:
        if entry.subject != subject:
            raise ValueError(f"Registry entry {entry.property_id} is for {entry.subject}, not {subject}")
        if entry.target not in TARGET_HANDLERS:
            raise ValueError(f"No handler for registry target {entry.target!r}")
    property_ids = [entry.property_id for entry in entries]
    batch = ParsedBatch(
        subject=subject,
        entity_qids=tuple(snapshot.qid for snapshot in entities),
        sources=sources_for(entries),
    )
    for snapshot in entities:
        if snapshot.claims is None:
            batch.missing_claims.append(snapshot.qid)
            continue
        document = parse_claims(snapshot.claims, property_ids)
        ctx = _EntityContext(batch, snapshot)
        for entry in entries:
            statements = document.get(entry.property_id, ())
            TARGET_HANDLERS[entry.target](ctx, statements, entry)
    return batch

