import json
import logging
from pathlib import Path

import ijson

from . import config
from .caching import FETCHED
from .claims import ItemValue, StringValue, TimeValue, classify_date, iso_date, parse_claims, parse_time
from .errors import FetchError, GamegraphError
from .lookups import backfill_placeholder_labels
from .normalize import EntitySnapshot, parse_batch
from .registry import PLATFORM
from .runner import StageSummary, progress, run_batches
from .store import existing_keys
from .utils import (
    chunked,
    dumps_compact,
    enwiki_link,
    is_qid,
    pick_aliases,
    pick_description,
    pick_label,
    qid_from_entity_uri,
    read_json,
    sitelink_count,
    slugify,
    utc_now_iso,
)
from .wikidata import binding_value
from .writer import BatchWriter, WriteCounts

logger = logging.getLogger(__name__)

PLATFORM_DISCOVERY_QUERY = f"""
SELECT DISTINCT ?platform ?platformQid ?platformLabel ?platformDescription ?sitelinks WHERE {{
  ?platform wdt:P31/wdt:P279* wd:{config.PLATFORM_CLASS} .
  BIND(STRAFTER(STR(?platform), "{config.ENTITY_URI_PREFIX}") AS ?platformQid)
  OPTIONAL {{ ?platform wikibase:sitelinks ?sitelinks . }}
  SERVICE wikibase:label {{ bd:serviceParam wikibase:language "en". }}
}}
ORDER BY DESC(?sitelinks) ?platformQid
""".strip()

# Checked in order; the first rule with a matching hint wins
PLATFORM_TYPE_RULES = (
    ("HANDHELD", ("handheld", "portable")),
    ("HYBRID", ("hybrid",)),
    ("ARCADE", ("arcade",)),
    ("MOBILE", ("mobile", "smartphone", "cell phone")),
    ("COMPUTER", ("computer", "operating system", "microcomputer")),
    ("CLOUD", ("cloud", "streaming")),
    ("SERVICE", ("service", "network")),
    ("HOME_CONSOLE", ("console",)),
)
TYPE_HINT_PROPERTIES = ("P31", "P279")


def infer_platform_type(hints):
    lowered = [hint.lower() for hint in hints if hint]
    for platform_type, needles in PLATFORM_TYPE_RULES:
        if any(needle in hint for hint in lowered for needle in needles):
            return platform_type
    return "OTHER"


def parse_platform_rows(bindings):
    """Dedupe discovery bindings by QID, keeping the highest sitelink count seen."""
    rows = {}
    for binding in bindings:
        qid = binding_value(binding, "platformQid")
        if not is_qid(qid):
            continue
        label = (binding_value(binding, "platformLabel") or "").strip()
        description = (binding_value(binding, "platformDescription") or "").strip() or None
        try:
            sitelinks = int(binding_value(binding, "sitelinks") or 0)
        except ValueError:
            sitelinks = 0
        row = {"qid": qid, "name": label or qid, "description": description, "sitelinks": sitelinks}
        existing = rows.get(qid)
        if existing is None or sitelinks > existing["sitelinks"]:
            rows[qid] = row
    return sorted(rows.values(), key=lambda r: (-r["sitelinks"], r["qid"]))


def discover_platforms(ctx, limit=None):
    summary = StageSummary("discover-platforms", ctx.stats)
    summary.start(limit=limit)
    rows = parse_platform_rows(ctx.wdqs.select(PLATFORM_DISCOVERY_QUERY))
    limit = limit or ctx.settings.fetch_platform_limit
    if limit:
        rows = rows[:limit]
    summary.add("scanned", len(rows))
    summary.add("fetched", len(rows))
    now = utc_now_iso()

    def _write(conn):
        created = updated = unchanged = 0
        for batch in chunked(rows, 500):
            marks = ",".join("?" for _ in batch)
            current = {
                row["qid"]: row
                for row in conn.execute(
                    f"SELECT qid, name, description, sitelinks FROM platforms WHERE qid IN ({marks})",
                    [row["qid"] for row in batch],
                ).fetchall()
            }
            for row in batch:
                stored = current.get(row["qid"])
                if stored is None:
                    conn.execute(
                        """
                        INSERT INTO platforms (qid, name, description, sitelinks, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (row["qid"], row["name"], row["description"], row["sitelinks"], now, now),
                    )
                    created += 1
                elif (stored["name"], stored["description"], stored["sitelinks"]) != (
                    row["name"],
                    row["description"],
                    row["sitelinks"],
                ):
                    conn.execute(
                        "UPDATE platforms SET name = ?, description = ?, sitelinks = ?, updated_at = ? WHERE qid = ?",
                        (row["name"], row["description"], row["sitelinks"], now, row["qid"]),
                    )
                    updated += 1
                else:
                    unchanged += 1
        return created, updated, unchanged

    created, updated, unchanged = ctx.store.write(_write, label="discover-platforms")
    summary.add("written", created + updated)
    summary.add("created", created)
    summary.add("updated", updated)
    summary.add("unchanged", unchanged)
    return summary.finish()


def _iter_seed_rows(path):
    with open(path, "rb") as fh:
        for row in ijson.items(fh, "item"):
            if isinstance(row, dict):
                yield row


def import_groupings(ctx, seed_path, overrides_path=None):
    """Load WikiProject platform groupings (expected roster sizes) and optional is_major overrides."""
    summary = StageSummary("import-groupings")
    summary.start(seed=seed_path, overrides=overrides_path)
    overrides = {}
    if overrides_path and Path(overrides_path).exists():
        raw = read_json(overrides_path)
        if not isinstance(raw, dict):
            raise GamegraphError(f"{overrides_path} must contain a JSON object of qid -> bool")
        overrides = {qid.strip().upper(): bool(flag) for qid, flag in raw.items() if is_qid(qid.strip().upper())}

    parsed = []
    for row in _iter_seed_rows(seed_path):
        summary.add("scanned")
        platform_qid = qid_from_entity_uri(row.get("grouping"))
        sample_qid = qid_from_entity_uri(row.get("sample"))
        try:
            count = int(str(row.get("count")).strip())
        except ValueError:
            count = -1
        if not platform_qid or count < 0:
            summary.add("failed")
            logger.warning("[!] import-groupings: skipping malformed row %s", row)
            continue
        parsed.append((platform_qid, count, sample_qid))

    now = utc_now_iso()

    def _write(conn):
        created = updated = 0
        present = existing_keys(conn, "platforms", "qid", [qid for qid, _, _ in parsed])
        for qid, count, sample in parsed:
            if qid not in present:
                conn.execute(
                    """
                    INSERT INTO platforms (qid, name, sitelinks, created_at, updated_at)
                    VALUES (?, ?, 0, ?, ?)
                    """,
                    (qid, qid, now, now),
                )
                present.add(qid)
                created += 1
            else:
                updated += 1
            conn.execute(
                "UPDATE platforms SET wiki_project_game_count = ?, sample_game_qid = ?, updated_at = ? WHERE qid = ?",
                (count, sample, now, qid),
            )
        for qid, flag in overrides.items():
            conn.execute("UPDATE platforms SET is_major = ?, updated_at = ? WHERE qid = ?", (int(flag), now, qid))
        return created, updated

    created, updated = ctx.store.write(_write, label="import-groupings")
    summary.add("written", created + updated)
    summary.add("created", created)
    summary.add("updated", updated)
    summary.add("overrides", len(overrides))
    top = sorted(parsed, key=lambda item: -item[1])[:10]
    logger.info("[*] import-groupings: top10=%s", ", ".join(f"{qid} ({count})" for qid, count, _ in top))
    return summary.finish()


def _first_string(document, property_id):
    for statement in document.get(property_id, ()):
        if isinstance(statement.value, StringValue):
            return statement.value.text
    return None


def _earliest_release(document):
    earliest = None
    for statement in document.get("P577", ()):
        if not isinstance(statement.value, TimeValue):
            continue
        parts = parse_time(statement.value.time, statement.value.precision)
        if parts is None:
            continue
        stamp = iso_date(parts, classify_date(parts))
        if earliest is None or stamp < earliest[1]:
            earliest = (parts.year, stamp)
    return earliest or (None, None)


def _alternative_name(entity, name):
    for alias in pick_aliases(entity):
        if alias.lower() != (name or "").lower():
            return alias
    for group in (entity.get("aliases") or {}).values():
        for alias in group or []:
            value = (alias.get("value") or "").strip()
            if value and value.lower() != (name or "").lower():
                return value
    return None


def type_hint_ids(entity):
    document = parse_claims(entity.get("claims"), TYPE_HINT_PROPERTIES)
    ids = []
    for property_id in TYPE_HINT_PROPERTIES:
        for statement in document.get(property_id, ()):
            if isinstance(statement.value, ItemValue):
                ids.append(statement.value.qid)
    return ids


def build_platform_update(current_name, entity, type_labels):
    """Column values for one enriched platform entity."""
    document = parse_claims(entity.get("claims"), ("P1813", "P856", "P577"))
    name = pick_label(entity) or current_name
    description = pick_description(entity)
    release_year, first_release_at = _earliest_release(document)
    _title, enwiki_url = enwiki_link(entity)
    hints = [type_labels.get(qid) for qid in type_hint_ids(entity)]
    hints.extend([name, description])
    return {
        "name": name,
        "description": description,
        "abbreviation": _first_string(document, "P1813"),
        "alternative_name": _alternative_name(entity, name),
        "slug": slugify(name),
        "url": _first_string(document, "P856") or enwiki_url,
        "platform_type": infer_platform_type([hint for hint in hints if hint]),
        "sitelinks": sitelink_count(entity),
        "release_year": release_year,
        "first_release_at": first_release_at,
        "claims_json": dumps_compact(entity.get("claims") or {}),
    }


def _backfill_labels(ctx, summary, limit):
    sql = "SELECT qid, name FROM platforms WHERE (name GLOB 'Q[0-9]*' OR description IS NULL) ORDER BY sitelinks DESC, qid"
    params = ()
    if limit:
        sql += " LIMIT ?"
        params = (limit,)
    targets = ctx.store.query(sql, params)
    summary.add("scanned", len(targets))
    for batch in progress(list(chunked(targets, config.API_MAX_IDS)), desc="Backfilling platform labels", unit="batch"):
        try:
            labels = ctx.labels.resolve([row["qid"] for row in batch])
        except FetchError as exc:
            summary.batch_failed(batch[0]["qid"], exc)
            continue
        updates = []
        for row in batch:
            label, description = labels.get(row["qid"], (None, None))
            if label is None and description is None:
                summary.add("missing")
                continue
            updates.append((label or row["name"], description, utc_now_iso(), row["qid"]))
        summary.add("fetched", len(updates))
        if updates:
            ctx.store.write(
                lambda conn, updates=updates: conn.executemany(
                    "UPDATE platforms SET name = ?, description = COALESCE(?, description), updated_at = ? WHERE qid = ?",
                    updates,
                ),
                label="backfill-platforms",
            )
            summary.add("written", len(updates))


def enrich_platforms(ctx, all_=False, limit=None, labels_only=False):
    summary = StageSummary("enrich-platforms", ctx.stats)
    summary.start(all=all_, limit=limit, labels_only=labels_only)
    if labels_only:
        _backfill_labels(ctx, summary, limit)
        return summary.finish()

    where = "" if all_ else (
        "WHERE name GLOB 'Q[0-9]*' OR description IS NULL OR platform_type IS NULL OR last_enriched_at IS NULL"
    )
    sql = f"SELECT qid, name FROM platforms {where} ORDER BY sitelinks DESC, qid"
    params = ()
    if limit:
        sql += " LIMIT ?"
        params = (limit,)
    targets = ctx.store.query(sql, params)
    summary.add("scanned", len(targets))
    if not targets:
        logger.info("[*] enrich-platforms: no platforms to enrich")
        return summary.finish()
    names = {row["qid"]: row["name"] for row in targets}

    def worker(qids):
        batch = ctx.cache.get_or_fetch_entities(qids)
        type_ids = [qid for cached in batch.entities.values() for qid in type_hint_ids(cached.payload)]
        resolved = ctx.labels.resolve(type_ids)
        type_labels = {qid: label for qid, (label, _desc) in resolved.items() if label}
        now = utc_now_iso()
        updates = []
        for qid, cached in batch.entities.items():
            values = build_platform_update(names[qid], cached.payload, type_labels)
            values["last_enriched_at"] = now
            values["updated_at"] = now
            if cached.source == FETCHED:
                values["last_normalized_at"] = None
            updates.append((qid, values))

        def _write(conn):
            for qid, values in updates:
                columns = sorted(values)
                conn.execute(
                    f"UPDATE platforms SET {', '.join(f'{c} = ?' for c in columns)} WHERE qid = ?",
                    [*(values[c] for c in columns), qid],
                )
            return len(updates)

        written = ctx.store.write(_write, label=f"enrich-platforms {qids[0]}") if updates else 0
        return batch, written

    batches = list(chunked(list(names), ctx.settings.enrich_batch_size))
    for qids, result, error in run_batches(batches, worker, workers=ctx.settings.enrich_concurrency, desc="Enriching platforms"):
        if error is not None:
            summary.batch_failed(qids[0], error)
            continue
        batch, written = result
        summary.add("fetched", batch.fetched)
        summary.add("cache_hit", batch.hits)
        summary.add("missing", len(batch.missing))
        summary.add("written", written)
    return summary.finish()


def select_major_platforms(ctx, top_n=None, min_sitelinks=None, include_qids=None):
    settings = ctx.settings
    top_n = top_n or settings.major_top_n
    min_sitelinks = settings.major_min_sitelinks if min_sitelinks is None else min_sitelinks
    include_qids = tuple(include_qids if include_qids is not None else settings.major_include_qids)
    summary = StageSummary("select-major-platforms")
    summary.start(top_n=top_n, min_sitelinks=min_sitelinks, include=",".join(include_qids) or "-")

    ranked = [
        row["qid"]
        for row in ctx.store.query(
            "SELECT qid FROM platforms WHERE sitelinks >= ? ORDER BY sitelinks DESC, name ASC LIMIT ?",
            (min_sitelinks, top_n),
        )
    ]
    summary.add("scanned", ctx.store.count("platforms"))

    def _write(conn):
        known = existing_keys(conn, "platforms", "qid", include_qids)
        for qid in include_qids:
            if qid not in known:
                logger.warning("[!] select-major-platforms: include QID %s is not a known platform", qid)
        selected = list(dict.fromkeys([*ranked, *sorted(known)]))
        now = utc_now_iso()
        conn.execute("UPDATE platforms SET is_major = 0, updated_at = ? WHERE is_major = 1", (now,))
        for batch in chunked(selected, 500):
            marks = ",".join("?" for _ in batch)
            conn.execute(f"UPDATE platforms SET is_major = 1, updated_at = ? WHERE qid IN ({marks})", [now, *batch])
        return selected

    selected = ctx.store.write(_write, label="select-major-platforms")
    summary.add("written", len(selected))
    summary.extra["major_platforms"] = selected
    logger.info("[*] select-major-platforms: %s", ", ".join(selected) or "<none>")
    return summary.finish()


def _platform_snapshots(ctx, qids):
    marks = ",".join("?" for _ in qids)
    rows = ctx.store.query(f"SELECT qid, claims_json FROM platforms WHERE qid IN ({marks}) ORDER BY qid", qids)
    return [EntitySnapshot(row["qid"], json.loads(row["claims_json"]) if row["claims_json"] else None) for row in rows]


def hydrate_platform_relations(ctx, all_=False, limit=None, resolve_labels=True):
    """Controllers (P479) and platform families (P361) from stored platform claims."""
    entries = ctx.registry.active(PLATFORM, include_niche=ctx.settings.include_niche)
    summary = StageSummary("hydrate-platform-relations", ctx.stats)
    summary.start(all=all_, limit=limit, properties=",".join(entry.property_id for entry in entries))
    writer = BatchWriter(ctx.store)
    totals = WriteCounts()
    cursor = ""
    remaining = limit
    batch_size = ctx.settings.normalize_batch_size
    pending = "" if all_ else "AND last_normalized_at IS NULL"
    while remaining is None or remaining > 0:
        size = batch_size if remaining is None else min(batch_size, remaining)
        qids = [
            row["qid"]
            for row in ctx.store.query(
                f"SELECT qid FROM platforms WHERE claims_json IS NOT NULL AND qid > ? {pending} ORDER BY qid LIMIT ?",
                (cursor, size),
            )
        ]
        if not qids:
            break
        summary.add("scanned", len(qids))
        parsed = parse_batch(_platform_snapshots(ctx, qids), entries, PLATFORM)
        try:
            counts = writer.apply(parsed)
        except GamegraphError as exc:
            summary.batch_failed(cursor or "<start>", exc)
        else:
            totals.merge(counts)
            summary.add("written", counts.inserted)
        cursor = qids[-1]
        if remaining is not None:
            remaining -= len(qids)

    summary.extra["writes"] = totals.as_dict()
    summary.add("dropped", totals.dropped_total)
    if resolve_labels:
        for table in ("controllers", "platform_families"):
            try:
                summary.extra[f"labels_{table}"] = backfill_placeholder_labels(ctx, table)
            except FetchError as exc:
                summary.batch_failed(f"labels:{table}", exc)
    return summary.finish()
