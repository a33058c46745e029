import json
import logging

from . import config
from .caching import FETCHED
from .errors import FetchError, GamegraphError
from .lookups import backfill_placeholder_labels
from .normalize import EntitySnapshot, parse_batch
from .registry import GAME
from .runner import StageSummary, run_batches
from .utils import chunked, dumps_compact, enwiki_link, is_qid, pick_aliases, pick_description, pick_label, sitelink_count, utc_now_iso
from .writer import BatchWriter, WriteCounts

logger = logging.getLogger(__name__)

ALIAS_SOURCE = "wikidata:alias"

MISSING_LABEL = "missing_label"
MISSING_CLAIMS = "missing_claims"
MISSING_ENTITY = "missing_entity"

# Stored scalars the normalizer compares against before patching
SCALAR_COLUMNS = ("release_year", "first_release_at", "image_commons", "image_url", "aggregated_rating", "aggregated_rating_count")


def junk_reason_for(title, claims):
    """Data-quality reason for an enriched game, or None when it looks usable."""
    if claims is None:
        return MISSING_ENTITY
    if not claims:
        return MISSING_CLAIMS
    if is_qid(title or ""):
        return MISSING_LABEL
    return None


def build_game_update(current_title, entity, fetched_at, source):
    label = pick_label(entity)
    title = (label or "").strip() or current_title
    claims = entity.get("claims") or {}
    wiki_title, wiki_url = enwiki_link(entity)
    reason = junk_reason_for(title, claims)
    values = {
        "title": title,
        "description": pick_description(entity),
        "claims_json": dumps_compact(claims),
        "sitelinks": sitelink_count(entity),
        "wiki_title_en": wiki_title,
        "wiki_url_en": wiki_url,
        "is_junk": 1 if reason else 0,
        "junk_reason": reason,
        "last_enriched_at": fetched_at,
        "updated_at": fetched_at,
    }
    if source == FETCHED:
        # New revision: the derived rows must be rebuilt
        values["last_normalized_at"] = None
    aliases = [alias for alias in pick_aliases(entity) if alias.lower() != title.lower()]
    return values, aliases


def _write_enrichment(conn, updates, missing, now):
    for qid, values, aliases in updates:
        columns = sorted(values)
        conn.execute(
            f"UPDATE games SET {', '.join(f'{c} = ?' for c in columns)} WHERE qid = ?",
            [*(values[c] for c in columns), qid],
        )
        conn.execute("DELETE FROM alternative_names WHERE game_qid = ? AND source = ?", (qid, ALIAS_SOURCE))
        conn.executemany(
            "INSERT INTO alternative_names (game_qid, name, source) VALUES (?, ?, ?) ON CONFLICT DO NOTHING",
            [(qid, alias, ALIAS_SOURCE) for alias in aliases],
        )
    for qid in missing:
        conn.execute(
            """
            UPDATE games
            SET claims_json = NULL, is_junk = 1, junk_reason = ?, last_enriched_at = ?, updated_at = ?
            WHERE qid = ?
            """,
            (MISSING_ENTITY, now, now, qid),
        )
    return len(updates) + len(missing)


def enrich_games(ctx, all_=False, limit=None):
    """Fetch game entities through the revision cache and store labels, claims and sitelinks."""
    settings = ctx.settings
    cap = limit or settings.enrich_max_games
    batch_size = settings.enrich_batch_size
    summary = StageSummary("enrich-games", ctx.stats)
    summary.start(all=all_, limit=cap, batch_size=batch_size, concurrency=settings.enrich_concurrency)

    def worker(qids):
        batch = ctx.cache.get_or_fetch_entities(qids)
        marks = ",".join("?" for _ in qids)
        titles = {row["qid"]: row["title"] for row in ctx.store.query(f"SELECT qid, title FROM games WHERE qid IN ({marks})", qids)}
        now = utc_now_iso()
        updates = []
        for qid, cached in batch.entities.items():
            values, aliases = build_game_update(titles.get(qid, qid), cached.payload, now, cached.source)
            updates.append((qid, values, aliases))
        written = ctx.store.write(
            lambda conn: _write_enrichment(conn, updates, batch.missing, now),
            label=f"enrich-games {qids[0]}..{qids[-1]}",
        )
        return batch, written

    pending = "" if all_ else "AND last_enriched_at IS NULL"
    cursor = ""
    remaining = cap
    window = batch_size * settings.enrich_concurrency
    while remaining is None or remaining > 0:
        size = window if remaining is None else min(window, remaining)
        qids = [
            row["qid"]
            for row in ctx.store.query(
                f"SELECT qid FROM games WHERE qid > ? {pending} ORDER BY qid LIMIT ?",
                (cursor, size),
            )
        ]
        if not qids:
            break
        summary.add("scanned", len(qids))
        batches = list(chunked(qids, batch_size))
        for batch_qids, result, error in run_batches(batches, worker, workers=settings.enrich_concurrency, desc="Enriching games"):
            if error is not None:
                summary.batch_failed(batch_qids[0], error)
                continue
            batch, written = result
            summary.add("fetched", batch.fetched)
            summary.add("cache_hit", batch.hits)
            summary.add("missing", len(batch.missing))
            summary.add("written", written)
        cursor = qids[-1]
        if remaining is not None:
            remaining -= len(qids)
        logger.info("[*] enrich-games: cursor=%s scanned=%s", cursor, summary.counts["scanned"])
    _resolve_lookup_labels(ctx, summary)
    return summary.finish()


def _resolve_lookup_labels(ctx, summary):
    for table in ("tags", "companies"):
        try:
            summary.extra[f"labels_{table}"] = backfill_placeholder_labels(ctx, table)
        except FetchError as exc:
            summary.batch_failed(f"labels:{table}", exc)


def _game_snapshots(ctx, qids):
    marks = ",".join("?" for _ in qids)
    rows = ctx.store.query(
        f"SELECT qid, claims_json, {', '.join(SCALAR_COLUMNS)} FROM games WHERE qid IN ({marks}) ORDER BY qid",
        qids,
    )
    snapshots = []
    for row in rows:
        claims = json.loads(row["claims_json"]) if row["claims_json"] else None
        current = {column: row[column] for column in SCALAR_COLUMNS}
        snapshots.append(EntitySnapshot(row["qid"], claims, current))
    return snapshots


def normalize_games(ctx, all_=False, limit=None, include_niche=None, resolve_labels=False):
    """Derive relation rows and ranked scalars from stored game claims."""
    include_niche = ctx.settings.include_niche if include_niche is None else include_niche
    entries = ctx.registry.active(GAME, include_niche=include_niche)
    summary = StageSummary("normalize-games", ctx.stats)
    summary.start(
        all=all_,
        limit=limit,
        include_niche=include_niche,
        registry_version=ctx.registry.version,
        properties=len(entries),
    )
    writer = BatchWriter(ctx.store)
    totals = WriteCounts()
    pending = "" if all_ else "AND last_normalized_at IS NULL"
    batch_size = ctx.settings.normalize_batch_size
    cursor = ""
    remaining = limit
    while remaining is None or remaining > 0:
        size = batch_size if remaining is None else min(batch_size, remaining)
        qids = [
            row["qid"]
            for row in ctx.store.query(
                f"SELECT qid FROM games WHERE last_enriched_at IS NOT NULL AND qid > ? {pending} ORDER BY qid LIMIT ?",
                (cursor, size),
            )
        ]
        if not qids:
            break
        summary.add("scanned", len(qids))
        parsed = parse_batch(_game_snapshots(ctx, qids), entries, GAME)
        summary.add("missing_claims", len(parsed.missing_claims))
        summary.add("shape_mismatches", parsed.shape_mismatches)
        try:
            counts = writer.apply(parsed)
        except GamegraphError as exc:
            summary.batch_failed(cursor or "<start>", exc)
        else:
            totals.merge(counts)
            summary.add("written", counts.inserted)
            summary.add("patched", counts.patched)
            summary.add("dropped", counts.dropped_total)
        cursor = qids[-1]
        if remaining is not None:
            remaining -= len(qids)
        logger.info("[*] normalize-games: cursor=%s scanned=%s", cursor, summary.counts["scanned"])

    summary.extra["writes"] = totals.as_dict()
    if resolve_labels:
        _resolve_lookup_labels(ctx, summary)
    return summary.finish()


def flag_junk_games(ctx, batch_size=config.JUNK_SCAN_BATCH_SIZE):
    """Mark unusable games with a reason code; rows are never deleted."""
    summary = StageSummary("flag-junk")
    summary.start(batch_size=batch_size)
    cursor = ""
    while True:
        rows = ctx.store.query(
            """
            SELECT qid, title, claims_json, last_enriched_at, is_junk
            FROM games WHERE qid > ? ORDER BY qid LIMIT ?
            """,
            (cursor, batch_size),
        )
        if not rows:
            break
        cursor = rows[-1]["qid"]
        summary.add("scanned", len(rows))
        updates = []
        for row in rows:
            if row["is_junk"]:
                continue
            if row["last_enriched_at"] is None:
                reason = MISSING_CLAIMS
            elif row["claims_json"] is None:
                reason = MISSING_ENTITY
            elif is_qid(row["title"]):
                reason = MISSING_LABEL
            else:
                continue
            updates.append((reason, utc_now_iso(), row["qid"]))
            summary.add(reason)
        if updates:
            ctx.store.write(
                lambda conn, updates=updates: conn.executemany(
                    "UPDATE games SET is_junk = 1, junk_reason = ?, updated_at = ? WHERE qid = ?",
                    updates,
                ),
                label=f"flag-junk ..{cursor}",
            )
            summary.add("written", len(updates))
        logger.info("[*] flag-junk: scanned=%s flagged=%s cursor=%s", summary.counts["scanned"], summary.counts["written"], cursor)

    by_reason = {
        row["junk_reason"] or "(null)": row["total"]
        for row in ctx.store.query(
            "SELECT junk_reason, COUNT(*) AS total FROM games WHERE is_junk = 1 GROUP BY junk_reason ORDER BY junk_reason"
        )
    }
    summary.extra["junk_by_reason"] = by_reason
    logger.info("[+] flag-junk: junk by reason %s", by_reason)
    return summary.finish()
