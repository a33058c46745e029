from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .normalize import TARGET_TABLES, ParsedBatch
from .registry import GAME, PLATFORM
from .store import existing_keys, insert_or_ignore
from .utils import chunked, utc_now_iso

logger = logging.getLogger(__name__)

TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    "game_platforms": ("game_qid", "platform_qid", "source", "claim_id"),
    "game_tags": ("game_qid", "tag_kind", "tag_qid", "source", "claim_id"),
    "game_companies": ("game_qid", "company_qid", "role", "source", "claim_id"),
    "game_relations": ("from_game_qid", "to_game_qid", "kind", "source", "claim_id"),
    "release_dates": (
        "game_qid",
        "claim_key",
        "claim_id",
        "date",
        "year",
        "month",
        "day",
        "precision",
        "category",
        "platform_qid",
        "region_qid",
        "rank",
        "calendar_model",
        "source",
    ),
    "websites": ("game_qid", "url", "category", "source", "claim_id"),
    "external_games": ("game_qid", "category", "uid", "url", "source", "claim_id"),
    "game_images": ("game_qid", "kind", "url", "commons_name", "rank", "source", "claim_id"),
    "game_videos": ("game_qid", "provider", "video_id", "source", "claim_id"),
    "game_age_ratings": ("game_qid", "organization", "rating_qid", "source", "claim_id"),
    "game_scores": ("game_qid", "provider", "score", "score_count", "source", "claim_id"),
    "platform_controllers": ("platform_qid", "controller_qid", "source", "claim_id"),
    "platform_family_members": ("platform_qid", "family_qid", "source", "claim_id"),
}

LOOKUP_COLUMNS: dict[str, tuple[str, ...]] = {
    "tags": ("kind", "qid", "label"),
    "companies": ("qid", "name"),
    "controllers": ("qid", "name"),
    "platform_families": ("qid", "name"),
}

# Rows that only point at another entity; the target must already exist
REFERENCE_CHECKS: dict[str, tuple[str, str, str]] = {
    "game_platforms": ("platform_qid", "platforms", "qid"),
    "game_relations": ("to_game_qid", "games", "qid"),
}

SUBJECT_TABLES = {GAME: "games", PLATFORM: "platforms"}

PATCHABLE_COLUMNS = {
    "games": {
        "release_year",
        "first_release_at",
        "image_commons",
        "image_url",
        "aggregated_rating",
        "aggregated_rating_count",
    },
    "platforms": set(),
}


def subject_tables(subject: str) -> list[tuple[str, str]]:
    """(table, subject column) pairs for every derived relation of one subject kind."""
    out = []
    for target, (table, column) in TARGET_TABLES.items():
        if (subject == PLATFORM) == target.startswith("platform_"):
            out.append((table, column))
    return out


@dataclass
class WriteCounts:
    entities: int = 0
    deleted: int = 0
    inserted: int = 0
    lookups_created: int = 0
    patched: int = 0
    dropped: dict[str, int] = field(default_factory=dict)

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())

    def merge(self, other: "WriteCounts") -> None:
        self.entities += other.entities
        self.deleted += other.deleted
        self.inserted += other.inserted
        self.lookups_created += other.lookups_created
        self.patched += other.patched
        for table, count in other.dropped.items():
            self.dropped[table] = self.dropped.get(table, 0) + count

    def as_dict(self) -> dict[str, Any]:
        return {
            "entities": self.entities,
            "deleted": self.deleted,
            "inserted": self.inserted,
            "lookups_created": self.lookups_created,
            "patched": self.patched,
            "dropped": dict(self.dropped),
            "dropped_total": self.dropped_total,
        }


class BatchWriter:
    """Commits a ParsedBatch atomically: drop dangling references, delete-then-insert, patch scalars."""

    def __init__(self, store) -> None:
        self.store = store

    def apply(self, parsed: ParsedBatch, *, stamp: bool = True) -> WriteCounts:
        label = f"normalize-{parsed.subject}"
        if parsed.entity_qids:
            label = f"{label} {parsed.entity_qids[0]}..{parsed.entity_qids[-1]}"
        return self.store.write(lambda conn: self._apply(conn, parsed, stamp), label=label)

    def _drop_dangling(self, conn, parsed: ParsedBatch, counts: WriteCounts) -> dict[str, list[dict[str, Any]]]:
        rows = dict(parsed.rows)
        for table, (column, ref_table, ref_column) in REFERENCE_CHECKS.items():
            candidates = rows.get(table)
            if not candidates:
                continue
            present = existing_keys(conn, ref_table, ref_column, [row[column] for row in candidates])
            kept = [row for row in candidates if row[column] in present]
            dropped = len(candidates) - len(kept)
            if dropped:
                counts.dropped[table] = counts.dropped.get(table, 0) + dropped
                logger.debug("[!] %s: dropped %s rows pointing at unknown %s", table, dropped, ref_table)
            rows[table] = kept
        return rows

    def _delete_derived(self, conn, parsed: ParsedBatch) -> int:
        if not parsed.entity_qids or not parsed.sources:
            return 0
        deleted = 0
        source_marks = ",".join("?" for _ in parsed.sources)
        for table, column in subject_tables(parsed.subject):
            for batch in chunked(list(parsed.entity_qids), 400):
                qid_marks = ",".join("?" for _ in batch)
                cursor = conn.execute(
                    f"DELETE FROM {table} WHERE {column} IN ({qid_marks}) AND source IN ({source_marks})",
                    [*batch, *parsed.sources],
                )
                deleted += max(cursor.rowcount, 0)
        return deleted

    def _patch(self, conn, parsed: ParsedBatch) -> int:
        table = SUBJECT_TABLES[parsed.subject]
        allowed = PATCHABLE_COLUMNS[table]
        patched = 0
        for qid, values in parsed.scalar_patches.items():
            unknown = set(values) - allowed
            if unknown:
                raise ValueError(f"Cannot patch {table} columns: {sorted(unknown)}")
            if not values:
                continue
            columns = sorted(values)
            assignments = ", ".join(f"{column} = ?" for column in columns)
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments}, updated_at = ? WHERE qid = ?",
                [*(values[column] for column in columns), utc_now_iso(), qid],
            )
            patched += max(cursor.rowcount, 0)
        return patched

    def _apply(self, conn, parsed: ParsedBatch, stamp: bool) -> WriteCounts:
        counts = WriteCounts(entities=len(parsed.entity_qids))
        rows = self._drop_dangling(conn, parsed, counts)

        for table, lookups in parsed.lookups.items():
            columns = LOOKUP_COLUMNS[table]
            counts.lookups_created += insert_or_ignore(conn, table, columns, [tuple(row[c] for c in columns) for row in lookups])

        counts.deleted = self._delete_derived(conn, parsed)
        for table, table_rows in rows.items():
            columns = TABLE_COLUMNS[table]
            counts.inserted += insert_or_ignore(conn, table, columns, [tuple(row[c] for c in columns) for row in table_rows])

        counts.patched = self._patch(conn, parsed)
        if stamp and parsed.entity_qids:
            table = SUBJECT_TABLES[parsed.subject]
            now = utc_now_iso()
            for batch in chunked(list(parsed.entity_qids), 400):
                marks = ",".join("?" for _ in batch)
                conn.execute(f"UPDATE {table} SET last_normalized_at = ? WHERE qid IN ({marks})", [now, *batch])
        return counts
