from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import zstandard as zstd

from . import config
from .errors import EntityMissingError
from .utils import chunked, dedupe, is_qid, pick_description, pick_label, utc_now_iso

logger = logging.getLogger(__name__)

CACHE_HIT = "cache-hit"
FETCHED = "fetched"


def encode_payload(payload: Any) -> bytes:
    raw = json.dumps(payload, ensure_ascii=True).encode("utf-8")
    return zstd.ZstdCompressor().compress(raw)


def decode_payload(blob: bytes) -> Any:
    raw = zstd.ZstdDecompressor().decompress(blob)
    return json.loads(raw.decode("utf-8"))


def encode_text(text: str) -> bytes:
    return zstd.ZstdCompressor().compress(text.encode("utf-8"))


def decode_text(blob: bytes) -> str:
    return zstd.ZstdDecompressor().decompress(blob).decode("utf-8")


@dataclass(frozen=True)
class CachedEntity:
    qid: str
    revision_id: int
    payload: dict[str, Any]
    source: str
    fetched_at: str


@dataclass(frozen=True)
class CachedPage:
    cache_id: int
    site: str
    title: str
    page_id: Optional[int]
    revision_id: int
    content: str
    source: str
    fetched_at: str


@dataclass(frozen=True)
class EntityBatch:
    entities: dict[str, CachedEntity]
    missing: tuple[str, ...]

    @property
    def hits(self) -> int:
        return sum(1 for entity in self.entities.values() if entity.source == CACHE_HIT)

    @property
    def fetched(self) -> int:
        return sum(1 for entity in self.entities.values() if entity.source == FETCHED)


class RevisionAwareCache:
    """Check the current revision first; fetch the full document only when it changed."""

    def __init__(self, store, entity_api, wiki_api, stats) -> None:
        self.store = store
        self.entity_api = entity_api
        self.wiki_api = wiki_api
        self.stats = stats

    # Entities -----------------------------------------------------------

    def _stored_entities(self, qids: list[str]) -> dict[str, Any]:
        rows = {}
        for batch in chunked(qids, 500):
            placeholders = ",".join("?" for _ in batch)
            for row in self.store.query(
                f"SELECT qid, revision_id, payload, fetched_at FROM wikidata_entity_cache WHERE qid IN ({placeholders})",
                batch,
            ):
                rows[row["qid"]] = row
        return rows

    def get_or_fetch_entities(self, qids: Iterable[str]) -> EntityBatch:
        """Resolve up to API_MAX_IDS entities with one info request and at most one full fetch."""
        qids = dedupe(qids)
        if len(qids) > config.API_MAX_IDS:
            raise ValueError(f"At most {config.API_MAX_IDS} entities per cache batch")
        if not qids:
            return EntityBatch({}, ())

        infos = self.entity_api.get_infos(qids)
        stored = self._stored_entities(qids)
        result: dict[str, CachedEntity] = {}
        missing: list[str] = []
        stale: list[str] = []
        for qid in qids:
            info = infos.get(qid)
            if not info or info["missing"] or info["lastrevid"] is None:
                missing.append(qid)
                continue
            row = stored.get(qid)
            if row is not None and row["revision_id"] == info["lastrevid"]:
                result[qid] = CachedEntity(qid, row["revision_id"], decode_payload(row["payload"]), CACHE_HIT, row["fetched_at"])
                continue
            stale.append(qid)

        self.stats.increment("cache_hits", len(result))
        if stale:
            self.stats.increment("cache_misses", len(stale))
            fetched = self.entity_api.get_entities(stale)
            now = utc_now_iso()
            rows = []
            for qid in stale:
                entity = fetched.get(qid)
                if not entity or "missing" in entity:
                    missing.append(qid)
                    continue
                revision = int(entity.get("lastrevid") or infos[qid]["lastrevid"])
                result[qid] = CachedEntity(qid, revision, entity, FETCHED, now)
                rows.append((qid, revision, encode_payload(entity), now))
            if rows:
                self.store.write(lambda conn: _upsert_entities(conn, rows), label="entity-cache")

        if missing:
            logger.debug("[!] %s entities missing upstream: %s", len(missing), ", ".join(missing[:10]))
        return EntityBatch(result, tuple(missing))

    def get_or_fetch_entity(self, qid: str) -> CachedEntity:
        batch = self.get_or_fetch_entities([qid])
        entity = batch.entities.get(qid)
        if entity is None:
            raise EntityMissingError(qid)
        return entity

    # Wiki pages ---------------------------------------------------------

    def get_or_fetch_wiki_page(self, site: str, title: str) -> CachedPage:
        current = self.wiki_api.get_revision(site, title)
        if current["missing"] or current["revision_id"] is None:
            raise EntityMissingError(f"{site}:{title}")
        row = self.store.query_one(
            "SELECT id, page_id, revision_id, content, fetched_at FROM wiki_page_cache WHERE site = ? AND title = ?",
            (site, title),
        )
        if row is not None and row["revision_id"] == current["revision_id"]:
            self.stats.increment("cache_hits")
            return CachedPage(
                row["id"], site, title, row["page_id"], row["revision_id"], decode_text(row["content"]), CACHE_HIT, row["fetched_at"]
            )

        self.stats.increment("cache_misses")
        page = self.wiki_api.get_content(site, title)
        if page["missing"] or page["revision_id"] is None or page["content"] is None:
            raise EntityMissingError(f"{site}:{title}")
        now = utc_now_iso()
        blob = encode_text(page["content"])

        def _upsert(conn):
            conn.execute(
                """
                INSERT INTO wiki_page_cache (site, title, page_id, revision_id, content, fetched_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(site, title) DO UPDATE SET
                    page_id=excluded.page_id,
                    revision_id=excluded.revision_id,
                    content=excluded.content,
                    fetched_at=excluded.fetched_at
                """,
                (site, title, page["page_id"], page["revision_id"], blob, now),
            )
            return conn.execute("SELECT id FROM wiki_page_cache WHERE site = ? AND title = ?", (site, title)).fetchone()[0]

        cache_id = self.store.write(_upsert, label="wiki-page-cache")
        return CachedPage(cache_id, site, title, page["page_id"], page["revision_id"], page["content"], FETCHED, now)


def _upsert_entities(conn, rows) -> None:
    conn.executemany(
        """
        INSERT INTO wikidata_entity_cache (qid, revision_id, payload, fetched_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(qid) DO UPDATE SET
            revision_id=excluded.revision_id,
            payload=excluded.payload,
            fetched_at=excluded.fetched_at
        WHERE wikidata_entity_cache.revision_id != excluded.revision_id
        """,
        rows,
    )


class LabelResolver:
    """ID -> (label, description) resolution with an in-memory memo, 50 ids per API call.

    Safe to share between worker threads; the API call itself runs outside the lock.
    """

    def __init__(self, entity_api, preferred_lang="en"):
        self.entity_api = entity_api
        self.preferred_lang = preferred_lang
        self._memo = {}
        self._lock = threading.Lock()
        self.stats = {
            "memo_hits": 0,
            "api_batches": 0,
            "api_ids": 0,
        }

    def resolve(self, ids):
        """Resolve a batch of ids and return {id: (label, description)}; unknown ids map to (None, None)."""
        ordered = [qid for qid in dedupe(ids) if is_qid(qid)]
        with self._lock:
            missing = [qid for qid in ordered if qid not in self._memo]
            self.stats["memo_hits"] += len(ordered) - len(missing)
        for batch in chunked(missing, config.API_MAX_IDS):
            entities = self.entity_api.get_labels(batch)
            resolved = {}
            for qid in batch:
                entity = entities.get(qid)
                if not entity or "missing" in entity:
                    resolved[qid] = (None, None)
                    continue
                resolved[qid] = (
                    pick_label(entity, self.preferred_lang),
                    pick_description(entity, self.preferred_lang),
                )
            with self._lock:
                self.stats["api_batches"] += 1
                self.stats["api_ids"] += len(batch)
                self._memo.update(resolved)
        with self._lock:
            return {qid: self._memo[qid] for qid in ordered}
