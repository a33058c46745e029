import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from . import config
from .errors import StoreConflictError
from .utils import chunked

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS platforms (
    qid TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    abbreviation TEXT,
    alternative_name TEXT,
    slug TEXT,
    url TEXT,
    platform_type TEXT,
    sitelinks INTEGER NOT NULL DEFAULT 0,
    release_year INTEGER,
    first_release_at TEXT,
    claims_json TEXT,
    is_major INTEGER NOT NULL DEFAULT 0,
    wiki_project_game_count INTEGER,
    sample_game_qid TEXT,
    games_cursor_qid TEXT,
    games_cursor_updated_at TEXT,
    games_roster_done INTEGER NOT NULL DEFAULT 0,
    games_fetched_count INTEGER NOT NULL DEFAULT 0,
    games_ingested_at TEXT,
    last_enriched_at TEXT,
    last_normalized_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS games (
    qid TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    claims_json TEXT,
    sitelinks INTEGER,
    wiki_title_en TEXT,
    wiki_url_en TEXT,
    image_commons TEXT,
    image_url TEXT,
    release_year INTEGER,
    first_release_at TEXT,
    aggregated_rating REAL,
    aggregated_rating_count INTEGER,
    rating REAL,
    rating_count INTEGER,
    total_rating REAL,
    total_rating_count INTEGER,
    is_junk INTEGER NOT NULL DEFAULT 0,
    junk_reason TEXT,
    last_enriched_at TEXT,
    last_normalized_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS platform_game_memberships (
    platform_qid TEXT NOT NULL REFERENCES platforms(qid) ON DELETE CASCADE,
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    source TEXT NOT NULL,
    first_seen_at TEXT NOT NULL,
    PRIMARY KEY (platform_qid, game_qid)
);

CREATE TABLE IF NOT EXISTS tags (
    kind TEXT NOT NULL,
    qid TEXT NOT NULL,
    label TEXT NOT NULL,
    PRIMARY KEY (kind, qid)
);

CREATE TABLE IF NOT EXISTS companies (
    qid TEXT PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS controllers (
    qid TEXT PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS platform_families (
    qid TEXT PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS game_platforms (
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    platform_qid TEXT NOT NULL REFERENCES platforms(qid) ON DELETE CASCADE,
    source TEXT NOT NULL,
    claim_id TEXT,
    PRIMARY KEY (game_qid, platform_qid)
);

CREATE TABLE IF NOT EXISTS game_tags (
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    tag_kind TEXT NOT NULL,
    tag_qid TEXT NOT NULL,
    source TEXT NOT NULL,
    claim_id TEXT,
    PRIMARY KEY (game_qid, tag_kind, tag_qid),
    FOREIGN KEY (tag_kind, tag_qid) REFERENCES tags(kind, qid)
);

CREATE TABLE IF NOT EXISTS game_companies (
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    company_qid TEXT NOT NULL REFERENCES companies(qid),
    role TEXT NOT NULL,
    source TEXT NOT NULL,
    claim_id TEXT,
    PRIMARY KEY (game_qid, company_qid, role)
);

CREATE TABLE IF NOT EXISTS game_relations (
    from_game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    to_game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    kind TEXT NOT NULL,
    source TEXT NOT NULL,
    claim_id TEXT,
    PRIMARY KEY (from_game_qid, to_game_qid, kind)
);

CREATE TABLE IF NOT EXISTS release_dates (
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    claim_key TEXT NOT NULL,
    claim_id TEXT,
    date TEXT NOT NULL,
    year INTEGER NOT NULL,
    month INTEGER,
    day INTEGER,
    precision INTEGER,
    category TEXT NOT NULL,
    platform_qid TEXT,
    region_qid TEXT,
    rank TEXT NOT NULL,
    calendar_model TEXT,
    source TEXT NOT NULL,
    PRIMARY KEY (game_qid, claim_key)
);

CREATE TABLE IF NOT EXISTS websites (
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    url TEXT NOT NULL,
    category TEXT NOT NULL,
    source TEXT NOT NULL,
    claim_id TEXT,
    PRIMARY KEY (game_qid, url)
);

CREATE TABLE IF NOT EXISTS external_games (
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    category TEXT NOT NULL,
    uid TEXT NOT NULL,
    url TEXT,
    source TEXT NOT NULL,
    claim_id TEXT,
    PRIMARY KEY (game_qid, category, uid)
);

CREATE TABLE IF NOT EXISTS game_images (
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    kind TEXT NOT NULL,
    url TEXT NOT NULL,
    commons_name TEXT NOT NULL,
    rank TEXT NOT NULL,
    source TEXT NOT NULL,
    claim_id TEXT,
    PRIMARY KEY (game_qid, kind, url)
);

CREATE TABLE IF NOT EXISTS game_videos (
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    provider TEXT NOT NULL,
    video_id TEXT NOT NULL,
    source TEXT NOT NULL,
    claim_id TEXT,
    PRIMARY KEY (game_qid, provider, video_id)
);

CREATE TABLE IF NOT EXISTS game_age_ratings (
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    organization TEXT NOT NULL,
    rating_qid TEXT NOT NULL,
    source TEXT NOT NULL,
    claim_id TEXT,
    PRIMARY KEY (game_qid, organization, rating_qid)
);

CREATE TABLE IF NOT EXISTS game_scores (
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    provider TEXT NOT NULL,
    score REAL NOT NULL,
    score_count INTEGER NOT NULL,
    source TEXT NOT NULL,
    claim_id TEXT,
    updated_at TEXT,
    PRIMARY KEY (game_qid, provider)
);

CREATE TABLE IF NOT EXISTS alternative_names (
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    name TEXT NOT NULL,
    source TEXT NOT NULL,
    PRIMARY KEY (game_qid, name)
);

CREATE TABLE IF NOT EXISTS platform_controllers (
    platform_qid TEXT NOT NULL REFERENCES platforms(qid) ON DELETE CASCADE,
    controller_qid TEXT NOT NULL REFERENCES controllers(qid),
    source TEXT NOT NULL,
    claim_id TEXT,
    PRIMARY KEY (platform_qid, controller_qid)
);

CREATE TABLE IF NOT EXISTS platform_family_members (
    platform_qid TEXT NOT NULL REFERENCES platforms(qid) ON DELETE CASCADE,
    family_qid TEXT NOT NULL REFERENCES platform_families(qid),
    source TEXT NOT NULL,
    claim_id TEXT,
    PRIMARY KEY (platform_qid, family_qid)
);

CREATE TABLE IF NOT EXISTS reviews (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    game_qid TEXT NOT NULL REFERENCES games(qid) ON DELETE CASCADE,
    rating REAL,
    body TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS wiki_page_cache (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    site TEXT NOT NULL,
    title TEXT NOT NULL,
    page_id INTEGER,
    revision_id INTEGER NOT NULL,
    content BLOB NOT NULL,
    fetched_at TEXT NOT NULL,
    UNIQUE (site, title)
);

CREATE TABLE IF NOT EXISTS wikidata_entity_cache (
    qid TEXT PRIMARY KEY,
    revision_id INTEGER NOT NULL,
    payload BLOB NOT NULL,
    fetched_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS extracted_qids (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    page_cache_id INTEGER NOT NULL REFERENCES wiki_page_cache(id) ON DELETE CASCADE,
    qid TEXT NOT NULL,
    extractor TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (page_cache_id, qid)
);

CREATE INDEX IF NOT EXISTS idx_platforms_major ON platforms(is_major, sitelinks);
CREATE INDEX IF NOT EXISTS idx_games_enriched ON games(last_enriched_at);
CREATE INDEX IF NOT EXISTS idx_games_normalized ON games(last_normalized_at);
CREATE INDEX IF NOT EXISTS idx_memberships_game ON platform_game_memberships(game_qid);
CREATE INDEX IF NOT EXISTS idx_reviews_game ON reviews(game_qid);
"""


def is_store_conflict(exc):
    """Return True for transient SQLite lock/busy conditions."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class Store:
    """SQLite store with one connection behind a single-slot write gate.

    Every statement runs under the same lock, so concurrent workers serialize their
    commits and can never interleave a delete-then-insert for the same entity.
    """

    def __init__(
        self,
        db_path,
        *,
        max_retries=config.STORE_MAX_RETRIES,
        backoff_base_ms=config.STORE_BACKOFF_BASE_MS,
        backoff_cap_ms=config.STORE_BACKOFF_CAP_MS,
        sleep=time.sleep,
    ):
        self.db_path = Path(db_path)
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self._sleep = sleep
        self._gate = threading.RLock()
        self._conn = None

    def open(self):
        if self._conn is not None:
            return self
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.executescript(SCHEMA)
        self._conn = conn
        return self

    def close(self):
        with self._gate:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def conn(self):
        if self._conn is None:
            raise RuntimeError("Store is not open")
        return self._conn

    def query(self, sql, params=()):
        with self._gate:
            return self.conn.execute(sql, params).fetchall()

    def query_one(self, sql, params=()):
        with self._gate:
            return self.conn.execute(sql, params).fetchone()

    def scalar(self, sql, params=()):
        row = self.query_one(sql, params)
        return None if row is None else row[0]

    @contextmanager
    def transaction(self):
        """Hold the write gate for one BEGIN IMMEDIATE ... COMMIT unit."""
        with self._gate:
            conn = self.conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def write(self, fn, *, label="batch"):
        """Run fn(conn) in one transaction, retrying transient lock conflicts with capped backoff."""
        backoff_ms = self.backoff_base_ms
        attempt = 0
        while True:
            try:
                with self.transaction() as conn:
                    return fn(conn)
            except sqlite3.OperationalError as exc:
                if not is_store_conflict(exc):
                    raise
                if attempt >= self.max_retries:
                    raise StoreConflictError(f"{label}: store conflict persisted after {attempt} retries: {exc}") from exc
                wait = backoff_ms / 1000.0
                logger.warning("[!] %s: store conflict (%s); retry %s/%s in %.2fs", label, exc, attempt + 1, self.max_retries, wait)
                self._sleep(wait)
                backoff_ms = min(backoff_ms * 2, self.backoff_cap_ms)
                attempt += 1

    def count(self, table, where="", params=()):
        sql = f"SELECT COUNT(*) FROM {table}"
        if where:
            sql += f" WHERE {where}"
        return self.scalar(sql, params) or 0


def insert_or_ignore(conn, table, columns, rows):
    """Insert rows, skipping any that collide with the table's natural key. Returns rows inserted."""
    if not rows:
        return 0
    placeholders = ", ".join("?" for _ in columns)
    sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) ON CONFLICT DO NOTHING"
    inserted = 0
    for batch in chunked(rows, 500):
        cursor = conn.executemany(sql, batch)
        inserted += max(cursor.rowcount, 0)
    return inserted


def existing_keys(conn, table, key_column, values):
    """Return the subset of values present in table.key_column."""
    found = set()
    for batch in chunked(sorted(set(values)), 500):
        placeholders = ",".join("?" for _ in batch)
        cursor = conn.execute(f"SELECT {key_column} FROM {table} WHERE {key_column} IN ({placeholders})", batch)
        found.update(row[0] for row in cursor.fetchall())
    return found

