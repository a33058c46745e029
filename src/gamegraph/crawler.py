import logging
from dataclasses import dataclass
from typing import Optional

from . import config
from .errors import FetchError, GamegraphError, StoreConflictError
from .runner import StageSummary
from .store import insert_or_ignore
from .utils import utc_now_iso
from .wikidata import binding_value

logger = logging.getLogger(__name__)

ROSTER_SOURCE = "wikidata:P400"


@dataclass(frozen=True)
class RosterRow:
    qid: str
    label: str


@dataclass
class CrawlResult:
    platform_qid: str
    pages: int = 0
    rows_seen: int = 0
    games_created: int = 0
    links_created: int = 0
    cursor: Optional[str] = None
    exhausted: bool = False
    error: Optional[str] = None

    @property
    def failed(self):
        return self.error is not None


def build_roster_query(platform_qid, cursor, page_size):
    """SPARQL for one roster page: games on the platform with QID strictly after the cursor."""
    cursor_filter = f'FILTER(?gameQid > "{cursor}")' if cursor else ""
    return f"""
SELECT DISTINCT ?game ?gameQid ?gameLabel WHERE {{
  ?game wdt:P31 wd:{config.VIDEO_GAME_CLASS} ;
        wdt:P400 wd:{platform_qid} .
  BIND(STRAFTER(STR(?game), "{config.ENTITY_URI_PREFIX}") AS ?gameQid)
  {cursor_filter}
  SERVICE wikibase:label {{ bd:serviceParam wikibase:language "en". }}
}}
ORDER BY ?gameQid
LIMIT {int(page_size)}
""".strip()


def parse_roster_rows(bindings):
    """Dedupe bindings by QID and sort lexically; the label falls back to the QID."""
    by_qid = {}
    for row in bindings:
        qid = binding_value(row, "gameQid")
        if not qid or not config.QID_EXACT_PATTERN.match(qid):
            continue
        if qid in by_qid:
            continue
        label = (binding_value(row, "gameLabel") or "").strip() or qid
        by_qid[qid] = RosterRow(qid, label)
    return [by_qid[qid] for qid in sorted(by_qid)]


class RosterCrawler:
    """Walks one platform's roster page by page, committing each page with its cursor."""

    def __init__(self, store, wdqs, page_size=config.DEFAULT_PAGE_SIZE, max_pages=None):
        config.validate_page_size(page_size)
        self.store = store
        self.wdqs = wdqs
        self.page_size = page_size
        self.max_pages = max_pages

    def _load_cursor(self, platform_qid):
        row = self.store.query_one(
            "SELECT games_cursor_qid FROM platforms WHERE qid = ?",
            (platform_qid,),
        )
        if row is None:
            raise KeyError(f"Unknown platform {platform_qid}")
        return row["games_cursor_qid"]

    def _commit_page(self, platform_qid, rows):
        now = utc_now_iso()
        cursor = rows[-1].qid

        def _write(conn):
            created = insert_or_ignore(
                conn,
                "games",
                ("qid", "title", "created_at", "updated_at"),
                [(row.qid, row.label, now, now) for row in rows],
            )
            linked = insert_or_ignore(
                conn,
                "platform_game_memberships",
                ("platform_qid", "game_qid", "source", "first_seen_at"),
                [(platform_qid, row.qid, ROSTER_SOURCE, now) for row in rows],
            )
            conn.execute(
                """
                UPDATE platforms
                SET games_cursor_qid = ?,
                    games_cursor_updated_at = ?,
                    games_fetched_count = games_fetched_count + ?,
                    games_roster_done = 0,
                    updated_at = ?
                WHERE qid = ?
                """,
                (cursor, now, len(rows), now, platform_qid),
            )
            return created, linked

        return self.store.write(_write, label=f"roster {platform_qid} page ending {cursor}")

    def _mark_exhausted(self, platform_qid):
        now = utc_now_iso()

        def _write(conn):
            conn.execute(
                """
                UPDATE platforms
                SET games_roster_done = 1, games_ingested_at = ?, updated_at = ?
                WHERE qid = ?
                """,
                (now, now, platform_qid),
            )

        self.store.write(_write, label=f"roster {platform_qid} exhausted")

    def crawl(self, platform_qid):
        cursor = self._load_cursor(platform_qid)
        result = CrawlResult(platform_qid, cursor=cursor)
        while self.max_pages is None or result.pages < self.max_pages:
            query = build_roster_query(platform_qid, cursor, self.page_size)
            try:
                rows = parse_roster_rows(self.wdqs.select(query))
            except FetchError as exc:
                result.error = str(exc)
                logger.error("[!] %s: roster page after cursor %s failed: %s", platform_qid, cursor or "<start>", exc)
                return result

            if cursor is not None:
                stale = [row for row in rows if row.qid <= cursor]
                if stale:
                    logger.warning("[!] %s: discarding %s rows not after cursor %s", platform_qid, len(stale), cursor)
                    rows = [row for row in rows if row.qid > cursor]

            if not rows:
                self._mark_exhausted(platform_qid)
                result.exhausted = True
                logger.info("[+] %s: roster exhausted at cursor %s", platform_qid, cursor or "<start>")
                return result

            try:
                created, linked = self._commit_page(platform_qid, rows)
            except StoreConflictError as exc:
                result.error = str(exc)
                logger.error("[!] %s: page commit after cursor %s failed: %s", platform_qid, cursor or "<start>", exc)
                return result

            cursor = rows[-1].qid
            result.pages += 1
            result.rows_seen += len(rows)
            result.games_created += created
            result.links_created += linked
            result.cursor = cursor
            logger.info(
                "[*] %s: page %s rows=%s new_games=%s new_links=%s cursor=%s",
                platform_qid,
                result.pages,
                len(rows),
                created,
                linked,
                cursor,
            )
        return result

    def reset(self, platform_qids):
        """Clear cursor and exhausted flag for the given platforms. Returns platforms updated."""
        qids = list(platform_qids)
        if not qids:
            return 0
        now = utc_now_iso()

        def _write(conn):
            total = 0
            for qid in qids:
                cursor = conn.execute(
                    """
                    UPDATE platforms
                    SET games_cursor_qid = NULL,
                        games_cursor_updated_at = NULL,
                        games_roster_done = 0,
                        games_fetched_count = 0,
                        games_ingested_at = NULL,
                        updated_at = ?
                    WHERE qid = ?
                    """,
                    (now, qid),
                )
                total += cursor.rowcount
            return total

        return self.store.write(_write, label="roster reset")


def select_roster_platforms(store, all_=False, platform_qid=None, limit=None):
    """Major platforms by sitelinks then name; unfinished ones only unless all_."""
    if platform_qid:
        row = store.query_one("SELECT qid FROM platforms WHERE qid = ?", (platform_qid,))
        if row is None:
            raise GamegraphError(f"Unknown platform {platform_qid}; run discover-platforms first.")
        return [platform_qid]
    pending = "" if all_ else "AND games_roster_done = 0"
    sql = f"SELECT qid FROM platforms WHERE is_major = 1 {pending} ORDER BY sitelinks DESC, name ASC"
    params = ()
    if limit:
        sql += " LIMIT ?"
        params = (limit,)
    return [row["qid"] for row in store.query(sql, params)]


def crawl_rosters(ctx, all_=False, platform_qid=None, limit=None, reset=False):
    """Crawl P400 rosters for the selected platforms, resuming each from its stored cursor."""
    limit = limit or ctx.settings.fetch_platform_limit
    summary = StageSummary("crawl-rosters", ctx.stats)
    summary.start(all=all_, platform=platform_qid or "-", limit=limit, reset=reset, page_size=ctx.settings.page_size)
    if not platform_qid and not ctx.store.count("platforms", "is_major = 1"):
        raise GamegraphError("No major platforms selected; run select-major-platforms first.")

    crawler = RosterCrawler(ctx.store, ctx.wdqs, page_size=ctx.settings.page_size)
    if reset:
        targets = select_roster_platforms(ctx.store, all_=True, platform_qid=platform_qid, limit=limit)
        summary.add("reset", crawler.reset(targets))
    targets = select_roster_platforms(ctx.store, all_=all_ or reset, platform_qid=platform_qid, limit=limit)
    summary.extra["platforms"] = {}
    for qid in targets:
        result = crawler.crawl(qid)
        summary.add("scanned", result.rows_seen)
        summary.add("fetched", result.pages)
        summary.add("written", result.games_created)
        summary.add("links_created", result.links_created)
        summary.add("exhausted", 1 if result.exhausted else 0)
        if result.failed:
            summary.batch_failed(f"{qid}@{result.cursor or '<start>'}", result.error)
        summary.extra["platforms"][qid] = {
            "pages": result.pages,
            "rows": result.rows_seen,
            "cursor": result.cursor,
            "exhausted": result.exhausted,
        }
    return summary.finish()
