import logging

from .runner import StageSummary
from .utils import utc_now_iso

logger = logging.getLogger(__name__)

INTERNAL_PROVIDER = "INTERNAL"
INTERNAL_SOURCE = "internal:reviews"


def review_aggregates(store):
    """Return {game_qid: (average, count)} over rated reviews, averages rounded to 2 decimals."""
    rows = store.query(
        """
        SELECT game_qid, AVG(rating) AS average, COUNT(rating) AS total
        FROM reviews
        WHERE rating IS NOT NULL
        GROUP BY game_qid
        ORDER BY game_qid
        """
    )
    return {row["game_qid"]: (round(row["average"], 2), row["total"]) for row in rows}


def _write_scores(conn, aggregates, now):
    updated = 0
    for qid, (average, total) in aggregates.items():
        cursor = conn.execute(
            """
            UPDATE games
            SET rating = ?, rating_count = ?, total_rating = ?, total_rating_count = ?, updated_at = ?
            WHERE qid = ?
            """,
            (average, total, average, total, now, qid),
        )
        updated += max(cursor.rowcount, 0)
        conn.execute(
            """
            INSERT INTO game_scores (game_qid, provider, score, score_count, source, claim_id, updated_at)
            VALUES (?, ?, ?, ?, ?, NULL, ?)
            ON CONFLICT(game_qid, provider) DO UPDATE SET
                score=excluded.score,
                score_count=excluded.score_count,
                source=excluded.source,
                updated_at=excluded.updated_at
            """,
            (qid, INTERNAL_PROVIDER, average, total, INTERNAL_SOURCE, now),
        )

    # Games whose reviews are gone lose their internal score
    stale = [
        row[0]
        for row in conn.execute(
            "SELECT game_qid FROM game_scores WHERE provider = ? ORDER BY game_qid",
            (INTERNAL_PROVIDER,),
        ).fetchall()
        if row[0] not in aggregates
    ]
    for qid in stale:
        conn.execute("DELETE FROM game_scores WHERE game_qid = ? AND provider = ?", (qid, INTERNAL_PROVIDER))
        conn.execute(
            """
            UPDATE games
            SET rating = NULL, rating_count = NULL, total_rating = NULL, total_rating_count = NULL, updated_at = ?
            WHERE qid = ?
            """,
            (now, qid),
        )
    return updated, len(stale)


def recompute_scores(ctx):
    """Rebuild per-game review ratings and the INTERNAL score row from the reviews table."""
    summary = StageSummary("recompute-scores")
    summary.start()
    aggregates = review_aggregates(ctx.store)
    summary.add("scanned", len(aggregates))
    updated, cleared = ctx.store.write(lambda conn: _write_scores(conn, aggregates, utc_now_iso()), label="recompute-scores")
    summary.add("written", updated)
    summary.add("cleared", cleared)
    return summary.finish()
