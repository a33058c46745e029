import csv
import logging
from pathlib import Path

from .runner import StageSummary
from .utils import percent

logger = logging.getLogger(__name__)

COVERAGE_COLUMNS = [
    "qid",
    "label",
    "total_games",
    "with_release_date",
    "with_genre",
    "with_dev_or_pub",
    "pct_release_date",
    "pct_genre",
    "pct_dev_or_pub",
    "expected_games",
    "coverage_pct",
]

_COVERAGE_SQL = """
SELECT
    COUNT(*) AS total_games,
    SUM(EXISTS (SELECT 1 FROM release_dates r WHERE r.game_qid = m.game_qid)) AS with_release_date,
    SUM(EXISTS (SELECT 1 FROM game_tags t WHERE t.game_qid = m.game_qid AND t.tag_kind = 'GENRE')) AS with_genre,
    SUM(EXISTS (
        SELECT 1 FROM game_companies c
        WHERE c.game_qid = m.game_qid AND c.role IN ('DEVELOPER', 'PUBLISHER')
    )) AS with_dev_or_pub
FROM platform_game_memberships m
WHERE m.platform_qid = ?
"""


def coverage_row(store, platform):
    counts = store.query_one(_COVERAGE_SQL, (platform["qid"],))
    total = counts["total_games"] or 0
    with_release = counts["with_release_date"] or 0
    with_genre = counts["with_genre"] or 0
    with_company = counts["with_dev_or_pub"] or 0
    expected = platform["wiki_project_game_count"]
    return {
        "qid": platform["qid"],
        "label": platform["name"],
        "total_games": total,
        "with_release_date": with_release,
        "with_genre": with_genre,
        "with_dev_or_pub": with_company,
        "pct_release_date": percent(with_release, total),
        "pct_genre": percent(with_genre, total),
        "pct_dev_or_pub": percent(with_company, total),
        "expected_games": "" if expected is None else expected,
        "coverage_pct": "" if not expected else percent(total, expected),
    }


def export_coverage(ctx, out_path, all_=False):
    """Write one CSV row of metadata coverage per platform (major platforms unless all_)."""
    summary = StageSummary("export-coverage")
    summary.start(out=out_path, all=all_)
    where = "" if all_ else "WHERE is_major = 1"
    platforms = ctx.store.query(
        f"SELECT qid, name, wiki_project_game_count FROM platforms {where} ORDER BY sitelinks DESC, name, qid"
    )
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=COVERAGE_COLUMNS)
        writer.writeheader()
        for platform in platforms:
            writer.writerow(coverage_row(ctx.store, platform))
            summary.add("scanned")
            summary.add("written")
    logger.info("[+] export-coverage: wrote %s platforms to %s", len(platforms), out_path)
    summary.extra["out"] = str(out_path)
    return summary.finish()
