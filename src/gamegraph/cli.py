import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from . import config
from .config import Settings
from .context import RunContext
from .crawler import crawl_rosters
from .errors import ConfigError, GamegraphError
from .games import enrich_games, flag_junk_games, normalize_games
from .platforms import (
    discover_platforms,
    enrich_platforms,
    hydrate_platform_relations,
    import_groupings,
    select_major_platforms,
)
from .reports import export_coverage
from .scores import recompute_scores
from .utils import write_json_atomic
from .wikilists import extract_wiki_lists

logger = logging.getLogger("gamegraph")


def _qid(value):
    value = value.strip().upper()
    if not config.QID_EXACT_PATTERN.match(value):
        raise argparse.ArgumentTypeError(f"Invalid QID: {value!r}")
    return value


def _qid_list(value):
    try:
        return config.parse_qid_list(value)
    except ConfigError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _add_scope(parser, all_help="Process every row instead of only unfinished ones."):
    parser.add_argument("--all", dest="all_", action="store_true", help=all_help)
    parser.add_argument("--limit", type=int, default=None, help="Cap the number of rows processed.")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="gamegraph", description="Resumable Wikidata ingestion for video game platforms and games.")
    parser.add_argument("--db", type=str, default=None, help="SQLite database path (overrides GAMEGRAPH_DB_PATH).")
    parser.add_argument("--log-level", type=str, default=None, help="Logging level (overrides LOG_LEVEL).")
    parser.add_argument("--summary-json", type=str, default=None, help="Write the stage summary as JSON to this path.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("discover-platforms", help="Find gaming platforms through WDQS.")
    p.add_argument("--limit", type=int, default=None, help="Cap the number of discovered platforms.")

    p = sub.add_parser("import-groupings", help="Record WikiProject game counts per platform from a seed file.")
    p.add_argument("--seed", required=True, help="JSON array of {grouping, count, sample} rows.")
    p.add_argument("--overrides", default=None, help="JSON object {qid: bool} forcing is_major.")

    p = sub.add_parser("enrich-platforms", help="Fetch platform entities and derive platform fields.")
    _add_scope(p)
    p.add_argument("--labels-only", action="store_true", help="Only backfill placeholder names and missing descriptions.")
    p.add_argument("--concurrency", type=int, default=None, help="Worker pool size (1-4).")

    p = sub.add_parser("select-major-platforms", help="Mark the platforms whose rosters get crawled.")
    p.add_argument("--top-n", type=int, default=None, help="How many platforms to take by sitelinks.")
    p.add_argument("--min-sitelinks", type=int, default=None, help="Minimum sitelinks to qualify.")
    p.add_argument("--include", type=_qid_list, default=None, help="Comma separated QIDs always marked major.")

    p = sub.add_parser("crawl-rosters", help="Page through platform game rosters with resumable cursors.")
    _add_scope(p, all_help="Also crawl platforms whose roster is already exhausted.")
    p.add_argument("--platform", type=_qid, default=None, help="Crawl only this platform QID.")
    p.add_argument("--reset", action="store_true", help="Clear cursors before crawling.")
    p.add_argument("--page-size", type=int, default=None, help="Rows per WDQS page (>= 200).")

    p = sub.add_parser("enrich-games", help="Fetch game entities through the revision cache.")
    _add_scope(p)
    p.add_argument("--batch-size", type=int, default=None, help="Ids per wbgetentities call (<= 50).")
    p.add_argument("--concurrency", type=int, default=None, help="Worker pool size (1-4).")

    p = sub.add_parser("normalize-games", help="Derive relation rows and ranked scalars from game claims.")
    _add_scope(p)
    p.add_argument("--batch-size", type=int, default=None, help="Games per committed batch.")
    p.add_argument("--no-niche", action="store_true", help="Skip niche registry properties.")
    p.add_argument("--resolve-labels", action="store_true", help="Resolve placeholder tag and company labels afterwards.")

    p = sub.add_parser("hydrate-platform-relations", help="Derive controllers and platform families from platform claims.")
    _add_scope(p)
    p.add_argument("--skip-labels", action="store_true", help="Do not resolve placeholder labels afterwards.")

    sub.add_parser("recompute-scores", help="Rebuild review ratings per game.")

    p = sub.add_parser("export-coverage", help="Write per-platform metadata coverage as CSV.")
    p.add_argument("--out", required=True, help="CSV output path.")
    p.add_argument("--all", dest="all_", action="store_true", help="Include non-major platforms.")

    sub.add_parser("flag-junk", help="Flag unusable games with a reason code.")

    p = sub.add_parser("extract-wiki-lists", help="Cache WikiProject list pages and extract referenced QIDs.")
    p.add_argument("--limit", type=int, default=None, help="Cap the number of pages.")

    return parser.parse_args(argv)


def build_settings(args, environ=None):
    include_niche = False if getattr(args, "no_niche", False) else None
    return Settings.from_env(environ).override(
        db_path=Path(args.db) if args.db else None,
        log_level=args.log_level.upper() if args.log_level else None,
        page_size=getattr(args, "page_size", None),
        enrich_batch_size=getattr(args, "batch_size", None) if args.command == "enrich-games" else None,
        normalize_batch_size=getattr(args, "batch_size", None) if args.command == "normalize-games" else None,
        enrich_concurrency=getattr(args, "concurrency", None),
        include_niche=include_niche,
    )


def run_command(ctx, args):
    command = args.command
    if command == "discover-platforms":
        return discover_platforms(ctx, limit=args.limit)
    if command == "import-groupings":
        return import_groupings(ctx, args.seed, overrides_path=args.overrides)
    if command == "enrich-platforms":
        return enrich_platforms(ctx, all_=args.all_, limit=args.limit, labels_only=args.labels_only)
    if command == "select-major-platforms":
        return select_major_platforms(ctx, top_n=args.top_n, min_sitelinks=args.min_sitelinks, include_qids=args.include)
    if command == "crawl-rosters":
        return crawl_rosters(ctx, all_=args.all_, platform_qid=args.platform, limit=args.limit, reset=args.reset)
    if command == "enrich-games":
        return enrich_games(ctx, all_=args.all_, limit=args.limit)
    if command == "normalize-games":
        return normalize_games(ctx, all_=args.all_, limit=args.limit, resolve_labels=args.resolve_labels)
    if command == "hydrate-platform-relations":
        return hydrate_platform_relations(ctx, all_=args.all_, limit=args.limit, resolve_labels=not args.skip_labels)
    if command == "recompute-scores":
        return recompute_scores(ctx)
    if command == "export-coverage":
        return export_coverage(ctx, args.out, all_=args.all_)
    if command == "flag-junk":
        return flag_junk_games(ctx)
    if command == "extract-wiki-lists":
        return extract_wiki_lists(ctx, limit=args.limit)
    raise GamegraphError(f"Unknown command {command}")


def main(argv=None):
    load_dotenv()
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        settings = build_settings(args)
    except ConfigError as exc:
        logger.error("[!] Configuration error: %s", exc)
        return 2
    logging.getLogger().setLevel(settings.log_level)

    try:
        with RunContext(settings) as ctx:
            summary = run_command(ctx, args)
    except ConfigError as exc:
        logger.error("[!] Configuration error: %s", exc)
        return 2
    except GamegraphError as exc:
        logger.error("[!] %s failed: %s", args.command, exc)
        return 1

    if args.summary_json:
        write_json_atomic(args.summary_json, summary)
        logger.info("[+] Summary written to %s", args.summary_json)
    return 0


if __name__ == "__main__":
    sys.exit(main())
