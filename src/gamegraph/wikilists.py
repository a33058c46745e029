import logging

from . import config
from .caching import FETCHED
from .errors import EntityMissingError, FetchError
from .runner import StageSummary, progress
from .store import insert_or_ignore
from .utils import dedupe, utc_now_iso

logger = logging.getLogger(__name__)

WIKI_SITE = "wikidata"


def extract_qids(text):
    """Return the distinct Q-ids referenced in wikitext, in first-seen order."""
    return dedupe(config.QID_TEXT_PATTERN.findall(text or ""))


def list_project_pages(ctx, limit=None):
    """Titles under the video games WikiProject list prefix, falling back to the project root."""
    titles = []
    for prefix in (config.WIKI_PROJECT_LIST_PREFIX, config.WIKI_PROJECT_FALLBACK_PREFIX):
        for title in ctx.wiki_api.list_prefix(WIKI_SITE, prefix, config.WIKI_PROJECT_NAMESPACE):
            titles.append(title)
            if limit and len(titles) >= limit:
                return titles
        if titles:
            return titles
        logger.warning("[!] extract-wiki-lists: no pages under %r", prefix)
    return titles


def extract_wiki_lists(ctx, limit=None):
    """Cache WikiProject list pages by revision and record every Q-id they mention."""
    summary = StageSummary("extract-wiki-lists", ctx.stats)
    summary.start(limit=limit)
    titles = list_project_pages(ctx, limit=limit)
    summary.extra["pages"] = len(titles)
    for title in progress(titles, desc="Wiki lists", unit="page"):
        summary.add("scanned")
        try:
            page = ctx.cache.get_or_fetch_wiki_page(WIKI_SITE, title)
        except (FetchError, EntityMissingError) as exc:
            summary.batch_failed(title, exc)
            continue
        if page.source == FETCHED:
            summary.add("fetched")
        else:
            summary.add("cache_hit")
        qids = extract_qids(page.content)
        now = utc_now_iso()
        rows = [(page.cache_id, qid, config.WIKI_LIST_EXTRACTOR, now) for qid in qids]
        inserted = ctx.store.write(
            lambda conn, rows=rows: insert_or_ignore(
                conn, "extracted_qids", ("page_cache_id", "qid", "extractor", "created_at"), rows
            ),
            label=f"extracted-qids {title}",
        )
        summary.add("qids_seen", len(qids))
        summary.add("written", inserted)
        logger.debug("[*] %s: %s qids (%s new)", title, len(qids), inserted)
    return summary.finish()
