import logging

from . import config
from .utils import chunked, dedupe, is_qid

logger = logging.getLogger(__name__)

FULL_PROPS = "labels|descriptions|aliases|claims|sitelinks"
LABEL_PROPS = "labels|descriptions"
INFO_PROPS = "info"


def binding_value(row, name):
    """Return the plain value of one SPARQL result binding, or None."""
    cell = row.get(name) if row else None
    if not cell:
        return None
    return cell.get("value")


def resolve_wiki_api_base(site):
    """Map a site key ("wikidata", "wikipedia:xx" or a hostname) to its api.php URL."""
    raw = (site or "").strip()
    if not raw:
        raise ValueError("Missing wiki site")
    if raw == "wikidata":
        host = "www.wikidata.org"
    elif raw.startswith("wikipedia:"):
        lang = raw.split(":", 1)[1].strip() or "en"
        host = f"{lang}.wikipedia.org"
    else:
        host = raw
    return f"https://{host}/w/api.php"


class WdqsClient:
    """POSTs SPARQL to the query service through the serialized fetcher."""

    def __init__(self, fetcher, endpoint=config.WDQS_ENDPOINT):
        self.fetcher = fetcher
        self.endpoint = endpoint

    def select(self, query):
        payload = self.fetcher.get_json(
            self.endpoint,
            method="POST",
            data=query.encode("utf-8"),
            headers={
                "Content-Type": "application/sparql-query; charset=utf-8",
                "Accept": "application/sparql-results+json",
            },
        )
        return ((payload or {}).get("results") or {}).get("bindings") or []


class EntityApi:
    """wbgetentities wrapper returning raw entity documents keyed by id."""

    def __init__(self, fetcher, endpoint=config.API_ENDPOINT):
        self.fetcher = fetcher
        self.endpoint = endpoint

    def _get_entities(self, ids, props):
        ids = [qid for qid in dedupe(ids) if is_qid(qid)]
        if not ids:
            return {}
        if len(ids) > config.API_MAX_IDS:
            raise ValueError(f"wbgetentities accepts at most {config.API_MAX_IDS} ids per call")
        params = {
            "action": "wbgetentities",
            "ids": "|".join(ids),
            "props": props,
            "languages": "en",
            "languagefallback": "1",
            "format": "json",
        }
        payload = self.fetcher.get_json(self.endpoint, params)
        if payload.get("error"):
            logger.warning("[!] wbgetentities error for %s ids: %s", len(ids), payload["error"].get("info"))
            return {}
        return payload.get("entities") or {}

    def get_infos(self, ids):
        """Return {qid: {"lastrevid": int|None, "missing": bool}} using the lightweight info request."""
        infos = {}
        for qid, entity in self._get_entities(ids, INFO_PROPS).items():
            missing = "missing" in entity
            revision = entity.get("lastrevid")
            infos[qid] = {"lastrevid": int(revision) if revision is not None else None, "missing": missing}
        return infos

    def get_entities(self, ids):
        return self._get_entities(ids, FULL_PROPS)

    def get_labels(self, ids):
        """Return {qid: entity} with labels/descriptions only, batching by the API id limit."""
        out = {}
        for batch in chunked(dedupe(ids), config.API_MAX_IDS):
            out.update(self._get_entities(batch, LABEL_PROPS))
        return out


class WikiApi:
    """MediaWiki query wrapper for page revisions and prefix listings."""

    def __init__(self, fetcher):
        self.fetcher = fetcher

    def _query(self, site, params):
        base = {"action": "query", "format": "json", "formatversion": "2"}
        base.update(params)
        return self.fetcher.get_json(resolve_wiki_api_base(site), base)

    @staticmethod
    def _first_page(payload):
        pages = ((payload or {}).get("query") or {}).get("pages") or []
        return pages[0] if pages else None

    def get_revision(self, site, title):
        """Return {"page_id", "revision_id", "missing"} for the current page revision."""
        payload = self._query(
            site,
            {"prop": "revisions", "rvprop": "ids", "rvslots": "main", "redirects": "1", "titles": title},
        )
        page = self._first_page(payload)
        if not page or page.get("missing") or not page.get("revisions"):
            return {"page_id": None, "revision_id": None, "missing": True}
        revision = page["revisions"][0]
        return {"page_id": page.get("pageid"), "revision_id": revision.get("revid"), "missing": False}

    def get_content(self, site, title):
        """Return {"page_id", "revision_id", "timestamp", "content", "missing"} for the current revision."""
        payload = self._query(
            site,
            {
                "prop": "revisions",
                "rvprop": "ids|timestamp|content",
                "rvslots": "main",
                "redirects": "1",
                "titles": title,
            },
        )
        page = self._first_page(payload)
        if not page or page.get("missing") or not page.get("revisions"):
            return {"page_id": None, "revision_id": None, "timestamp": None, "content": None, "missing": True}
        revision = page["revisions"][0]
        content = ((revision.get("slots") or {}).get("main") or {}).get("content")
        return {
            "page_id": page.get("pageid"),
            "revision_id": revision.get("revid"),
            "timestamp": revision.get("timestamp"),
            "content": content,
            "missing": False,
        }

    def list_prefix(self, site, prefix, namespace):
        """Yield page titles in a namespace that start with prefix, following apcontinue."""
        params = {
            "list": "allpages",
            "apnamespace": str(namespace),
            "apprefix": prefix,
            "aplimit": "max",
        }
        while True:
            payload = self._query(site, params)
            for page in ((payload or {}).get("query") or {}).get("allpages") or []:
                title = page.get("title")
                if title:
                    yield title
            token = ((payload or {}).get("continue") or {}).get("apcontinue")
            if not token:
                return
            params = dict(params, apcontinue=token)
