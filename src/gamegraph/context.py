import time

import requests

from .caching import LabelResolver, RevisionAwareCache
from .http import Fetcher, FetchStats, RateGate
from .registry import load_registry
from .store import Store
from .wikidata import EntityApi, WdqsClient, WikiApi


class RunContext:
    """Everything one pipeline run shares: settings, store, fetchers, caches and counters.

    Built once per run and handed to every stage, so two contexts never share a rate gate,
    a session or a database handle.
    """

    def __init__(self, settings, *, session=None, store=None, registry=None, sleep=time.sleep, clock=time.monotonic):
        self.settings = settings
        self.stats = FetchStats()
        self.session = session or requests.Session()
        self._owns_session = session is None
        self.store = store or Store(
            settings.db_path,
            max_retries=settings.store_max_retries,
            sleep=sleep,
        )
        self.store.open()
        self.registry = registry or load_registry()

        self.wdqs_gate = RateGate(settings.wdqs_min_interval_ms, clock=clock, sleep=sleep)
        common = {
            "stats": self.stats,
            "max_retries": settings.max_retries,
            "backoff_base_ms": settings.backoff_base_ms,
            "backoff_cap_ms": settings.backoff_cap_ms,
            "sleep": sleep,
        }
        self.query_fetcher = Fetcher(
            self.session,
            settings.headers,
            name="wdqs",
            gate=self.wdqs_gate,
            timeout=settings.wdqs_timeout,
            **common,
        )
        self.api_fetcher = Fetcher(
            self.session,
            settings.headers,
            name="api",
            max_concurrency=settings.enrich_concurrency,
            timeout=settings.api_timeout,
            **common,
        )
        self.wdqs = WdqsClient(self.query_fetcher, settings.wdqs_endpoint)
        self.entity_api = EntityApi(self.api_fetcher, settings.api_endpoint)
        self.wiki_api = WikiApi(self.api_fetcher)
        self.cache = RevisionAwareCache(self.store, self.entity_api, self.wiki_api, self.stats)
        self.labels = LabelResolver(self.entity_api)

    def close(self):
        self.store.close()
        if self._owns_session:
            self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
