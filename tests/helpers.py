import json
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

from gamegraph.config import Settings
from gamegraph.context import RunContext
from gamegraph.utils import utc_now_iso

USER_AGENT = "gamegraph-tests/0.1 (tests@example.org)"


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)


def make_response(status=200, payload=None, headers=None, text=None):
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    if payload is not None:
        response.json.return_value = payload
        response.text = json.dumps(payload) if text is None else text
    else:
        response.json.side_effect = ValueError("no json")
        response.text = text or ""
    return response


def scripted_session(*responses):
    session = MagicMock()
    session.request.side_effect = list(responses)
    return session


def entity_doc(qid, label=None, *, claims=None, lastrevid=1, aliases=(), description=None, sitelinks=None):
    doc = {"id": qid, "lastrevid": lastrevid, "claims": claims or {}, "sitelinks": sitelinks or {}}
    doc["labels"] = {"en": {"language": "en", "value": label}} if label else {}
    doc["descriptions"] = {"en": {"language": "en", "value": description}} if description else {}
    doc["aliases"] = {"en": [{"language": "en", "value": alias} for alias in aliases]} if aliases else {}
    return doc


def item_claim(pid, target, rank="normal", claim_id=None, qualifiers=None):
    return {
        "id": claim_id or f"{pid}-{target}",
        "rank": rank,
        "mainsnak": {
            "snaktype": "value",
            "property": pid,
            "datavalue": {"type": "wikibase-entityid", "value": {"entity-type": "item", "id": target}},
        },
        "qualifiers": qualifiers or {},
    }


def time_claim(pid, time, precision=11, rank="normal", claim_id=None, qualifiers=None):
    return {
        "id": claim_id or f"{pid}-{time}",
        "rank": rank,
        "mainsnak": {
            "snaktype": "value",
            "property": pid,
            "datavalue": {
                "type": "time",
                "value": {
                    "time": time,
                    "precision": precision,
                    "calendarmodel": "http://www.wikidata.org/entity/Q1985727",
                },
            },
        },
        "qualifiers": qualifiers or {},
    }


def string_claim(pid, text, rank="normal", claim_id=None, qualifiers=None):
    return {
        "id": claim_id or f"{pid}-{text}",
        "rank": rank,
        "mainsnak": {"snaktype": "value", "property": pid, "datavalue": {"type": "string", "value": text}},
        "qualifiers": qualifiers or {},
    }


def item_qualifier(pid, target):
    return {
        pid: [
            {
                "snaktype": "value",
                "property": pid,
                "datavalue": {"type": "wikibase-entityid", "value": {"entity-type": "item", "id": target}},
            }
        ]
    }


class StoreTestCase:
    """Mixin that gives each test a RunContext over a temporary SQLite file and a mocked session."""

    def make_context(self, *responses, **settings):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.clock = FakeClock()
        self.session = scripted_session(*responses)
        settings.setdefault("db_path", Path(self._tmp.name) / "test.sqlite")
        self.settings = Settings(user_agent=USER_AGENT, **settings)
        ctx = RunContext(self.settings, session=self.session, sleep=self.clock.sleep, clock=self.clock)
        self.addCleanup(ctx.close)
        return ctx

    def add_platform(self, ctx, qid, name=None, *, sitelinks=10, is_major=0, claims=None, expected=None):
        now = utc_now_iso()
        ctx.store.write(
            lambda conn: conn.execute(
                """
                INSERT INTO platforms (qid, name, sitelinks, is_major, claims_json, wiki_project_game_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (qid, name or qid, sitelinks, is_major, json.dumps(claims) if claims is not None else None, expected, now, now),
            )
        )

    def add_game(self, ctx, qid, title=None, *, claims=None, enriched=False):
        now = utc_now_iso()
        ctx.store.write(
            lambda conn: conn.execute(
                """
                INSERT INTO games (qid, title, claims_json, last_enriched_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (qid, title or qid, json.dumps(claims) if claims is not None else None, now if enriched else None, now, now),
            )
        )
