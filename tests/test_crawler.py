import unittest

from gamegraph.crawler import RosterCrawler, build_roster_query, crawl_rosters, parse_roster_rows
from gamegraph.errors import ConfigError, GamegraphError

from helpers import StoreTestCase, make_response


def binding(qid, label=None):
    row = {"gameQid": {"type": "literal", "value": qid}}
    if label is not None:
        row["gameLabel"] = {"type": "literal", "value": label}
    return row


def sparql_page(rows):
    return make_response(200, {"head": {"vars": ["game", "gameQid", "gameLabel"]}, "results": {"bindings": rows}})


class RosterQueryTests(unittest.TestCase):
    def test_first_page_has_no_cursor_filter(self) -> None:
        query = build_roster_query("Q48263", None, 2000)
        self.assertIn("wdt:P400 wd:Q48263", query)
        self.assertIn("LIMIT 2000", query)
        self.assertNotIn("FILTER", query)

    def test_cursor_filter(self) -> None:
        query = build_roster_query("Q48263", "Q1234", 500)
        self.assertIn('FILTER(?gameQid > "Q1234")', query)
        self.assertIn("ORDER BY ?gameQid", query)

    def test_rows_are_deduped_sorted_and_labelled(self) -> None:
        rows = parse_roster_rows([binding("Q20", "B"), binding("Q100", ""), binding("Q20", "dup"), {"gameQid": {"value": "junk"}}])
        self.assertEqual([row.qid for row in rows], ["Q100", "Q20"])
        self.assertEqual(rows[0].label, "Q100")
        self.assertEqual(rows[1].label, "B")

    def test_page_size_floor(self) -> None:
        with self.assertRaises(ConfigError):
            RosterCrawler(store=None, wdqs=None, page_size=199)


class RosterCrawlerTests(StoreTestCase, unittest.TestCase):
    def _page_of(self, count, prefix=1):
        qids = sorted(f"Q{prefix}{i:05d}" for i in range(count))
        return [binding(qid, f"Game {qid}") for qid in qids], qids

    def test_full_page_then_empty_page_exhausts_roster(self) -> None:
        rows, qids = self._page_of(2000)
        ctx = self.make_context(sparql_page(rows), sparql_page([]))
        self.add_platform(ctx, "Q48263", "Nintendo Switch", is_major=1)

        summary = crawl_rosters(ctx)

        self.assertEqual(summary["counts"]["written"], 2000)
        self.assertEqual(ctx.store.count("games"), 2000)
        self.assertEqual(ctx.store.count("platform_game_memberships", "platform_qid = 'Q48263'"), 2000)
        platform = ctx.store.query_one("SELECT * FROM platforms WHERE qid = 'Q48263'")
        self.assertEqual(platform["games_cursor_qid"], qids[-1])
        self.assertEqual(platform["games_fetched_count"], 2000)
        self.assertEqual(platform["games_roster_done"], 1)
        self.assertIsNotNone(platform["games_ingested_at"])
        self.assertEqual(self.session.request.call_count, 2)

    def test_rerun_resumes_from_cursor_and_adds_nothing(self) -> None:
        rows, qids = self._page_of(300)
        ctx = self.make_context(sparql_page(rows), sparql_page([]), sparql_page([]))
        self.add_platform(ctx, "Q48263", "Nintendo Switch", is_major=1)
        crawler = RosterCrawler(ctx.store, ctx.wdqs, page_size=300)
        crawler.crawl("Q48263")

        result = crawler.crawl("Q48263")

        self.assertTrue(result.exhausted)
        self.assertEqual(result.games_created, 0)
        self.assertEqual(ctx.store.count("games"), 300)
        query = self.session.request.call_args.kwargs["data"].decode("utf-8")
        self.assertIn(f'FILTER(?gameQid > "{qids[-1]}")', query)

    def test_unfinished_only_without_all(self) -> None:
        ctx = self.make_context()
        self.add_platform(ctx, "Q1", is_major=1)
        ctx.store.write(lambda conn: conn.execute("UPDATE platforms SET games_roster_done = 1 WHERE qid = 'Q1'"))
        summary = crawl_rosters(ctx)
        self.assertEqual(summary["extra"]["platforms"], {})
        self.assertEqual(self.session.request.call_count, 0)

    def test_rows_at_or_before_cursor_are_discarded(self) -> None:
        ctx = self.make_context(sparql_page([binding("Q100", "Old"), binding("Q300", "New")]), sparql_page([]))
        self.add_platform(ctx, "Q1", is_major=1)
        ctx.store.write(lambda conn: conn.execute("UPDATE platforms SET games_cursor_qid = 'Q200' WHERE qid = 'Q1'"))
        result = RosterCrawler(ctx.store, ctx.wdqs, page_size=200).crawl("Q1")
        self.assertEqual(result.games_created, 1)
        self.assertEqual([row["qid"] for row in ctx.store.query("SELECT qid FROM games")], ["Q300"])

    def test_fetch_failure_keeps_last_committed_cursor(self) -> None:
        rows, qids = self._page_of(200)
        ctx = self.make_context(sparql_page(rows), make_response(400, text="query timeout"))
        self.add_platform(ctx, "Q1", is_major=1)

        result = RosterCrawler(ctx.store, ctx.wdqs, page_size=200).crawl("Q1")

        self.assertTrue(result.failed)
        self.assertFalse(result.exhausted)
        platform = ctx.store.query_one("SELECT games_cursor_qid, games_roster_done FROM platforms WHERE qid = 'Q1'")
        self.assertEqual(platform["games_cursor_qid"], qids[-1])
        self.assertEqual(platform["games_roster_done"], 0)

    def test_reset_clears_cursor(self) -> None:
        rows, _ = self._page_of(200)
        ctx = self.make_context(sparql_page(rows), sparql_page([]), sparql_page(rows), sparql_page([]))
        self.add_platform(ctx, "Q1", is_major=1)
        crawl_rosters(ctx)

        summary = crawl_rosters(ctx, reset=True, limit=None)

        self.assertEqual(summary["counts"]["reset"], 1)
        self.assertEqual(summary["counts"]["written"], 0)
        self.assertEqual(summary["counts"]["links_created"], 0)
        platform = ctx.store.query_one("SELECT games_fetched_count, games_roster_done FROM platforms WHERE qid = 'Q1'")
        self.assertEqual(platform["games_fetched_count"], 200)
        self.assertEqual(platform["games_roster_done"], 1)
        self.assertEqual(ctx.store.count("games"), 200)

    def test_no_major_platforms_is_an_error(self) -> None:
        ctx = self.make_context()
        self.add_platform(ctx, "Q1")
        with self.assertRaises(GamegraphError):
            crawl_rosters(ctx)


if __name__ == "__main__":
    unittest.main()
