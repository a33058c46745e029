import unittest

from gamegraph.normalize import EntitySnapshot, ParsedBatch, parse_batch
from gamegraph.registry import GAME, load_registry
from gamegraph.writer import BatchWriter

from helpers import StoreTestCase, item_claim, time_claim

CLAIMS = {
    "P400": [item_claim("P400", "Q8084"), item_claim("P400", "Q999999")],
    "P136": [item_claim("P136", "Q1422746")],
    "P921": [item_claim("P921", "Q5")],
    "P155": [item_claim("P155", "Q2"), item_claim("P155", "Q404")],
    "P577": [time_claim("P577", "+1998-11-23T00:00:00Z", claim_id="r1")],
}


class BatchWriterTests(StoreTestCase, unittest.TestCase):
    def setUp(self) -> None:
        self.ctx = self.make_context()
        self.registry = load_registry()
        self.add_platform(self.ctx, "Q8084", "Nintendo 64")
        self.add_game(self.ctx, "Q1", "Game One", claims=CLAIMS, enriched=True)
        self.add_game(self.ctx, "Q2", "Game Two", claims={}, enriched=True)
        self.writer = BatchWriter(self.ctx.store)

    def _apply(self, include_niche=True):
        entries = self.registry.active(GAME, include_niche=include_niche)
        parsed = parse_batch([EntitySnapshot("Q1", CLAIMS, {})], entries, GAME)
        return self.writer.apply(parsed)

    def test_dangling_references_are_dropped_and_counted(self) -> None:
        counts = self._apply()
        self.assertEqual(counts.dropped, {"game_platforms": 1, "game_relations": 1})
        self.assertEqual(counts.dropped_total, 2)
        platforms = [row["platform_qid"] for row in self.ctx.store.query("SELECT platform_qid FROM game_platforms")]
        self.assertEqual(platforms, ["Q8084"])
        relations = [row["to_game_qid"] for row in self.ctx.store.query("SELECT to_game_qid FROM game_relations")]
        self.assertEqual(relations, ["Q2"])

    def test_rerun_is_idempotent(self) -> None:
        first = self._apply()
        tables = ("game_platforms", "game_tags", "game_relations", "release_dates", "tags")
        before = {table: self.ctx.store.count(table) for table in tables}
        second = self._apply()
        after = {table: self.ctx.store.count(table) for table in tables}
        self.assertEqual(before, after)
        self.assertEqual(first.inserted, second.inserted)
        self.assertEqual(second.deleted, first.inserted)
        self.assertEqual(second.lookups_created, 0)

    def test_property_removed_upstream_disappears_on_next_run(self) -> None:
        self._apply()
        self.assertEqual(self.ctx.store.count("game_tags", "source = 'wikidata:P136'"), 1)
        trimmed = {pid: claims for pid, claims in CLAIMS.items() if pid != "P136"}
        parsed = parse_batch([EntitySnapshot("Q1", trimmed, {})], self.registry.active(GAME), GAME)

        counts = self.writer.apply(parsed)

        self.assertEqual(self.ctx.store.count("game_tags", "source = 'wikidata:P136'"), 0)
        self.assertEqual(self.ctx.store.count("game_tags", "source = 'wikidata:P921'"), 1)
        self.assertGreater(counts.deleted, 0)

    def test_scalars_patched_and_entity_stamped(self) -> None:
        counts = self._apply()
        self.assertEqual(counts.patched, 1)
        game = self.ctx.store.query_one("SELECT * FROM games WHERE qid = 'Q1'")
        self.assertEqual(game["release_year"], 1998)
        self.assertEqual(game["first_release_at"], "1998-11-23T00:00:00Z")
        self.assertIsNotNone(game["last_normalized_at"])

    def test_niche_rows_survive_a_run_without_niche(self) -> None:
        self._apply(include_niche=True)
        self.assertEqual(self.ctx.store.count("game_tags", "tag_kind = 'THEME'"), 1)
        self._apply(include_niche=False)
        self.assertEqual(self.ctx.store.count("game_tags", "tag_kind = 'THEME'"), 1)
        self.assertEqual(self.ctx.store.count("game_tags", "tag_kind = 'GENRE'"), 1)

    def test_rows_from_other_sources_are_untouched(self) -> None:
        self.ctx.store.write(
            lambda conn: conn.execute(
                "INSERT INTO game_scores (game_qid, provider, score, score_count, source) VALUES ('Q1', 'INTERNAL', 4.5, 2, 'internal:reviews')"
            )
        )
        self._apply()
        self.assertEqual(self.ctx.store.count("game_scores", "provider = 'INTERNAL'"), 1)

    def test_unknown_patch_column_rolls_back(self) -> None:
        parsed = ParsedBatch(subject=GAME, entity_qids=("Q1",), sources=("wikidata:P136",))
        parsed.add_row("game_tags", {"game_qid": "Q1", "tag_kind": "GENRE", "tag_qid": "Q7", "source": "wikidata:P136", "claim_id": None})
        parsed.add_lookup("tags", {"kind": "GENRE", "qid": "Q7", "label": "Q7"})
        parsed.patch("Q1", title="nope")
        with self.assertRaises(ValueError):
            self.writer.apply(parsed)
        self.assertEqual(self.ctx.store.count("game_tags"), 0)
        self.assertEqual(self.ctx.store.count("tags"), 0)


if __name__ == "__main__":
    unittest.main()
