import unittest
from dataclasses import replace

from gamegraph.claims import Rank
from gamegraph.normalize import Candidate, EntitySnapshot, parse_batch, parse_review_score, pick_best, should_apply_scalar
from gamegraph.registry import GAME, PLATFORM, load_registry

from helpers import item_claim, item_qualifier, string_claim, time_claim


class PickBestTests(unittest.TestCase):
    def test_preferred_beats_normal(self) -> None:
        best = pick_best([Candidate("a", Rank.NORMAL, 0), Candidate("b", Rank.PREFERRED, 1)])
        self.assertEqual(best.value, "b")

    def test_first_normal_wins_ties(self) -> None:
        best = pick_best([Candidate("a", Rank.NORMAL, 0), Candidate("b", Rank.NORMAL, 1)])
        self.assertEqual(best.value, "a")

    def test_earliest_year_breaks_rank_ties(self) -> None:
        best = pick_best([Candidate("late", Rank.NORMAL, 0, 2001), Candidate("early", Rank.NORMAL, 1, 1998)])
        self.assertEqual(best.value, "early")

    def test_deprecated_is_not_applied(self) -> None:
        self.assertFalse(should_apply_scalar(Candidate("x", Rank.DEPRECATED, 0), None))
        self.assertFalse(should_apply_scalar(Candidate("x", Rank.NORMAL, 0), "x"))
        self.assertTrue(should_apply_scalar(Candidate("x", Rank.NORMAL, 0), None))
        self.assertFalse(should_apply_scalar(None, None))


class ReviewScoreTests(unittest.TestCase):
    def test_scales_are_normalized_to_100(self) -> None:
        self.assertEqual(parse_review_score("92/100"), 92.0)
        self.assertEqual(parse_review_score("8,5/10"), 85.0)
        self.assertEqual(parse_review_score("4.5 / 5"), 90.0)
        self.assertEqual(parse_review_score("85%"), 85.0)
        self.assertEqual(parse_review_score("77"), 77.0)

    def test_unreadable_scores(self) -> None:
        for text in ("A+", "12/0", "150", "9/10 stars"):
            self.assertIsNone(parse_review_score(text), text)


class ParseBatchTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.registry = load_registry()
        cls.entries = cls.registry.active(GAME)

    def _parse(self, claims, current=None, entries=None):
        snapshot = EntitySnapshot("Q1", claims, current or {})
        return parse_batch([snapshot], entries if entries is not None else self.entries, GAME)

    def test_release_date_prefers_ranked_claim(self) -> None:
        claims = {
            "P577": [
                time_claim("P577", "+2001-05-01T00:00:00Z", claim_id="c1"),
                time_claim("P577", "+1998-11-23T00:00:00Z", claim_id="c2", rank="preferred", qualifiers=item_qualifier("P291", "Q30")),
                time_claim("P577", "+1997-00-00T00:00:00Z", precision=9, claim_id="c3", rank="deprecated"),
            ]
        }
        batch = self._parse(claims)
        rows = {row["claim_key"]: row for row in batch.rows["release_dates"]}
        self.assertEqual(set(rows), {"c1", "c2", "c3"})
        self.assertEqual(rows["c2"]["region_qid"], "Q30")
        self.assertEqual(rows["c2"]["category"], "full_date")
        self.assertEqual(rows["c3"]["category"], "year")
        self.assertEqual(rows["c3"]["rank"], "deprecated")
        self.assertEqual(batch.scalar_patches["Q1"]["release_year"], 1998)
        self.assertEqual(batch.scalar_patches["Q1"]["first_release_at"], "1998-11-23T00:00:00Z")

    def test_unchanged_scalars_are_not_patched(self) -> None:
        claims = {"P577": [time_claim("P577", "+1998-11-23T00:00:00Z", claim_id="c1")]}
        batch = self._parse(claims, current={"release_year": 1998, "first_release_at": "1998-11-23T00:00:00Z"})
        self.assertNotIn("release_year", batch.scalar_patches.get("Q1", {}))

    def test_release_date_without_claim_id_uses_composite_key(self) -> None:
        claim = time_claim("P577", "+2005-03-00T00:00:00Z", precision=10, qualifiers=item_qualifier("P400", "Q8084"))
        claim["id"] = None
        batch = self._parse({"P577": [claim]})
        row = batch.rows["release_dates"][0]
        self.assertEqual(row["claim_key"], "2005-03|Q8084|")
        self.assertEqual(row["platform_qid"], "Q8084")
        self.assertIsNone(row["day"])

    def test_item_relations_are_deduped_and_lookups_created(self) -> None:
        claims = {
            "P136": [item_claim("P136", "Q1422746", claim_id="a"), item_claim("P136", "Q1422746", claim_id="b")],
            "P178": [item_claim("P178", "Q2", claim_id="d")],
            "P123": [item_claim("P123", "Q2", claim_id="p")],
            "P155": [item_claim("P155", "Q1"), item_claim("P155", "Q9")],
        }
        batch = self._parse(claims)
        self.assertEqual(len(batch.rows["game_tags"]), 1)
        self.assertEqual(batch.lookups["tags"], [{"kind": "GENRE", "qid": "Q1422746", "label": "Q1422746"}])
        roles = sorted(row["role"] for row in batch.rows["game_companies"])
        self.assertEqual(roles, ["DEVELOPER", "PUBLISHER"])
        self.assertEqual(len(batch.lookups["companies"]), 1)
        # Self references are skipped
        self.assertEqual([row["to_game_qid"] for row in batch.rows["game_relations"]], ["Q9"])

    def test_string_targets(self) -> None:
        claims = {
            "P856": [string_claim("P856", "https://example.org"), string_claim("P856", "HTTPS://EXAMPLE.ORG")],
            "P1733": [string_claim("P1733", "220")],
            "P18": [string_claim("P18", "Other.png"), string_claim("P18", "Cover art.jpg", rank="preferred")],
        }
        batch = self._parse(claims)
        self.assertEqual(len(batch.rows["websites"]), 1)
        self.assertEqual(batch.rows["external_games"][0]["url"], "https://store.steampowered.com/app/220")
        images = {row["commons_name"]: row["kind"] for row in batch.rows["game_images"]}
        self.assertEqual(images, {"Other.png": "OTHER", "Cover art.jpg": "COVER"})
        self.assertEqual(batch.scalar_patches["Q1"]["image_commons"], "Cover art.jpg")
        self.assertTrue(batch.scalar_patches["Q1"]["image_url"].endswith("Cover_art.jpg"))

    def test_review_scores_from_string_claims(self) -> None:
        claims = {
            "P444": [
                string_claim("P444", "92/100", claim_id="s1", qualifiers=item_qualifier("P447", "Q150248")),
                string_claim("P444", "9/10", claim_id="s2", qualifiers=item_qualifier("P447", "Q1063")),
                string_claim("P444", "8.5 / 10", claim_id="s3"),
                string_claim("P444", "Must play", claim_id="s4"),
            ]
        }
        batch = self._parse(claims)
        scores = {row["provider"]: row for row in batch.rows["game_scores"]}
        self.assertEqual(set(scores), {"Q150248", "Q1063", "WIKIDATA"})
        self.assertEqual(scores["Q150248"]["score"], 92.0)
        self.assertEqual(scores["Q150248"]["claim_id"], "s1")
        self.assertEqual(scores["Q1063"]["score"], 90.0)
        self.assertEqual(scores["WIKIDATA"]["score"], 85.0)
        self.assertEqual(batch.shape_mismatches, 1)
        self.assertEqual(batch.scalar_patches["Q1"]["aggregated_rating"], 89.0)
        self.assertEqual(batch.scalar_patches["Q1"]["aggregated_rating_count"], 3)

    def test_review_scores_from_one_reviewer_are_combined(self) -> None:
        reviewer = item_qualifier("P447", "Q150248")
        claims = {
            "P444": [
                string_claim("P444", "90/100", claim_id="a", qualifiers=reviewer),
                string_claim("P444", "80/100", claim_id="b", qualifiers=reviewer),
            ]
        }
        row = self._parse(claims).rows["game_scores"][0]
        self.assertEqual((row["provider"], row["score"], row["score_count"]), ("Q150248", 85.0, 2))
        self.assertIsNone(row["claim_id"])

    def test_single_valued_entry_keeps_best_ranked_statement(self) -> None:
        genre = replace(self.registry.get("P136"), cardinality="one")
        claims = {"P136": [item_claim("P136", "Q1"), item_claim("P136", "Q2", rank="preferred")]}
        batch = self._parse(claims, entries=[genre])
        self.assertEqual([row["tag_qid"] for row in batch.rows["game_tags"]], ["Q2"])

    def test_multi_valued_entries_do_not_patch_scalars(self) -> None:
        dates = replace(self.registry.get("P577"), cardinality="many")
        image = replace(self.registry.get("P18"), cardinality="many")
        claims = {
            "P577": [time_claim("P577", "+1998-11-23T00:00:00Z"), time_claim("P577", "+2001-05-01T00:00:00Z")],
            "P18": [string_claim("P18", "Box.jpg"), string_claim("P18", "Title.png")],
        }
        batch = self._parse(claims, entries=[dates, image])
        self.assertEqual(len(batch.rows["release_dates"]), 2)
        self.assertEqual({row["kind"] for row in batch.rows["game_images"]}, {"COVER"})
        self.assertEqual(batch.scalar_patches, {})

    def test_shape_mismatch_is_counted(self) -> None:
        batch = self._parse({"P136": [string_claim("P136", "not an item")]})
        self.assertEqual(batch.shape_mismatches, 1)
        self.assertNotIn("game_tags", batch.rows)

    def test_niche_properties_excluded(self) -> None:
        claims = {"P921": [item_claim("P921", "Q5")], "P136": [item_claim("P136", "Q7")]}
        batch = self._parse(claims, entries=self.registry.active(GAME, include_niche=False))
        kinds = {row["tag_kind"] for row in batch.rows["game_tags"]}
        self.assertEqual(kinds, {"GENRE"})
        self.assertNotIn("wikidata:P921", batch.sources)

    def test_missing_claims_are_reported(self) -> None:
        batch = parse_batch([EntitySnapshot("Q1", None)], self.entries, GAME)
        self.assertEqual(batch.missing_claims, ["Q1"])
        self.assertEqual(batch.row_count(), 0)

    def test_subject_mismatch_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            parse_batch([], self.registry.active(PLATFORM), GAME)

    def test_platform_relations(self) -> None:
        snapshot = EntitySnapshot("Q8084", {"P479": [item_claim("P479", "Q1")], "P361": [item_claim("P361", "Q2")]})
        batch = parse_batch([snapshot], self.registry.active(PLATFORM), PLATFORM)
        self.assertEqual(batch.rows["platform_controllers"][0]["controller_qid"], "Q1")
        self.assertEqual(batch.rows["platform_family_members"][0]["family_qid"], "Q2")
        self.assertIn("controllers", batch.lookups)


if __name__ == "__main__":
    unittest.main()
