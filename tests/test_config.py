import unittest
from pathlib import Path

from gamegraph.config import Settings, parse_qid_list
from gamegraph.errors import ConfigError

from helpers import USER_AGENT


class SettingsTests(unittest.TestCase):
    def test_from_env_defaults(self) -> None:
        settings = Settings.from_env({"WIKIDATA_USER_AGENT": USER_AGENT})
        self.assertEqual(settings.page_size, 2000)
        self.assertEqual(settings.enrich_batch_size, 50)
        self.assertEqual(settings.enrich_concurrency, 3)
        self.assertTrue(settings.include_niche)
        self.assertEqual(settings.headers, {"User-Agent": USER_AGENT})

    def test_user_agent_is_required(self) -> None:
        with self.assertRaises(ConfigError):
            Settings.from_env({})
        with self.assertRaises(ConfigError):
            Settings(user_agent="  ")

    def test_legacy_names_are_accepted(self) -> None:
        settings = Settings.from_env({"USER_AGENT": USER_AGENT, "PAGE_SIZE": "500"})
        self.assertEqual(settings.page_size, 500)

    def test_page_size_floor(self) -> None:
        with self.assertRaises(ConfigError):
            Settings.from_env({"WIKIDATA_USER_AGENT": USER_AGENT, "WDQS_PAGE_SIZE": "150"})

    def test_concurrency_and_batch_bounds(self) -> None:
        with self.assertRaises(ConfigError):
            Settings(user_agent=USER_AGENT, enrich_concurrency=5)
        with self.assertRaises(ConfigError):
            Settings(user_agent=USER_AGENT, enrich_batch_size=51)
        with self.assertRaises(ConfigError):
            Settings.from_env({"WIKIDATA_USER_AGENT": USER_AGENT, "ENRICH_CONCURRENCY": "three"})

    def test_boolean_and_list_parsing(self) -> None:
        settings = Settings.from_env(
            {
                "WIKIDATA_USER_AGENT": USER_AGENT,
                "INCLUDE_NICHE_PROPERTIES": "false",
                "MAJOR_PLATFORM_INCLUDE_QIDS": "q8084, Q48263,Q8084",
                "GAMEGRAPH_DB_PATH": "/tmp/x.sqlite",
            }
        )
        self.assertFalse(settings.include_niche)
        self.assertEqual(settings.major_include_qids, ("Q8084", "Q48263"))
        self.assertEqual(settings.db_path, Path("/tmp/x.sqlite"))
        with self.assertRaises(ConfigError):
            parse_qid_list("Q1,P2")

    def test_override_revalidates_and_ignores_none(self) -> None:
        settings = Settings(user_agent=USER_AGENT)
        self.assertIs(settings.override(page_size=None), settings)
        self.assertEqual(settings.override(page_size=400).page_size, 400)
        with self.assertRaises(ConfigError):
            settings.override(page_size=100)


if __name__ == "__main__":
    unittest.main()
