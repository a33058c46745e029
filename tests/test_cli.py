import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from gamegraph.cli import build_settings, main, parse_args

from helpers import USER_AGENT


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.db = str(Path(self._tmp.name) / "cli.sqlite")

    def test_missing_user_agent_exits_with_config_status(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True), mock.patch("gamegraph.cli.load_dotenv"):
            self.assertEqual(main(["--db", self.db, "flag-junk"]), 2)

    def test_invalid_override_exits_with_config_status(self) -> None:
        env = {"WIKIDATA_USER_AGENT": USER_AGENT}
        with mock.patch.dict(os.environ, env, clear=True), mock.patch("gamegraph.cli.load_dotenv"):
            self.assertEqual(main(["--db", self.db, "enrich-games", "--batch-size", "80"]), 2)

    def test_stage_runs_and_writes_summary(self) -> None:
        summary_path = Path(self._tmp.name) / "out" / "summary.json"
        env = {"WIKIDATA_USER_AGENT": USER_AGENT}
        with mock.patch.dict(os.environ, env, clear=True), mock.patch("gamegraph.cli.load_dotenv"):
            status = main(["--db", self.db, "--summary-json", str(summary_path), "flag-junk"])
        self.assertEqual(status, 0)
        summary = json.loads(summary_path.read_text(encoding="utf-8"))
        self.assertEqual(summary["stage"], "flag-junk")
        self.assertEqual(summary["counts"]["scanned"], 0)

    def test_pipeline_error_exits_with_failure_status(self) -> None:
        env = {"WIKIDATA_USER_AGENT": USER_AGENT}
        with mock.patch.dict(os.environ, env, clear=True), mock.patch("gamegraph.cli.load_dotenv"):
            self.assertEqual(main(["--db", self.db, "crawl-rosters"]), 1)

    def test_flags_reach_settings(self) -> None:
        env = {"WIKIDATA_USER_AGENT": USER_AGENT}
        args = parse_args(["--db", self.db, "normalize-games", "--no-niche", "--batch-size", "25"])
        settings = build_settings(args, env)
        self.assertFalse(settings.include_niche)
        self.assertEqual(settings.normalize_batch_size, 25)
        self.assertEqual(settings.enrich_batch_size, 50)
        self.assertEqual(str(settings.db_path), self.db)

        args = parse_args(["crawl-rosters", "--platform", "q8084", "--page-size", "500"])
        self.assertEqual(args.platform, "Q8084")
        self.assertEqual(build_settings(args, env).page_size, 500)


if __name__ == "__main__":
    unittest.main()
