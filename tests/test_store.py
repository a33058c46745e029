import sqlite3
import tempfile
import unittest
from pathlib import Path

from gamegraph.errors import StoreConflictError
from gamegraph.store import Store


class StoreWriteRetryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.db_path = Path(self._tmp.name) / "store.sqlite"
        self.sleeps = []

    def _store(self, sleep=None, **kwargs):
        store = Store(self.db_path, sleep=sleep or self.sleeps.append, **kwargs).open()
        self.addCleanup(store.close)
        return store

    def test_conflicts_exhaust_retries_with_capped_backoff(self) -> None:
        store = self._store(max_retries=3, backoff_base_ms=200, backoff_cap_ms=500)
        attempts = []

        def locked(conn):
            attempts.append(1)
            raise sqlite3.OperationalError("database is locked")

        with self.assertRaises(StoreConflictError):
            store.write(locked, label="games")
        self.assertEqual(len(attempts), 4)
        self.assertEqual(self.sleeps, [0.2, 0.4, 0.5])

    def test_other_operational_errors_are_not_retried(self) -> None:
        store = self._store()
        with self.assertRaises(sqlite3.OperationalError):
            store.write(lambda conn: conn.execute("SELECT * FROM no_such_table"))
        self.assertEqual(self.sleeps, [])

    def test_write_succeeds_once_the_other_writer_commits(self) -> None:
        other = sqlite3.connect(str(self.db_path), isolation_level=None)
        self.addCleanup(other.close)

        def release(seconds):
            self.sleeps.append(seconds)
            other.execute("COMMIT")

        store = self._store(sleep=release, max_retries=2)
        store.conn.execute("PRAGMA busy_timeout=0")
        other.execute("BEGIN IMMEDIATE")

        store.write(lambda conn: conn.execute("INSERT INTO tags (kind, qid, label) VALUES ('GENRE', 'Q7', 'Shooter')"))

        self.assertEqual(len(self.sleeps), 1)
        self.assertEqual(store.count("tags"), 1)


if __name__ == "__main__":
    unittest.main()
