import unittest
from unittest import mock

from sqlalchemy.exc import OperationalError

from access_log import get_access_log, log_access
from config import TestingConfig
from errors import ValidationError
from stashes import create_stash, delete_stash
from store import Store


class AccessLogTestCase(unittest.TestCase):
    def setUp(self):
        self.store = Store(TestingConfig()).init()
        self.stash = create_stash(self.store, {"files": [{"filename": "a.txt", "content": "x"}]})
        self.stash_id = self.stash["id"]

    def tearDown(self):
        self.store.close()

    def test_most_recent_first(self):
        log_access(self.store, self.stash_id, "api", "create")
        log_access(self.store, self.stash_id, "ui", "read", ip="10.0.0.1", user_agent="browser")
        log_access(self.store, self.stash_id, "mcp", "restore_version:1")

        entries = get_access_log(self.store, self.stash_id)
        self.assertEqual([e["action"] for e in entries], ["restore_version:1", "read", "create"])
        self.assertEqual(entries[1]["ip"], "10.0.0.1")
        self.assertEqual(entries[1]["user_agent"], "browser")
        self.assertIsNone(entries[0]["ip"])

    def test_limit(self):
        for i in range(5):
            log_access(self.store, self.stash_id, "api", f"read:{i}")

        entries = get_access_log(self.store, self.stash_id, limit=2)
        self.assertEqual([e["action"] for e in entries], ["read:4", "read:3"])
        with self.assertRaises(ValidationError):
            get_access_log(self.store, self.stash_id, limit=0)

    def test_invalid_source(self):
        with self.assertRaises(ValidationError):
            log_access(self.store, self.stash_id, "cron", "read")

    def test_failure_never_raises(self):
        error = OperationalError("INSERT", {}, Exception("database is locked"))
        with mock.patch.object(self.store, "transaction", side_effect=error):
            self.assertFalse(log_access(self.store, self.stash_id, "api", "read"))
        self.assertEqual(get_access_log(self.store, self.stash_id), [])

    def test_missing_stash_not_logged(self):
        self.assertFalse(log_access(self.store, "missing", "api", "read"))

    def test_entries_removed_with_stash(self):
        log_access(self.store, self.stash_id, "api", "read")
        delete_stash(self.store, self.stash_id)
        self.assertEqual(get_access_log(self.store, self.stash_id), [])


if __name__ == "__main__":
    unittest.main()
