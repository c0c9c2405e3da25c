import json
import unittest

from config import TestingConfig
from errors import ConflictError, ValidationError
from export_import import ImportPolicy, export_all_data, import_all_data
from search import search_stashes
from stashes import (
    create_stash,
    get_stash,
    get_stash_versions,
    list_stashes,
    restore_stash_version,
    update_stash,
)
from store import Store


def make_stash(store, name, content="x"):
    return create_stash(store, {
        "name": name,
        "tags": ["t"],
        "metadata": {"owner": name},
        "files": [{"filename": "a.txt", "content": content}],
    })


class ExportImportTestCase(unittest.TestCase):
    def setUp(self):
        self.store = Store(TestingConfig()).init()
        self.target = Store(TestingConfig()).init()

    def tearDown(self):
        self.store.close()
        self.target.close()

    def test_round_trip_keeps_history(self):
        stash = make_stash(self.store, "alpha")
        update_stash(self.store, stash["id"], {"files": [{"filename": "b.py", "content": "print(1)"}]})
        restore_stash_version(self.store, stash["id"], 1)

        exported = export_all_data(self.store)
        self.assertEqual(len(exported["stashes"]), 1)
        self.assertEqual(len(exported["stash_versions"]), 3)
        json.dumps(exported)  # must be JSON-serialisable

        counts = import_all_data(self.target, exported, ImportPolicy.REPLACE_ALL)
        self.assertEqual(counts["stashes"], 1)
        self.assertEqual(counts["versions"], 3)
        self.assertEqual(counts["backfilled"], 0)

        imported = get_stash(self.target, stash["id"])
        original = get_stash(self.store, stash["id"])
        for key in ("name", "tags", "metadata", "version", "files", "created_at", "updated_at"):
            self.assertEqual(imported[key], original[key], key)
        history = get_stash_versions(self.target, stash["id"])
        self.assertEqual([v["version"] for v in history], [1, 2, 3])
        self.assertEqual(history[2]["restored_from"], 1)

    def test_import_rebuilds_search_index(self):
        make_stash(self.store, "searchable", content="needle")
        import_all_data(self.target, export_all_data(self.store), "replace_all")
        self.assertEqual(search_stashes(self.target, "needle")["total"], 1)

    def test_policy_is_required_and_validated(self):
        exported = export_all_data(self.store)
        with self.assertRaises(TypeError):
            import_all_data(self.target, exported)
        with self.assertRaises(ValidationError):
            import_all_data(self.target, exported, "merge")

    def test_replace_all_wipes_existing(self):
        make_stash(self.target, "old")
        make_stash(self.store, "new")

        import_all_data(self.target, export_all_data(self.store), ImportPolicy.REPLACE_ALL)
        names = [s["name"] for s in list_stashes(self.target)["stashes"]]
        self.assertEqual(names, ["new"])

    def test_collision_policies(self):
        stash = make_stash(self.store, "incoming")
        exported = export_all_data(self.store)
        update_stash(self.store, stash["id"], {"name": "local edit"})
        local_only = make_stash(self.store, "untouched")

        with self.assertRaises(ConflictError):
            import_all_data(self.store, exported, ImportPolicy.ERROR)
        self.assertEqual(get_stash(self.store, stash["id"])["name"], "local edit")

        skipped = import_all_data(self.store, exported, ImportPolicy.SKIP)
        self.assertEqual(skipped["skipped"], 1)
        self.assertEqual(skipped["stashes"], 0)
        self.assertEqual(get_stash(self.store, stash["id"])["name"], "local edit")

        replaced = import_all_data(self.store, exported, ImportPolicy.OVERWRITE)
        self.assertEqual(replaced["replaced"], 1)
        restored = get_stash(self.store, stash["id"])
        self.assertEqual(restored["name"], "incoming")
        self.assertEqual(restored["version"], 1)
        self.assertEqual(len(get_stash_versions(self.store, stash["id"])), 1)
        self.assertIsNotNone(get_stash(self.store, local_only["id"]))

    def test_backfills_missing_versions(self):
        data = {
            "stashes": [{
                "id": "legacy-1",
                "name": "legacy",
                "description": None,
                "tags": json.dumps(["old"]),
                "metadata": "{}",
                "version": 3,
                "created_at": "2024-01-01T00:00:00Z",
                "updated_at": "2024-01-02T00:00:00Z",
            }],
            "stash_files": [
                {"id": "f2", "stash_id": "legacy-1", "filename": "b.sh", "content": "echo", "sort_order": 1},
                {"id": "f1", "stash_id": "legacy-1", "filename": "a.py", "content": "pass", "sort_order": 0},
            ],
        }

        counts = import_all_data(self.target, data, ImportPolicy.ERROR)

        self.assertEqual(counts["backfilled"], 1)
        stash = get_stash(self.target, "legacy-1")
        self.assertEqual(stash["version"], 1)
        self.assertEqual(stash["tags"], ["old"])
        self.assertEqual(stash["description"], "")
        self.assertEqual([(f["filename"], f["language"]) for f in stash["files"]],
                         [("a.py", "python"), ("b.sh", "bash")])
        self.assertEqual(stash["created_at"], "2024-01-01T00:00:00")
        self.assertEqual(len(get_stash_versions(self.target, "legacy-1")), 1)

    def test_live_state_appended_when_history_is_one_short(self):
        data = {
            "stashes": [{"id": "s1", "name": "two", "version": 2}],
            "stash_files": [{"stash_id": "s1", "filename": "a.txt", "content": "new"}],
            "stash_versions": [{"id": "v1", "stash_id": "s1", "version": 1, "name": "one"}],
            "stash_version_files": [{"version_id": "v1", "filename": "a.txt", "content": "old"}],
        }

        import_all_data(self.target, data, ImportPolicy.ERROR)

        history = get_stash_versions(self.target, "s1")
        self.assertEqual([v["name"] for v in history], ["one", "two"])
        self.assertEqual(get_stash(self.target, "s1")["version"], 2)

    def test_inconsistent_snapshots_rejected(self):
        bad_versions = {
            "stashes": [{"id": "s1", "version": 3}],
            "stash_files": [{"stash_id": "s1", "filename": "a.txt"}],
            "stash_versions": [
                {"id": "v1", "stash_id": "s1", "version": 1},
                {"id": "v3", "stash_id": "s1", "version": 3},
            ],
        }
        orphan_file = {
            "stashes": [{"id": "s1"}],
            "stash_files": [{"stash_id": "elsewhere", "filename": "a.txt"}],
        }
        for data in (bad_versions, orphan_file, {"nothing": []}):
            with self.assertRaises(ValidationError):
                import_all_data(self.target, data, ImportPolicy.REPLACE_ALL)
        self.assertEqual(list_stashes(self.target)["total"], 0)


if __name__ == "__main__":
    unittest.main()
