import unittest

from sqlalchemy import delete, func, select

from config import TestingConfig
from models import SearchTerm
from search import query_terms, rebuild_search_index, search_stashes
from stashes import archive_stash, create_stash, delete_stash, update_stash
from store import Store


def make_stash(store, name, content="x", tags=None, filename="a.txt", description=""):
    return create_stash(store, {
        "name": name,
        "description": description,
        "tags": tags or [],
        "files": [{"filename": filename, "content": content}],
    })


class SearchTestCase(unittest.TestCase):
    def setUp(self):
        self.store = Store(TestingConfig()).init()

    def tearDown(self):
        self.store.close()

    def ids(self, result):
        return [s["id"] for s in result["stashes"]]

    def test_exact_beats_prefix_beats_partial(self):
        partial = make_stash(self.store, "notes", content="how to redeploy")
        prefix = make_stash(self.store, "deployment notes")
        exact = make_stash(self.store, "deploy script")

        result = search_stashes(self.store, "deploy")
        self.assertEqual(self.ids(result), [exact["id"], prefix["id"], partial["id"]])
        self.assertEqual(result["total"], 3)
        self.assertEqual(result["query"], "deploy")

    def test_frequency_breaks_class_ties(self):
        once = make_stash(self.store, "one", content="cache")
        many = make_stash(self.store, "two", content="cache cache cache cache")
        in_name = make_stash(self.store, "cache")

        result = search_stashes(self.store, "cache")
        self.assertEqual(self.ids(result), [in_name["id"], many["id"], once["id"]])

    def test_ties_fall_back_to_recency(self):
        older = make_stash(self.store, "alpha")
        newer = make_stash(self.store, "alpha")
        update_stash(self.store, older["id"], {"description": "touched"})

        self.assertEqual(self.ids(search_stashes(self.store, "alpha")), [older["id"], newer["id"]])

    def test_all_terms_must_match(self):
        both = make_stash(self.store, "redis cache")
        make_stash(self.store, "redis")

        self.assertEqual(self.ids(search_stashes(self.store, "redis cache")), [both["id"]])

    def test_searches_every_field(self):
        by_desc = make_stash(self.store, "a", description="kubernetes manifests")
        by_tag = make_stash(self.store, "b", tags=["terraform"])
        by_file = make_stash(self.store, "c", filename="Makefile")
        by_content = make_stash(self.store, "d", content="SELECT * FROM users")

        self.assertEqual(self.ids(search_stashes(self.store, "kubernetes")), [by_desc["id"]])
        self.assertEqual(self.ids(search_stashes(self.store, "terraform")), [by_tag["id"]])
        self.assertEqual(self.ids(search_stashes(self.store, "makefile")), [by_file["id"]])
        self.assertEqual(self.ids(search_stashes(self.store, "users")), [by_content["id"]])

    def test_index_follows_updates_and_deletes(self):
        stash = make_stash(self.store, "postgres tips")
        update_stash(self.store, stash["id"], {"name": "mysql tips"})

        self.assertEqual(search_stashes(self.store, "postgres")["total"], 0)
        self.assertEqual(self.ids(search_stashes(self.store, "mysql")), [stash["id"]])

        delete_stash(self.store, stash["id"])
        self.assertEqual(search_stashes(self.store, "mysql")["total"], 0)

    def test_filters_and_paging(self):
        keep = make_stash(self.store, "shell one", tags=["ops"])
        hidden = make_stash(self.store, "shell two", tags=["ops"])
        make_stash(self.store, "shell three")
        archive_stash(self.store, hidden["id"], True)

        result = search_stashes(self.store, "shell", tag="ops", archived=False)
        self.assertEqual(self.ids(result), [keep["id"]])

        page = search_stashes(self.store, "shell", page=2, limit=2)
        self.assertEqual(page["total"], 3)
        self.assertEqual(len(page["stashes"]), 1)

    def test_snippets_and_relevance(self):
        make_stash(self.store, "deploy script", content="run the deploy step")
        item = search_stashes(self.store, "deploy")["stashes"][0]

        self.assertEqual(item["snippets"]["name"], "**deploy** script")
        self.assertIn("**deploy**", item["snippets"]["file_content"])
        self.assertGreater(item["relevance"], 3)

    def test_empty_and_oversized_queries(self):
        make_stash(self.store, "anything")

        self.assertEqual(search_stashes(self.store, "")["stashes"], [])
        self.assertEqual(search_stashes(self.store, "   ")["total"], 0)
        self.assertEqual(search_stashes(self.store, "a" * 2001)["total"], 0)
        self.assertEqual(query_terms(" ".join(f"t{i}" for i in range(51))), [])

    def test_like_wildcards_are_literal(self):
        make_stash(self.store, "plain words")
        self.assertEqual(search_stashes(self.store, "%")["total"], 0)
        self.assertEqual(search_stashes(self.store, "_")["total"], 0)

    def test_rebuild_index(self):
        stash = make_stash(self.store, "rebuild me")
        with self.store.transaction() as session:
            session.execute(delete(SearchTerm))
        self.assertEqual(search_stashes(self.store, "rebuild")["total"], 0)

        self.assertEqual(rebuild_search_index(self.store), 1)
        self.assertEqual(self.ids(search_stashes(self.store, "rebuild")), [stash["id"]])
        with self.store.session() as session:
            self.assertGreater(session.scalar(select(func.count(SearchTerm.id))), 0)


if __name__ == "__main__":
    unittest.main()
