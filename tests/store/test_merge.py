"""
Unit tests for knowledge_daemon.store.merge

The merge strategies are exercised directly and through upsert_row on a
throwaway in-memory table.
"""

from __future__ import annotations

import sqlite3
import unittest

from knowledge_daemon.store import merge


class TestMergeValue(unittest.TestCase):

    def test_replace(self):
        self.assertEqual(merge.merge_value(merge.REPLACE, "old", ""), "")

    def test_coalesce_ignores_empty(self):
        self.assertEqual(merge.merge_value(merge.COALESCE, "old", ""), "old")
        self.assertEqual(merge.merge_value(merge.COALESCE, "old", "[]"), "old")
        self.assertEqual(merge.merge_value(merge.COALESCE, "old", "new"), "new")

    def test_keep_fills_only_empty(self):
        self.assertEqual(merge.merge_value(merge.KEEP, "old", "new"), "old")
        self.assertEqual(merge.merge_value(merge.KEEP, "", "new"), "new")
        self.assertEqual(merge.merge_value(merge.KEEP, 0, 5), 0)

    def test_union_preserves_order(self):
        self.assertEqual(
            merge.merge_value(merge.UNION, '["a", "b"]', ["b", "c"]),
            ["a", "b", "c"],
        )

    def test_union_with_non_json_text(self):
        self.assertEqual(merge.merge_value(merge.UNION, "plain", ["x"]), ["plain", "x"])

    def test_max(self):
        self.assertEqual(merge.merge_value(merge.MAX, 0.4, 0.2), 0.4)
        self.assertEqual(merge.merge_value(merge.MAX, None, 0.2), 0.2)

    def test_increment(self):
        self.assertEqual(merge.merge_value(merge.INCREMENT, 2, 1), 3)
        self.assertEqual(merge.merge_value(merge.INCREMENT, None, 1), 1)

    def test_unknown_strategy(self):
        with self.assertRaises(ValueError):
            merge.merge_value("sum", 1, 2)

    def test_encode(self):
        self.assertEqual(merge.encode(True), 1)
        self.assertEqual(merge.encode(("a",)), '["a"]')
        self.assertEqual(merge.encode({"k": 1}), '{"k": 1}')
        self.assertEqual(merge.encode("x"), "x")


class TestUpsertRow(unittest.TestCase):

    def setUp(self):
        self.conn = sqlite3.connect(":memory:")
        self.conn.row_factory = sqlite3.Row
        self.conn.execute(
            "CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT UNIQUE, "
            "note TEXT DEFAULT '', tags TEXT DEFAULT '[]', hits INTEGER DEFAULT 0, "
            "updated_at TEXT DEFAULT '')"
        )

    def tearDown(self):
        self.conn.close()

    def _row(self, name):
        return self.conn.execute("SELECT * FROM t WHERE name = ?", (name,)).fetchone()

    def test_insert_then_merge(self):
        strategies = {"note": merge.COALESCE, "tags": merge.UNION, "hits": merge.INCREMENT}
        row_id, inserted = merge.upsert_row(
            self.conn, "t", {"name": "a"}, {"note": "first", "tags": ["x"], "hits": 1},
            strategies, touch=("updated_at", "t1"))
        self.assertTrue(inserted)

        same_id, inserted = merge.upsert_row(
            self.conn, "t", {"name": "a"}, {"note": "", "tags": ["y"], "hits": 1},
            strategies, touch=("updated_at", "t2"))
        self.assertFalse(inserted)
        self.assertEqual(same_id, row_id)

        row = self._row("a")
        self.assertEqual(row["note"], "first")
        self.assertEqual(row["tags"], '["x", "y"]')
        self.assertEqual(row["hits"], 2)
        self.assertEqual(row["updated_at"], "t2")

    def test_noop_merge_does_not_touch(self):
        merge.upsert_row(self.conn, "t", {"name": "a"}, {"note": "n"},
                         touch=("updated_at", "t1"))
        merge.upsert_row(self.conn, "t", {"name": "a"}, {"note": "n"},
                         touch=("updated_at", "t2"))
        self.assertEqual(self._row("a")["updated_at"], "t1")

    def test_rejects_unknown_strategy(self):
        with self.assertRaises(ValueError):
            merge.upsert_row(self.conn, "t", {"name": "a"}, {"note": "n"}, {"note": "bogus"})


if __name__ == "__main__":
    unittest.main()
