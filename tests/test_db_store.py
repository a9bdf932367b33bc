from __future__ import annotations

import json
import sqlite3
import tempfile
import unittest
from pathlib import Path

from db.migrate import apply_sqlite_migrations
from db.migrate import list_schema_migrations_sync
from storage.db_store import DatabaseStore
from storage.db_store import default_migrations_dir


class MigrationTests(unittest.TestCase):
    def test_migrations_idempotent(self):
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        first = apply_sqlite_migrations(conn, default_migrations_dir())
        second = apply_sqlite_migrations(conn, default_migrations_dir())

        self.assertIn("0001", first)
        self.assertEqual(second, [])
        cur = conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='collection_documents'")
        self.assertIsNotNone(cur.fetchone())
        versions = [v for v, _name, _at in list_schema_migrations_sync(conn)]
        self.assertEqual(sorted(versions), sorted(first))

    def test_changed_migration_is_refused(self):
        with tempfile.TemporaryDirectory() as tmp:
            mig = Path(tmp) / "0001_things.sql"
            mig.write_text("CREATE TABLE things (id INTEGER);", encoding="utf-8")
            conn = sqlite3.connect(":memory:")
            apply_sqlite_migrations(conn, tmp)

            mig.write_text("CREATE TABLE things (id INTEGER, name TEXT);", encoding="utf-8")
            with self.assertRaises(RuntimeError):
                apply_sqlite_migrations(conn, tmp)

    def test_backfill_fills_guild_id_from_payload(self):
        with tempfile.TemporaryDirectory() as tmp:
            source = Path(default_migrations_dir())
            (Path(tmp) / "0001_collection_documents.sql").write_text(
                (source / "0001_collection_documents.sql").read_text(encoding="utf-8"),
                encoding="utf-8",
            )
            conn = sqlite3.connect(":memory:")
            apply_sqlite_migrations(conn, tmp)
            conn.execute(
                "INSERT INTO collection_documents VALUES (?, ?, NULL, ?, ?)",
                ("polls", "p1", json.dumps({"guild_id": "42"}), "2024-01-01T00:00:00+00:00"),
            )
            conn.commit()

            (Path(tmp) / "0002_backfill_document_guild_ids.py").write_text(
                (source / "0002_backfill_document_guild_ids.py").read_text(encoding="utf-8"),
                encoding="utf-8",
            )
            applied = apply_sqlite_migrations(conn, tmp)

            self.assertEqual(applied, ["0002"])
            row = conn.execute("SELECT guild_id FROM collection_documents WHERE doc_key='p1'").fetchone()
            self.assertEqual(row[0], "42")


class DatabaseStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = await DatabaseStore.open(":memory:")

    async def asyncTearDown(self):
        await self.store.close()

    async def test_ping(self):
        self.assertTrue(await self.store.ping())

    async def test_write_then_read_replaces_collection(self):
        self.assertEqual(await self.store.read("polls"), {})
        self.assertTrue(await self.store.write("polls", {"a": {"guild_id": "g"}, "b": {"guild_id": "g"}}))
        self.assertTrue(await self.store.write("polls", {"c": {"guild_id": "g"}}))
        self.assertEqual(await self.store.read("polls"), {"c": {"guild_id": "g"}})

    async def test_collections_are_isolated(self):
        await self.store.write("polls", {"k": {"v": 1}})
        await self.store.write("core_credit", {"k": {"v": 2}})
        self.assertEqual(await self.store.get("polls", "k"), {"v": 1})
        self.assertEqual(await self.store.get("core_credit", "k"), {"v": 2})
        self.assertEqual(await self.store.list_collections(), [("core_credit", 1), ("polls", 1)])

    async def test_upsert_last_write_wins(self):
        await self.store.upsert("core_credit", "u1", {"credits": 1})
        await self.store.upsert("core_credit", "u1", {"credits": 9})
        self.assertEqual(await self.store.get("core_credit", "u1"), {"credits": 9})
        self.assertIsNone(await self.store.get("core_credit", "missing"))

    async def test_delete_key_and_collection(self):
        await self.store.write("polls", {"a": {}, "b": {}})
        self.assertTrue(await self.store.delete_key("polls", "a"))
        self.assertFalse(await self.store.delete_key("polls", "a"))
        self.assertTrue(await self.store.delete("polls"))
        self.assertEqual(await self.store.read("polls"), {})

    async def test_list_by_guild_pages_newest_first(self):
        docs = {
            f"m{i}": {"guild_id": "g1", "updated_at": f"2024-01-0{i}T00:00:00+00:00"}
            for i in range(1, 6)
        }
        docs["other"] = {"guild_id": "g2", "updated_at": "2024-02-01T00:00:00+00:00"}
        await self.store.write("role_mappings", docs)

        rows, total = await self.store.list_by_guild("role_mappings", "g1", page=1, limit=2)
        self.assertEqual(total, 5)
        self.assertEqual([k for k, _ in rows], ["m5", "m4"])

        rows, total = await self.store.list_by_guild("role_mappings", "g1", page=3, limit=2)
        self.assertEqual([k for k, _ in rows], ["m1"])

        rows, total = await self.store.list_by_guild("role_mappings", "g1")
        self.assertEqual(len(rows), 5)

    async def test_list_migrations(self):
        rows = await self.store.list_migrations()
        self.assertTrue(any(version == "0001" for version, _name, _at in rows))

    async def test_failures_return_zero_values_after_close(self):
        await self.store.close()
        self.assertEqual(await self.store.read("polls"), {})
        self.assertFalse(await self.store.write("polls", {"a": {}}))
        self.assertIsNone(await self.store.get("polls", "a"))
        self.assertEqual(await self.store.list_by_guild("polls", "g"), ([], 0))


if __name__ == "__main__":
    unittest.main()
