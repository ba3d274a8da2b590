"""Tests for the file and Postgres KV stores."""
import os
from unittest.mock import MagicMock, patch

import pytest

from src.services.kv_store import FileKVStore, KVStoreError, PostgresKVStore, create_store


class TestFileKVStore:
    def test_write_many_then_read(self, tmp_path):
        kv = FileKVStore(str(tmp_path))

        kv.write_many({"a.json": {"x": 1}, "nested/b.json": [1, 2]})

        assert kv.read("a.json") == {"x": 1}
        assert kv.read("nested/b.json") == [1, 2]
        assert kv.read("missing.json", {}) == {}
        assert not [p for p in tmp_path.rglob(".tmp-*")]

    def test_keys_cannot_escape_root(self, tmp_path):
        kv = FileKVStore(str(tmp_path / "root"))

        with pytest.raises(KVStoreError):
            kv.write_json("../outside.json", {})

    def test_last_line_of_large_file(self, tmp_path):
        kv = FileKVStore(str(tmp_path))
        kv.append_lines("log.ndjson", ({"i": i, "pad": "x" * 100} for i in range(200)))

        assert kv.read_last_line("log.ndjson")["i"] == 199
        assert len(kv.read_lines("log.ndjson")) == 200

    def test_last_line_of_single_line_file(self, tmp_path):
        kv = FileKVStore(str(tmp_path))
        kv.append_lines("log.ndjson", [{"i": 0}])

        assert kv.read_last_line("log.ndjson") == {"i": 0}
        assert kv.read_last_line("other.ndjson") is None

    def test_delete(self, tmp_path):
        kv = FileKVStore(str(tmp_path))
        kv.write_json("a.json", 1)

        kv.delete("a.json")

        assert kv.read("a.json") is None

    def test_batch_interrupted_between_renames_completes_on_reopen(self, tmp_path):
        kv = FileKVStore(str(tmp_path))
        kv.write_many({"person.json": {"region": "EU"}, "analytics.json": {"count": 0}})
        real_replace = os.replace
        calls = []

        def replace_then_die(src, dst):
            calls.append(dst)
            # Journal and first document land, the second rename never runs
            if len(calls) == 3:
                raise OSError("process killed")
            real_replace(src, dst)

        with patch("src.services.kv_store.os.replace", side_effect=replace_then_die):
            with pytest.raises(OSError):
                kv.write_many({"person.json": {"region": "NA"}, "analytics.json": {"count": 1}})

        assert kv.read("person.json") == {"region": "NA"}
        assert kv.read("analytics.json") == {"count": 0}

        reopened = FileKVStore(str(tmp_path))

        assert reopened.read("person.json") == {"region": "NA"}
        assert reopened.read("analytics.json") == {"count": 1}
        assert not os.path.exists(reopened.journal_path)
        assert not [p for p in tmp_path.rglob(".tmp-*")]

    def test_open_without_journal_moves_nothing(self, tmp_path):
        kv = FileKVStore(str(tmp_path))
        kv.write_json("a.json", 1)

        assert kv.recover() == 0
        assert not os.path.exists(kv.journal_path)


class TestPostgresKVStore:
    def make_store(self):
        cursor = MagicMock()
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor
        pool = MagicMock()
        pool.connection.return_value.__enter__.return_value = conn
        return PostgresKVStore(pool=pool), pool, cursor

    def test_write_many_is_one_transaction(self):
        kv, pool, cursor = self.make_store()

        kv.write_many({"a.json": {"x": 1}, "b.json": {"y": 2}})

        # schema setup + the batch
        assert pool.connection.call_count == 2
        upserts = [c for c in cursor.execute.call_args_list if "INSERT INTO kv_documents" in c.args[0]]
        assert [c.args[1][0] for c in upserts] == ["a.json", "b.json"]

    def test_read_returns_stored_value(self):
        kv, _, cursor = self.make_store()
        cursor.fetchone.return_value = ({"x": 1},)

        assert kv.read("a.json") == {"x": 1}

    def test_schema_created_once(self):
        kv, pool, _ = self.make_store()

        kv.read("a.json")
        kv.read("b.json")

        assert pool.connection.call_count == 3


def test_create_store_rejects_unknown_backend(tmp_path):
    with pytest.raises(KVStoreError):
        create_store("redis", str(tmp_path))
