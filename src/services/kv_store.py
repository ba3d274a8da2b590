"""
Key/value document store used for published snapshots and persisted state.

Two backends share one interface:

* ``FileKVStore`` writes each key as a file under a root directory. Batches
  are staged to temp files, fsync'd, then swapped in with ``os.replace``.
  A journal naming the staged files is written before the first swap and
  replayed on open, so a batch interrupted mid-swap is completed as a whole.
* ``PostgresKVStore`` keeps documents as JSONB rows and writes a whole batch
  in a single transaction.

Keys are slash-separated relative paths such as ``surveys.json`` or
``aggregates/0xabc.json``.
"""

import json
import os
import tempfile
from typing import Any, Dict, Iterable, List, Optional

from psycopg2.extras import Json

from src.services.connection_pool import DatabaseConnectionPool, get_connection_pool
from src.utils.logger import logger


class KVStoreError(Exception):
    """Raised when a store read or write cannot complete."""


class KVStore:
    """Interface for snapshot/state persistence."""

    def read(self, key: str, default: Any = None) -> Any:
        value = self.read_json(key)
        return default if value is None else value

    def read_json(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def write_json(self, key: str, value: Any) -> None:
        self.write_many({key: value})

    def write_many(self, documents: Dict[str, Any]) -> None:
        raise NotImplementedError

    def append_lines(self, key: str, lines: Iterable[Dict[str, Any]]) -> int:
        raise NotImplementedError

    def read_last_line(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def read_lines(self, key: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


def _dumps(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


class FileKVStore(KVStore):
    JOURNAL_NAME = ".write_many.journal"

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)
        self.journal_path = os.path.join(self.root, self.JOURNAL_NAME)
        self.recover()

    def recover(self) -> int:
        """
        Finish a batch whose swaps were interrupted.

        Returns:
            Number of staged files moved into place
        """
        if not os.path.exists(self.journal_path):
            return 0
        try:
            with open(self.journal_path, "r", encoding="utf-8") as f:
                entries = json.load(f)
        except (OSError, ValueError) as e:
            raise KVStoreError(f"Unreadable write journal in {self.root}: {e}") from e

        moved = 0
        for tmp_rel, key in entries:
            tmp_path = os.path.join(self.root, tmp_rel)
            # Entries already swapped before the interruption are gone
            if os.path.exists(tmp_path):
                os.replace(tmp_path, self.path_for(key))
                moved += 1
        os.remove(self.journal_path)
        logger.warning("FileKVStore: completed interrupted batch under %s (%d file(s))", self.root, moved)
        return moved

    def path_for(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, *key.split("/")))
        if os.path.commonpath([path, self.root]) != self.root:
            raise KVStoreError(f"Key escapes store root: {key}")
        return path

    def read_json(self, key: str) -> Optional[Any]:
        path = self.path_for(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise KVStoreError(f"Failed to read {key}: {e}") from e

    def _stage(self, path: str, text: str) -> str:
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", dir=directory)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        return tmp_path

    def write_many(self, documents: Dict[str, Any]) -> None:
        """
        Persist every document or none of the new content.

        All payloads are serialized and staged before the first rename, so a
        failure while staging leaves the previous files in place. Once the
        journal is down, the batch counts as committed: a process that dies
        between renames leaves the rest to ``recover`` on the next open.
        """
        staged: List[tuple] = []
        try:
            for key, value in documents.items():
                path = self.path_for(key)
                staged.append((self._stage(path, _dumps(value)), key, path))
            journal = [[os.path.relpath(tmp_path, self.root), key] for tmp_path, key, _ in staged]
            journal_tmp = self._stage(self.journal_path, json.dumps(journal))
        except (OSError, TypeError, ValueError) as e:
            for tmp_path, _, _ in staged:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
            raise KVStoreError(f"Failed to stage snapshot: {e}") from e

        os.replace(journal_tmp, self.journal_path)
        for tmp_path, _, path in staged:
            os.replace(tmp_path, path)
        os.remove(self.journal_path)
        logger.debug("FileKVStore: wrote %d document(s) under %s", len(staged), self.root)

    def append_lines(self, key: str, lines: Iterable[Dict[str, Any]]) -> int:
        rows = [json.dumps(line, ensure_ascii=False) for line in lines]
        if not rows:
            return 0
        path = self.path_for(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write("\n".join(rows) + "\n")
            f.flush()
            os.fsync(f.fileno())
        return len(rows)

    def read_lines(self, key: str) -> List[Dict[str, Any]]:
        path = self.path_for(key)
        if not os.path.exists(path):
            return []
        out = []
        with open(path, "r", encoding="utf-8") as f:
            for raw in f:
                raw = raw.strip()
                if raw:
                    out.append(json.loads(raw))
        return out

    def read_last_line(self, key: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(key)
        if not os.path.exists(path):
            return None
        last = None
        with open(path, "rb") as f:
            # Walk back from the end to the last non-empty line
            f.seek(0, os.SEEK_END)
            pos = f.tell()
            buf = b""
            while pos > 0:
                step = min(4096, pos)
                pos -= step
                f.seek(pos)
                buf = f.read(step) + buf
                lines = [l for l in buf.split(b"\n") if l.strip()]
                if len(lines) > 1 or (lines and pos == 0):
                    last = lines[-1]
                    break
        if last is None:
            return None
        try:
            return json.loads(last.decode("utf-8"))
        except ValueError as e:
            raise KVStoreError(f"Corrupt last line in {key}: {e}") from e

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        if os.path.exists(path):
            os.remove(path)


class PostgresKVStore(KVStore):
    """JSONB-backed store; a batch is one transaction."""

    SCHEMA_SQL = """
        CREATE TABLE IF NOT EXISTS kv_documents (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE TABLE IF NOT EXISTS kv_lines (
            id BIGSERIAL PRIMARY KEY,
            key TEXT NOT NULL,
            line JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE INDEX IF NOT EXISTS kv_lines_key_id_idx ON kv_lines (key, id);
    """

    def __init__(self, pool: Optional[DatabaseConnectionPool] = None):
        self.pool = pool or get_connection_pool()
        self._schema_ready = False

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(self.SCHEMA_SQL)
        self._schema_ready = True
        logger.info("PostgresKVStore: schema ready")

    def read_json(self, key: str) -> Optional[Any]:
        self._ensure_schema()
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT value FROM kv_documents WHERE key = %s", (key,))
                row = cur.fetchone()
        return row[0] if row else None

    def write_many(self, documents: Dict[str, Any]) -> None:
        self._ensure_schema()
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                for key, value in documents.items():
                    cur.execute(
                        """
                        INSERT INTO kv_documents (key, value, updated_at)
                        VALUES (%s, %s, now())
                        ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
                        """,
                        (key, Json(value)),
                    )
        logger.debug("PostgresKVStore: wrote %d document(s)", len(documents))

    def append_lines(self, key: str, lines: Iterable[Dict[str, Any]]) -> int:
        rows = list(lines)
        if not rows:
            return 0
        self._ensure_schema()
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                for line in rows:
                    cur.execute("INSERT INTO kv_lines (key, line) VALUES (%s, %s)", (key, Json(line)))
        return len(rows)

    def read_lines(self, key: str) -> List[Dict[str, Any]]:
        self._ensure_schema()
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT line FROM kv_lines WHERE key = %s ORDER BY id", (key,))
                return [row[0] for row in cur.fetchall()]

    def read_last_line(self, key: str) -> Optional[Dict[str, Any]]:
        self._ensure_schema()
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT line FROM kv_lines WHERE key = %s ORDER BY id DESC LIMIT 1", (key,))
                row = cur.fetchone()
        return row[0] if row else None

    def delete(self, key: str) -> None:
        self._ensure_schema()
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM kv_documents WHERE key = %s", (key,))
                cur.execute("DELETE FROM kv_lines WHERE key = %s", (key,))


def create_store(backend: str, root: str) -> KVStore:
    """Build the store selected by ``STORE_BACKEND``."""
    if backend == "postgres":
        return PostgresKVStore()
    if backend == "file":
        return FileKVStore(root)
    raise KVStoreError(f"Unknown store backend: {backend}")
