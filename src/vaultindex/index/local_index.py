"""SQLite vector index with numpy similarity search."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, List, Sequence, Tuple

import numpy as np

from vaultindex.errors import IndexNotCreatedError, IndexTooSmallError, VaultIndexError
from vaultindex.models import VectorRecord

LOGGER = logging.getLogger(__name__)

INDEX_FILE = "index.db"
_SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")


class LocalIndex:
    """All records live in one ``records`` table of ``<folder>/index.db``.

    ``begin_update``/``end_update``/``cancel_update`` map onto a SQLite
    transaction; mutations outside an update commit immediately. Every call
    runs in a worker thread, one at a time, on a single connection.
    """

    def __init__(self, folder: Path, *, min_documents: int = 1) -> None:
        self.folder = Path(folder)
        self.index_path = self.folder / INDEX_FILE
        self.min_documents = min_documents
        self._conn: sqlite3.Connection | None = None
        self._db_lock = asyncio.Lock()
        self._in_update = False

    @property
    def in_update(self) -> bool:
        return self._in_update

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        async with self._db_lock:
            return await asyncio.to_thread(func, *args)

    # -- connection --------------------------------------------------------

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            if not self.index_path.exists():
                raise IndexNotCreatedError(f"No vector index at {self.index_path}")
            self._conn = self._open()
        return self._conn

    def _open(self) -> sqlite3.Connection:
        self.folder.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.index_path, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _close(self) -> None:
        if self._conn is not None:
            if self._in_update:
                self._conn.execute("ROLLBACK")
                self._in_update = False
            self._conn.close()
            self._conn = None

    async def close(self) -> None:
        await self._call(self._close)

    # -- lifecycle ---------------------------------------------------------

    def _has_schema(self) -> bool:
        if not self.index_path.exists():
            return False
        row = self._connection().execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'records'"
        ).fetchone()
        return row is not None

    async def is_index_created(self) -> bool:
        return await self._call(self._has_schema)

    def _create_schema(self) -> None:
        if self._conn is None:
            self._conn = self._open()
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS records (
                id TEXT PRIMARY KEY,
                embedding BLOB NOT NULL,
                metadata TEXT NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

    async def create_index(self, *, delete_if_exists: bool = False) -> None:
        if await self.is_index_created():
            if not delete_if_exists:
                raise VaultIndexError(f"Index already exists at {self.index_path}")
            await self.delete_index()
        await self._call(self._create_schema)
        LOGGER.info("Created vector index at %s", self.index_path)

    def _drop(self) -> None:
        self._close()
        self.index_path.unlink(missing_ok=True)
        for suffix in _SIDECAR_SUFFIXES:
            self.index_path.with_name(INDEX_FILE + suffix).unlink(missing_ok=True)

    async def delete_index(self) -> None:
        await self._call(self._drop)

    # -- transactions ------------------------------------------------------

    def _begin(self) -> None:
        if self._in_update:
            raise VaultIndexError("An index update is already in progress")
        self._connection().execute("BEGIN IMMEDIATE")
        self._in_update = True

    def _commit(self) -> None:
        if not self._in_update:
            raise VaultIndexError("No index update in progress")
        self._connection().execute("COMMIT")
        self._in_update = False

    def _rollback(self) -> None:
        if self._in_update and self._conn is not None:
            self._conn.execute("ROLLBACK")
        self._in_update = False

    async def begin_update(self) -> None:
        await self._call(self._begin)

    async def end_update(self) -> None:
        await self._call(self._commit)

    async def cancel_update(self) -> None:
        await self._call(self._rollback)

    # -- items -------------------------------------------------------------

    @staticmethod
    def _to_record(row: sqlite3.Row) -> VectorRecord:
        return VectorRecord(
            id=row["id"],
            vector=np.frombuffer(row["embedding"], dtype="float32").astype(float).tolist(),
            metadata=json.loads(row["metadata"]),
        )

    def _select_all(self) -> List[VectorRecord]:
        rows = self._connection().execute(
            "SELECT id, embedding, metadata FROM records ORDER BY rowid"
        ).fetchall()
        return [self._to_record(row) for row in rows]

    def _select_one(self, record_id: str) -> VectorRecord | None:
        row = self._connection().execute(
            "SELECT id, embedding, metadata FROM records WHERE id = ?", (record_id,)
        ).fetchone()
        return self._to_record(row) if row is not None else None

    def _insert(self, record: VectorRecord) -> None:
        try:
            self._connection().execute(
                "INSERT INTO records(id, embedding, metadata) VALUES (?, ?, ?)",
                (
                    record.id,
                    sqlite3.Binary(np.asarray(record.vector, dtype="float32").tobytes()),
                    json.dumps(record.metadata, ensure_ascii=True),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise VaultIndexError(f"Item with id {record.id} already exists") from exc

    def _delete(self, record_id: str) -> bool:
        cursor = self._connection().execute("DELETE FROM records WHERE id = ?", (record_id,))
        return cursor.rowcount > 0

    async def list_items(self) -> List[VectorRecord]:
        return await self._call(self._select_all)

    async def get_item(self, record_id: str) -> VectorRecord | None:
        return await self._call(self._select_one, record_id)

    async def insert_item(self, record: VectorRecord) -> None:
        await self._call(self._insert, record)

    async def delete_item(self, record_id: str) -> bool:
        return await self._call(self._delete, record_id)

    # -- query -------------------------------------------------------------

    def _query(self, vector: Sequence[float], top_k: int) -> List[Tuple[VectorRecord, float]]:
        rows = self._connection().execute(
            "SELECT id, embedding, metadata FROM records ORDER BY rowid"
        ).fetchall()
        minimum = max(self.min_documents, 1)
        if len(rows) < minimum:
            raise IndexTooSmallError(f"Index holds {len(rows)} items, need at least {minimum}")

        matrix = np.vstack([np.frombuffer(row["embedding"], dtype="float32") for row in rows])
        query = np.asarray(vector, dtype="float32")
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        scores = np.divide(
            matrix @ query,
            norms,
            out=np.zeros(len(rows), dtype="float32"),
            where=norms > 0,
        )

        if top_k < len(scores):
            top_indices = np.argpartition(scores, -top_k)[-top_k:]
            top_indices = top_indices[np.argsort(scores[top_indices])[::-1]]
        else:
            top_indices = np.argsort(scores)[::-1]

        return [(self._to_record(rows[idx]), float(scores[idx])) for idx in top_indices]

    async def query_items(
        self, vector: Sequence[float], top_k: int
    ) -> List[Tuple[VectorRecord, float]]:
        """Return up to ``top_k`` records ranked by cosine similarity."""
        return await self._call(self._query, vector, top_k)
