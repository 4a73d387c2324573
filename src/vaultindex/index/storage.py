"""Vector store lifecycle: locked writes, orphan cleanup, optimization, backups."""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Sequence

from vaultindex.config import VectorStoreConfig
from vaultindex.index.cache import ChangeCache
from vaultindex.index.local_index import LocalIndex
from vaultindex.models import EmbeddedChunk, RecordMetadata, VectorRecord
from vaultindex.utils.files import make_record_id, record_id_prefix, sanitize_record_id
from vaultindex.utils.locks import StoreLock

LOGGER = logging.getLogger(__name__)

TEXT_FILES_DIR = "text_files"
BACKUP_DIR = "backups"

_BACKUP_NAME = re.compile(r"^backup-\d{4}-\d{2}-\d{2}")


@dataclass(slots=True)
class ScoredRecord:
    record: VectorRecord
    score: float


@dataclass(slots=True)
class CleanupStats:
    deleted: int = 0
    skipped: int = 0
    total: int = 0


class VectorStoreManager:
    """Owns the vector index and the side table of chunk text.

    Every mutation of the index or of ``text_files/`` happens while
    ``self.lock`` is held. Record ids are ``<document path>::<chunk index>``
    with the document path relative to the vault root.
    """

    def __init__(
        self,
        store_dir: Path,
        cache: ChangeCache,
        *,
        vault_dir: Path,
        config: VectorStoreConfig | None = None,
        index: LocalIndex | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store_dir = Path(store_dir)
        self.vault_dir = Path(vault_dir)
        self.cache = cache
        self.config = config or VectorStoreConfig()
        self.index = index or LocalIndex(self.store_dir)
        self.text_dir = self.store_dir / TEXT_FILES_DIR
        self.backup_dir = self.store_dir / BACKUP_DIR
        self.lock = StoreLock(self.config.lock_timeout, self.config.effective_hold_timeout)
        self.operation_count = 0
        self.last_backup_time = 0.0
        self._clock = clock

    # -- helpers -----------------------------------------------------------

    def text_path(self, record_id: str) -> Path:
        return self.text_dir / f"{sanitize_record_id(record_id)}.txt"

    async def read_text(self, document_id: str) -> str:
        """Load side-stored chunk text by its ``documentId`` reference."""
        path = self.store_dir / f"{document_id}.txt"
        return await asyncio.to_thread(path.read_text, encoding="utf-8")

    async def ensure_index(self) -> None:
        """Create the index if it does not exist yet."""
        if await self.index.is_index_created():
            return
        async with self.lock.hold():
            await self._ensure_index()

    async def _ensure_index(self) -> None:
        if not await self.index.is_index_created():
            LOGGER.info("Creating vector store index")
            await self.index.create_index()

    async def ids_for_document(self, document_path: str) -> List[str]:
        if not await self.index.is_index_created():
            return []
        prefix = record_id_prefix(document_path)
        return [record.id for record in await self.index.list_items() if record.id.startswith(prefix)]

    def _sync_text(self, texts: Dict[str, str], stale: Iterable[str]) -> None:
        self.text_dir.mkdir(parents=True, exist_ok=True)
        for record_id, text in texts.items():
            self.text_path(record_id).write_text(text, encoding="utf-8")
        for record_id in stale:
            self.text_path(record_id).unlink(missing_ok=True)

    async def _remove_text(self, record_ids: Iterable[str]) -> None:
        await asyncio.to_thread(self._sync_text, {}, list(record_ids))

    # -- writes ------------------------------------------------------------

    async def store(
        self,
        document_path: str,
        chunks: Sequence[EmbeddedChunk],
        *,
        metadata: Dict[str, Any] | None = None,
    ) -> List[str]:
        """Replace every record of ``document_path`` with ``chunks``.

        Returns the new record ids. Maintenance (optimization past the
        mutation threshold, rate-limited backup, orphan cleanup) runs after
        the write has been committed and the lock released.
        """
        LOGGER.info("Storing %d chunks for %s", len(chunks), document_path)
        async with self.lock.hold():
            record_ids = await self._replace(document_path, chunks, metadata or {})
        await self._run_maintenance()
        return record_ids

    async def _replace(
        self,
        document_path: str,
        chunks: Sequence[EmbeddedChunk],
        metadata: Dict[str, Any],
    ) -> List[str]:
        await self._ensure_index()

        await self.index.begin_update()
        try:
            prefix = record_id_prefix(document_path)
            existing = [
                record.id for record in await self.index.list_items() if record.id.startswith(prefix)
            ]
            for record_id in existing:
                await self.index.delete_item(record_id)
                self.operation_count += 1
            LOGGER.debug("Deleted %d existing records for %s", len(existing), document_path)

            await asyncio.sleep(self.config.settle_delay)

            indexed_at = self._clock()
            record_ids: List[str] = []
            texts: Dict[str, str] = {}
            for position, chunk in enumerate(chunks):
                record_id = make_record_id(document_path, position)
                texts[record_id] = chunk.text or ""
                record_metadata = RecordMetadata(
                    document_id=f"{TEXT_FILES_DIR}/{sanitize_record_id(record_id)}",
                    file_path=document_path,
                    chunk_index=position,
                    heading=chunk.heading,
                    indexed_at=indexed_at,
                    extra=dict(metadata),
                )
                await self.index.insert_item(
                    VectorRecord(id=record_id, vector=list(chunk.vector), metadata=record_metadata.to_dict())
                )
                record_ids.append(record_id)
                self.operation_count += 1
            await self.index.end_update()
        except Exception:
            await self.index.cancel_update()
            LOGGER.error("Vector store update for %s failed, changes discarded", document_path)
            raise

        # Side text is only touched once the records are committed.
        stale = [record_id for record_id in existing if record_id not in texts]
        await asyncio.to_thread(self._sync_text, texts, stale)
        LOGGER.info("Stored %d records for %s", len(record_ids), document_path)
        return record_ids

    async def delete(self, record_ids: Iterable[str]) -> int:
        """Remove records by id; unknown ids are ignored."""
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return 0
        async with self.lock.hold():
            if not await self.index.is_index_created():
                return 0
            await self.index.begin_update()
            deleted = 0
            try:
                for record_id in ids:
                    if await self.index.delete_item(record_id):
                        deleted += 1
                await self.index.end_update()
            except Exception:
                await self.index.cancel_update()
                raise
            await self._remove_text(ids)
            self.operation_count += deleted
        LOGGER.info("Deleted %d records", deleted)
        return deleted

    async def search(
        self,
        vector: Sequence[float],
        query: str = "",
        k: int = 10,
        oversample: int | None = None,
    ) -> List[ScoredRecord]:
        """Nearest-neighbour candidates; ``oversample`` defaults to ``2 * k``."""
        candidates = oversample if oversample is not None else 2 * k
        LOGGER.debug("Querying %d candidates for %r", candidates, query)
        results = await self.index.query_items(vector, candidates)
        return [ScoredRecord(record=record, score=score) for record, score in results]

    # -- maintenance -------------------------------------------------------

    async def _run_maintenance(self) -> None:
        if self.operation_count >= self.config.optimization_threshold:
            LOGGER.info("Optimization threshold reached (%d operations)", self.operation_count)
            try:
                await self.optimize()
            except Exception:
                LOGGER.exception("Vector store optimization failed")

        try:
            await self.backup()
        except Exception:
            LOGGER.exception("Vector store backup failed, continuing without backup")

        try:
            await self.cleanup_orphans()
        except Exception:
            LOGGER.exception("Orphaned record cleanup failed")

    def _source_exists(self, record: VectorRecord) -> bool:
        document_path = record.metadata.get("filePath") or record.document_path
        return (self.vault_dir / document_path).exists()

    async def cleanup_orphans(self) -> CleanupStats:
        """Delete records that no cache entry references.

        A record is kept while its source file still exists (it may be
        mid-index) or while it is younger than ``max_orphan_age``.
        """
        stats = CleanupStats()
        async with self.lock.hold():
            if not await self.index.is_index_created():
                return stats

            known_ids = await self.cache.record_ids()
            records = await self.index.list_items()
            stats.total = len(records)
            now = self._clock()
            LOGGER.info(
                "Starting orphan cleanup: %d records, %d cached ids", len(records), len(known_ids)
            )

            await self.index.begin_update()
            removed: List[str] = []
            try:
                for record in records:
                    if record.id in known_ids:
                        continue
                    if self._source_exists(record):
                        LOGGER.debug("Skipping %s: file exists but is not cached yet", record.id)
                        stats.skipped += 1
                        continue

                    indexed_at = record.metadata.get("indexedAt")
                    age = now - float(indexed_at) if indexed_at is not None else 0.0
                    if age < self.config.max_orphan_age:
                        LOGGER.debug(
                            "Skipping %s: orphaned but only %.1fh old", record.id, age / 3600
                        )
                        stats.skipped += 1
                        continue

                    LOGGER.info("Removing orphaned record %s (%.1fh old)", record.id, age / 3600)
                    await self.index.delete_item(record.id)
                    removed.append(record.id)
                await self.index.end_update()
            except Exception:
                await self.index.cancel_update()
                raise
            await self._remove_text(removed)

        stats.deleted = len(removed)
        self.operation_count += stats.deleted
        LOGGER.info("Orphan cleanup finished: deleted=%d skipped=%d", stats.deleted, stats.skipped)
        return stats

    async def optimize(self) -> int:
        """Rebuild the index from a snapshot of all records."""
        async with self.lock.hold():
            if not await self.index.is_index_created():
                return 0
            records = await self.index.list_items()
            LOGGER.info("Rebuilding index with %d records", len(records))

            await self.index.create_index(delete_if_exists=True)
            await self.index.begin_update()
            try:
                for position, record in enumerate(records):
                    await self.index.insert_item(record)
                    if position % 100 == 0:
                        LOGGER.debug("Optimization progress: %d/%d", position + 1, len(records))
                await self.index.end_update()
            except Exception:
                await self.index.cancel_update()
                raise
            self.operation_count = 0

        LOGGER.info("Vector store optimization completed")
        return len(records)

    def _backup_name(self, timestamp: float) -> str:
        moment = dt.datetime.fromtimestamp(timestamp, tz=dt.timezone.utc)
        name = "backup-" + moment.strftime("%Y-%m-%dT%H-%M-%S-") + f"{moment.microsecond // 1000:03d}Z"
        candidate, suffix = name, 1
        while (self.backup_dir / candidate).exists():
            candidate = f"{name}-{suffix}"
            suffix += 1
        return candidate

    @staticmethod
    def _write_backup(backup_path: Path, files: Dict[str, str]) -> None:
        # Staged under a dot-name so a half-written folder never counts as a backup.
        staging = backup_path.with_name(f".{backup_path.name}.tmp")
        staging.mkdir(parents=True)
        try:
            for name, content in files.items():
                (staging / name).write_text(content, encoding="utf-8")
            staging.rename(backup_path)
        except OSError:
            shutil.rmtree(staging, ignore_errors=True)
            raise

    async def backup(self, *, force: bool = False) -> Path | None:
        """Snapshot the cache and all records, then prune old backups.

        Skipped (returns ``None``) when the last backup is more recent than
        ``backup_interval`` unless ``force`` is set.
        """
        now = self._clock()
        if not force and now - self.last_backup_time < self.config.backup_interval:
            LOGGER.debug("Skipping backup, last one was %.0fs ago", now - self.last_backup_time)
            return None

        async with self.lock.hold():
            cache = await self.cache.load()
            records = await self.index.list_items() if await self.index.is_index_created() else []

            backup_path = self.backup_dir / self._backup_name(now)
            files = {
                "cache.json": json.dumps(
                    {path: record.to_dict() for path, record in cache.items()}, indent=2
                ),
                "vectors.json": json.dumps(
                    [
                        {"id": record.id, "vector": record.vector, "metadata": record.metadata}
                        for record in records
                    ]
                ),
            }
            await asyncio.to_thread(self._write_backup, backup_path, files)

        self.last_backup_time = now
        LOGGER.info(
            "Backup written to %s (%d cache entries, %d records)",
            backup_path,
            len(cache),
            len(records),
        )
        self.prune_backups()
        return backup_path

    def prune_backups(self) -> List[str]:
        """Delete the oldest backups beyond ``max_backups``; returns removed names."""
        if not self.backup_dir.exists():
            return []
        backups = [
            entry
            for entry in self.backup_dir.iterdir()
            if entry.is_dir() and _BACKUP_NAME.match(entry.name)
        ]
        backups.sort(key=lambda entry: (entry.stat().st_mtime, entry.name), reverse=True)

        removed: List[str] = []
        for entry in backups[self.config.max_backups :]:
            try:
                shutil.rmtree(entry)
            except OSError as exc:
                LOGGER.error("Failed to delete backup %s: %s", entry.name, exc)
                continue
            removed.append(entry.name)
        if removed:
            LOGGER.info("Deleted %d old backups, keeping %d", len(removed), self.config.max_backups)
        return removed
