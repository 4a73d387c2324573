"""Durable single-flight ingestion queue.

File events are processed one at a time across the whole process. Events
that arrive while another is in flight wait in a FIFO queue that is mirrored
to a JSON file on every enqueue and dequeue, so a restarted process can pick
up where the previous one stopped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, List, Set

from vaultindex.embedding.encoder import Embedder
from vaultindex.errors import CacheCorruptError
from vaultindex.index.cache import Cache, ChangeCache
from vaultindex.index.storage import VectorStoreManager
from vaultindex.ingestion.chunker import chunk_document, split_frontmatter
from vaultindex.models import CacheRecord, FileEvent, QueueEntry
from vaultindex.utils.files import compute_sha256, iter_markdown_paths, relative_document_path

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexStats:
    indexed: int = 0
    touched: int = 0
    skipped: int = 0
    removed: int = 0
    failed: int = 0
    processed_files: List[str] = field(default_factory=list)

    def increment(self, status: str, path: str) -> None:
        if status == "indexed":
            self.indexed += 1
        elif status == "touched":
            self.touched += 1
        elif status == "skipped":
            self.skipped += 1
        elif status == "removed":
            self.removed += 1
        else:
            self.failed += 1
        self.processed_files.append(path)


class IngestionQueue:
    """Keeps the vector store consistent with the vault's markdown files."""

    def __init__(
        self,
        *,
        vault_dir: Path,
        queue_file: Path,
        cache: ChangeCache,
        embedder: Embedder,
        store: VectorStoreManager,
    ) -> None:
        self.vault_dir = Path(vault_dir)
        self.queue_file = Path(queue_file)
        self.cache = cache
        self.embedder = embedder
        self.store = store
        self.stats = IndexStats()
        self._pending: Deque[QueueEntry] = deque()
        self._busy = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._queue_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def pending(self) -> List[QueueEntry]:
        return list(self._pending)

    def document_path(self, path: Path | str) -> str:
        return relative_document_path(Path(path), self.vault_dir)

    def _source_path(self, path: Path | str) -> Path:
        candidate = Path(path)
        if candidate.is_absolute() or candidate.exists():
            return candidate
        return self.vault_dir / candidate

    # -- queue discipline --------------------------------------------------

    async def handle(self, event: FileEvent | str, path: Path | str) -> None:
        """Process ``event`` now, or queue it if another event is in flight."""
        entry = QueueEntry(event=FileEvent(event), file_path=str(path))
        if self._busy:
            self._pending.append(entry)
            LOGGER.info(
                "Queueing %s for %s (1 operation already in progress). Queue size: %d",
                entry.event.value,
                entry.file_path,
                len(self._pending),
            )
            await self._save_queue()
            return

        self._mark_busy()
        await self._run(entry)

    def _mark_busy(self) -> None:
        self._busy = True
        self._idle.clear()

    def _dispatch_later(self, entry: QueueEntry) -> None:
        self._mark_busy()
        task = asyncio.get_running_loop().create_task(self._run(entry))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, entry: QueueEntry) -> None:
        try:
            LOGGER.info("Processing %s for %s", entry.event.value, entry.file_path)
            status = await self._process(entry)
            self.stats.increment(status, entry.file_path)
            LOGGER.info("Finished processing %s for %s", entry.event.value, entry.file_path)
        except Exception:
            LOGGER.exception("Error processing %s for %s", entry.event.value, entry.file_path)
            self.stats.increment("failed", entry.file_path)
        finally:
            if self._pending:
                next_entry = self._pending.popleft()
                LOGGER.info(
                    "Dequeuing %s for %s to process next. Remaining in queue: %d",
                    next_entry.event.value,
                    next_entry.file_path,
                    len(self._pending),
                )
                await self._save_queue()
                self._dispatch_later(next_entry)
            else:
                self._busy = False
                self._idle.set()
                LOGGER.debug("File processing queue is empty")

    async def wait_idle(self) -> None:
        """Wait until no event is in flight and the queue is drained."""
        await self._idle.wait()

    async def recover(self) -> int:
        """Reload the durable queue after a restart and start draining it.

        Returns the number of recovered entries.
        """
        saved = await self._load_queue()
        if not saved:
            return 0

        LOGGER.info("Recovering %d queued operations", len(saved))
        self._pending.extend(saved)
        if self._busy:
            await self._save_queue()
            return len(saved)

        head = self._pending.popleft()
        await self._save_queue()
        self._dispatch_later(head)
        return len(saved)

    async def scan(self) -> int:
        """Submit an ``add`` event for every markdown file in the vault."""
        paths = list(iter_markdown_paths([self.vault_dir]))
        LOGGER.info("Processing %d markdown files in %s", len(paths), self.vault_dir)
        for path in paths:
            await self.handle(FileEvent.ADD, path)
        return len(paths)

    async def _save_queue(self) -> None:
        async with self._queue_lock:
            payload = json.dumps([entry.to_dict() for entry in self._pending])
            try:
                await asyncio.to_thread(self._write_queue, payload)
            except OSError as exc:
                LOGGER.error("Failed to save queue to %s: %s", self.queue_file, exc)

    def _write_queue(self, payload: str) -> None:
        self.queue_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.queue_file.with_name(self.queue_file.name + ".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self.queue_file)

    async def _load_queue(self) -> List[QueueEntry]:
        try:
            raw = await asyncio.to_thread(self.queue_file.read_text, encoding="utf-8")
            data = json.loads(raw)
            return [QueueEntry.from_dict(item) for item in data]
        except FileNotFoundError:
            return []
        except (OSError, ValueError, KeyError, TypeError) as exc:
            LOGGER.warning("Ignoring unreadable queue file %s: %s", self.queue_file, exc)
            return []

    # -- event handlers ----------------------------------------------------

    async def _process(self, entry: QueueEntry) -> str:
        if entry.event is FileEvent.ADD:
            return await self.process_file(entry.file_path)
        if entry.event is FileEvent.CHANGE:
            await self.remove_file(entry.file_path)
            return await self.process_file(entry.file_path)
        if entry.event is FileEvent.UNLINK:
            await self.remove_file(entry.file_path)
            return "removed"
        raise ValueError(f"Unhandled file event: {entry.event}")

    async def _load_cache(self) -> Cache:
        try:
            return await self.cache.load()
        except CacheCorruptError:
            LOGGER.exception("Change cache is unreadable, continuing with an empty cache")
            await self.cache.quarantine()
            return {}

    async def process_file(self, path: Path | str) -> str:
        """Index one document unless its content and mtime are unchanged.

        Returns ``"skipped"``, ``"touched"`` (only the mtime changed) or
        ``"indexed"``.
        """
        source = self._source_path(path)
        document_path = self.document_path(path)

        modified_time = source.stat().st_mtime
        content = source.read_bytes()
        content_hash = compute_sha256(content)

        cache = await self._load_cache()
        cached = cache.get(document_path)

        if cached and cached.content_hash == content_hash:
            if cached.modified_time == modified_time:
                LOGGER.info("Skipping %s: content and modification time match", document_path)
                return "skipped"
            LOGGER.info("Content of %s unchanged, updating modification time only", document_path)
            cached.modified_time = modified_time
            await self.cache.save(cache)
            return "touched"

        frontmatter, body = split_frontmatter(content.decode("utf-8", errors="replace"))
        chunks = chunk_document(document_path, body)
        report = await self.embedder.embed(chunks)
        record_ids = await self.store.store(document_path, report.embedded, metadata=frontmatter)

        if not report.complete:
            # Leave the hash empty so the next event re-embeds the dropped chunks.
            LOGGER.warning(
                "Indexed %s without %d chunks that failed to embed",
                document_path,
                len(report.failed),
            )
        cache[document_path] = CacheRecord(
            content_hash=content_hash if report.complete else "",
            modified_time=modified_time,
            record_ids=record_ids,
        )
        await self.cache.save(cache)

        LOGGER.info(
            "Indexed %s: %d chunks, %d records", document_path, len(chunks), len(record_ids)
        )
        return "indexed"

    async def remove_file(self, path: Path | str) -> int:
        """Drop every cache entry and vector record of one document."""
        document_path = self.document_path(path)
        cache = await self._load_cache()
        cached = cache.pop(document_path, None)

        record_ids = set(cached.record_ids) if cached else set()
        record_ids.update(await self.store.ids_for_document(document_path))
        deleted = await self.store.delete(sorted(record_ids))

        if cached is not None:
            await self.cache.save(cache)
        LOGGER.info("Removed %s (%d records)", document_path, deleted)
        return deleted
