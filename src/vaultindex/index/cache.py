"""Persistent change-detection cache.

Maps each indexed document path to its content hash, modification time and
the ids of the vector records produced from it. Writes are atomic: the new
content goes to ``<file>.tmp``, is read back and verified, and is renamed
into place while the previous version waits in ``<file>.bak`` in case the
swap fails.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Dict, Set

from vaultindex.errors import CacheCorruptError, CacheError
from vaultindex.models import CacheRecord

LOGGER = logging.getLogger(__name__)

Cache = Dict[str, CacheRecord]


class ChangeCache:
    """JSON-file backed cache guarded by an in-process lock."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def tmp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + ".bak")

    async def load(self) -> Cache:
        """Return the persisted cache, or an empty one if no file exists.

        Raises ``CacheCorruptError`` when the file cannot be parsed.
        """
        async with self._lock:
            return await asyncio.to_thread(self._read)

    async def save(self, cache: Cache) -> None:
        """Atomically persist ``cache``; raises ``CacheError`` on failure."""
        async with self._lock:
            await asyncio.to_thread(self._write, cache)

    async def record_ids(self) -> Set[str]:
        """All vector record ids referenced by the cache."""
        cache = await self.load()
        return {record_id for record in cache.values() for record_id in record.record_ids}

    async def quarantine(self) -> Path | None:
        """Move an unreadable cache file aside so a fresh one can be written."""
        async with self._lock:
            if not self.path.exists():
                return None
            target = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
            os.replace(self.path, target)
            LOGGER.warning("Moved unreadable cache %s to %s", self.path, target)
            return target

    def _read(self) -> Cache:
        try:
            data = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            LOGGER.info("No cache file found at %s, starting fresh", self.path)
            return {}

        try:
            raw = json.loads(data)
            if not isinstance(raw, dict):
                raise TypeError(f"expected a JSON object, got {type(raw).__name__}")
            cache = {str(path): CacheRecord.from_dict(entry) for path, entry in raw.items()}
        except (ValueError, KeyError, TypeError) as exc:
            LOGGER.error("Cache file %s is corrupt: %s", self.path, exc)
            raise CacheCorruptError(f"Cannot parse cache file {self.path}: {exc}") from exc

        LOGGER.debug("Cache loaded with %d entries", len(cache))
        return cache

    def _write(self, cache: Cache) -> None:
        payload = json.dumps(
            {path: record.to_dict() for path, record in cache.items()},
            indent=2,
            sort_keys=True,
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)

        moved_previous = False
        try:
            self.tmp_path.write_text(payload, encoding="utf-8")
            if self.tmp_path.read_text(encoding="utf-8") != payload:
                raise CacheError("Cache verification failed: written data doesn't match")

            if self.path.exists():
                os.replace(self.path, self.backup_path)
                moved_previous = True
            os.replace(self.tmp_path, self.path)
            self.backup_path.unlink(missing_ok=True)
        except (OSError, CacheError) as exc:
            if moved_previous and not self.path.exists():
                os.replace(self.backup_path, self.path)
            self.tmp_path.unlink(missing_ok=True)
            LOGGER.error("Error saving cache to %s: %s", self.path, exc)
            if isinstance(exc, CacheError):
                raise
            raise CacheError(f"Failed to save cache {self.path}: {exc}") from exc

        LOGGER.debug("Cache saved with %d entries", len(cache))
