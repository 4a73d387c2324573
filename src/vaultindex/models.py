"""Core vaultindex data models."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List

RECORD_ID_SEPARATOR = "::"

# Persisted metadata key -> RecordMetadata attribute
_KNOWN_METADATA_KEYS = {
    "documentId": "document_id",
    "filePath": "file_path",
    "chunkIndex": "chunk_index",
    "heading": "heading",
    "indexedAt": "indexed_at",
}


class FileEvent(str, enum.Enum):
    """Filesystem events understood by the ingestion queue."""

    ADD = "add"
    CHANGE = "change"
    UNLINK = "unlink"


@dataclass(slots=True)
class CacheRecord:
    """Change-detection state for one indexed document."""

    content_hash: str
    modified_time: float
    record_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "modified_time": self.modified_time,
            "record_ids": list(self.record_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheRecord":
        return cls(
            content_hash=str(data["content_hash"]),
            modified_time=float(data["modified_time"]),
            record_ids=[str(item) for item in data.get("record_ids", [])],
        )


@dataclass(slots=True)
class Chunk:
    """Heading-scoped segment of a document."""

    heading_path: List[str]
    text: str


@dataclass(slots=True)
class EmbeddedChunk:
    """Chunk text paired with its embedding vector."""

    vector: List[float]
    text: str
    heading: str = ""


@dataclass(slots=True)
class RecordMetadata:
    """Metadata stored with every vector record.

    Well-known fields are explicit; anything derived from document
    frontmatter lives in ``extra``. ``to_dict`` flattens both into the
    mapping persisted in the index.
    """

    document_id: str
    file_path: str
    chunk_index: int
    heading: str = ""
    indexed_at: float | None = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        attr = _KNOWN_METADATA_KEYS.get(key)
        if attr is not None:
            return getattr(self, attr)
        return self.extra.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data.update(
            {
                "documentId": self.document_id,
                "filePath": self.file_path,
                "chunkIndex": self.chunk_index,
                "heading": self.heading,
            }
        )
        if self.indexed_at is not None:
            data["indexedAt"] = self.indexed_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordMetadata":
        extra = {key: value for key, value in data.items() if key not in _KNOWN_METADATA_KEYS}
        indexed_at = data.get("indexedAt")
        return cls(
            document_id=str(data.get("documentId", "")),
            file_path=str(data.get("filePath", "")),
            chunk_index=int(data.get("chunkIndex", 0)),
            heading=str(data.get("heading", "")),
            indexed_at=float(indexed_at) if indexed_at is not None else None,
            extra=extra,
        )


@dataclass(slots=True)
class VectorRecord:
    """A single stored vector with its metadata."""

    id: str
    vector: List[float]
    metadata: Dict[str, Any]

    @property
    def document_path(self) -> str:
        return self.id.split(RECORD_ID_SEPARATOR, 1)[0]


@dataclass(slots=True)
class QueueEntry:
    """Pending event in the durable ingestion queue."""

    event: FileEvent
    file_path: str

    def to_dict(self) -> Dict[str, str]:
        return {"event": self.event.value, "filePath": self.file_path}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueEntry":
        return cls(event=FileEvent(data["event"]), file_path=str(data["filePath"]))
