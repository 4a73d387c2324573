"""Utility helpers for working with files."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable, Iterator
from urllib.parse import quote

from vaultindex.models import RECORD_ID_SEPARATOR

IGNORED_NAMES = frozenset({".git", ".obsidian", "node_modules", ".DS_Store"})


def iter_markdown_paths(inputs: Iterable[Path]) -> Iterator[Path]:
    """Yield markdown paths from input paths, descending into directories."""
    for item in inputs:
        if item.name in IGNORED_NAMES:
            continue
        if item.is_dir():
            for child in sorted(item.rglob("*.md")):
                relative_parts = child.relative_to(item).parts
                if any(part in IGNORED_NAMES for part in relative_parts):
                    continue
                if child.is_file():
                    yield child
        elif item.is_file() and item.suffix.lower() == ".md":
            yield item


def compute_sha256(data: bytes) -> str:
    """Compute the SHA256 hex digest of raw content."""
    return hashlib.sha256(data).hexdigest()


def relative_document_path(path: Path, root: Path) -> str:
    """Return the POSIX path of ``path`` relative to ``root``.

    Paths outside the root are kept as given, still with POSIX separators.
    """
    try:
        relative = Path(path).resolve().relative_to(Path(root).resolve())
    except ValueError:
        relative = Path(path)
    return relative.as_posix()


def make_record_id(document_path: str, chunk_index: int) -> str:
    return f"{document_path}{RECORD_ID_SEPARATOR}{chunk_index}"


def record_id_prefix(document_path: str) -> str:
    """Prefix shared by every record id of one document."""
    return f"{document_path}{RECORD_ID_SEPARATOR}"


def sanitize_record_id(record_id: str) -> str:
    """Percent-encode a record id into a single, collision-free file name."""
    return quote(record_id, safe="")
