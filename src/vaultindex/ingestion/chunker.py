"""Heading-aware markdown chunking.

Every heading opens a new chunk. A chunk's text starts with the document's
breadcrumb (its path segments joined by `` > ``) and the stack of headings
enclosing it, one per line, followed by the body lines up to the next
heading. A heading closes any open heading of the same or deeper level.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, List, Tuple

import yaml

from vaultindex.models import Chunk

LOGGER = logging.getLogger(__name__)

BREADCRUMB_SEPARATOR = " > "

_HEADING = re.compile(r"^(#+)(?:\s|$)")
_FENCE = re.compile(r"^\s*(```|~~~)")
_FRONTMATTER_END = ("---", "...")


def heading_level(line: str) -> int:
    """Return the ``#`` depth of a heading line, or 0 for body text."""
    match = _HEADING.match(line)
    return len(match.group(1)) if match else 0


def breadcrumb(document_path: str) -> str:
    parts = PurePosixPath(document_path).parts
    return BREADCRUMB_SEPARATOR.join(
        part[:-3] if part.lower().endswith(".md") else part for part in parts
    )


def split_frontmatter(content: str) -> Tuple[Dict[str, Any], str]:
    """Separate a leading YAML frontmatter block from the document body.

    Returns the usable metadata fields and the remaining body. Documents
    without frontmatter, or with frontmatter that does not parse to a
    mapping, are returned unchanged with empty metadata.
    """
    lines = content.split("\n")
    if not lines or lines[0].strip() != "---":
        return {}, content

    for index in range(1, len(lines)):
        if lines[index].strip() in _FRONTMATTER_END:
            block = "\n".join(lines[1:index])
            body = "\n".join(lines[index + 1 :])
            try:
                data = yaml.safe_load(block)
            except yaml.YAMLError as exc:
                LOGGER.warning("Ignoring unparseable frontmatter: %s", exc)
                return {}, content
            if data is None:
                return {}, body
            if not isinstance(data, dict):
                LOGGER.warning("Ignoring frontmatter that is not a mapping")
                return {}, content
            return _metadata_fields(data), body

    return {}, content


def _metadata_value(value: Any) -> Any:
    if isinstance(value, (dt.date, dt.datetime)):
        return value.isoformat()
    if isinstance(value, (str, int, float, bool)):
        return value
    return None


def _metadata_fields(data: Dict[Any, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, list):
            items = [_metadata_value(item) for item in value]
            if all(item is not None for item in items):
                fields[str(key)] = items
            continue
        converted = _metadata_value(value)
        if converted is not None:
            fields[str(key)] = converted
    return fields


@dataclass
class _OpenChunk:
    heading_path: List[str]
    header: List[str]
    body: List[str] = field(default_factory=list)

    def build(self) -> Chunk:
        return Chunk(heading_path=self.heading_path, text="\n".join(self.header + self.body))


def chunk_document(document_path: str, content: str) -> List[Chunk]:
    """Split ``content`` into heading-scoped chunks in document order."""
    crumb = breadcrumb(document_path)
    prefix = [crumb] if crumb else []

    preamble = _OpenChunk(heading_path=[], header=list(prefix))
    chunks: List[_OpenChunk] = [preamble]
    stack: List[str] = []
    in_fence = False

    for line in content.split("\n"):
        if _FENCE.match(line):
            in_fence = not in_fence

        level = 0 if in_fence else heading_level(line)
        if not level:
            chunks[-1].body.append(line)
            continue

        while stack and heading_level(stack[-1]) >= level:
            stack.pop()
        stack.append(line.rstrip())
        chunks.append(_OpenChunk(heading_path=list(stack), header=prefix + stack))

    if not any(line.strip() for line in preamble.body):
        chunks.pop(0)

    LOGGER.debug("Chunked %s into %d chunks", document_path, len(chunks))
    return [chunk.build() for chunk in chunks]


def heading_of(chunk: Chunk) -> str:
    return chunk.heading_path[-1] if chunk.heading_path else ""
