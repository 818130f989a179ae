"""
Client-side chunking for document-store limits.

The store caps ``field IN (...)`` queries at a small list size and batched
writes at a fixed document count; callers with larger fan-outs split their
work with these helpers.
"""

from __future__ import annotations

from typing import Iterable, Iterator, TypeVar
from uuid import UUID

T = TypeVar("T")


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive lists of at most ``size`` items."""
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    chunk: list[T] = []
    for item in items:
        chunk.append(item)
        if len(chunk) == size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def unique(items: Iterable[T]) -> list[T]:
    """Drop duplicates, keeping first-seen order."""
    return list(dict.fromkeys(items))


def as_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def as_uuids(values: Iterable[UUID | str | None]) -> list[UUID]:
    """Normalize an id list to unique UUIDs, skipping blanks."""
    return unique(as_uuid(v) for v in values if v not in (None, ""))
