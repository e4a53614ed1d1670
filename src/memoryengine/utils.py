"""Shared utility functions for the memory engine.

Hashing and ranking live here so every storage backend produces identical
identities and identical orderings.
"""

import asyncio
import hashlib
import math
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

from .exceptions import DimensionMismatchError
from .interfaces import MemoryRecord, SearchResult


def content_hash(content: str) -> str:
    """Derive the stable identity of a memory from its content alone.

    Surrounding whitespace is ignored; everything else, including case, is
    significant.
    """
    return hashlib.sha256(content.strip().encode("utf-8")).hexdigest()


def normalize_tags(tags: Optional[Iterable[str]]) -> tuple[str, ...]:
    """Strip tags, drop empties and collapse duplicates (first one wins)."""
    if not tags:
        return ()
    seen: dict[str, None] = {}
    for tag in tags:
        cleaned = str(tag).strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return tuple(seen)


def normalize_embedding(embedding: list[float]) -> list[float]:
    """Normalize embedding to unit length for consistent similarity math.

    Returns the original embedding if it has zero magnitude.
    """
    norm = math.sqrt(sum(x * x for x in embedding))
    if norm == 0:
        return embedding
    return [x / norm for x in embedding]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Calculate cosine similarity between two embeddings.

    Zero vectors return 0.0 similarity with anything.

    Raises:
        DimensionMismatchError: If vectors have different lengths.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))

    dot_product = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return dot_product / (norm_a * norm_b)


def _ranking_key(result: SearchResult) -> tuple[float, float, str]:
    # Descending score, then most recent first, then hash for a total order.
    return (-result.score, -result.record.created_at.timestamp(), result.record.content_hash)


def sort_results(results: Iterable[SearchResult]) -> list[SearchResult]:
    """Sort hits into the canonical ranking order."""
    return sorted(results, key=_ranking_key)


def rank_by_similarity(
    query_vector: list[float],
    records: Iterable[MemoryRecord],
    top_k: int,
    strict_dimensions: bool = False,
) -> list[SearchResult]:
    """Rank records against a query vector.

    Records without an embedding, or whose embedding length differs from the
    query, are skipped. With ``strict_dimensions`` a length mismatch raises
    instead.

    Raises:
        DimensionMismatchError: Only when ``strict_dimensions`` is set.
    """
    if top_k <= 0:
        return []

    scored = []
    for record in records:
        if record.embedding is None:
            continue
        if len(record.embedding) != len(query_vector):
            if strict_dimensions:
                raise DimensionMismatchError(len(query_vector), len(record.embedding))
            continue
        scored.append(SearchResult(
            record=record,
            score=cosine_similarity(query_vector, list(record.embedding)),
        ))

    return sort_results(scored)[:top_k]


class ReadWriteLock:
    """Async readers-writer lock.

    Any number of readers may hold the lock together; a writer holds it
    alone. Waiting writers block new readers so scans cannot starve stores.
    """

    def __init__(self):
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writer_active(self) -> bool:
        return self._writer

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._writer and self._waiting_writers == 0
            )
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0
                )
            finally:
                self._waiting_writers -= 1
                if self._waiting_writers == 0:
                    self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()
