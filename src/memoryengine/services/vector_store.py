"""In-process storage backend.

Holds records in a dict keyed by content hash. Similarity search is a linear
scan, which is fine for test/dev workloads and modest corpora.
"""

import logging
from typing import Optional

from ..exceptions import BackendProtocolError, DimensionMismatchError, DuplicateHashError
from ..interfaces import IStorageBackend, MemoryRecord, SearchResult
from ..utils import ReadWriteLock, rank_by_similarity

logger = logging.getLogger(__name__)


class InMemoryStorageBackend(IStorageBackend):
    """Simple in-memory storage backend.

    All access to the record dict goes through one readers-writer lock:
    stores and deletes are exclusive, scans share the lock. Tag search
    returns records in insertion order.
    """

    def __init__(self, strict_dimensions: bool = False):
        self.strict_dimensions = strict_dimensions
        self._records: dict[str, MemoryRecord] = {}
        self._lock = ReadWriteLock()

    def __repr__(self) -> str:
        return f"InMemoryStorageBackend(records={len(self._records)})"

    async def store(self, record: MemoryRecord) -> None:
        async with self._lock.write():
            if record.content_hash in self._records:
                raise DuplicateHashError(record.content_hash)
            self._records[record.content_hash] = record
        logger.debug("Stored memory %s", record.content_hash[:12])

    async def get_by_hash(self, content_hash: str) -> Optional[MemoryRecord]:
        async with self._lock.read():
            return self._records.get(content_hash)

    async def delete_by_hash(self, content_hash: str) -> bool:
        async with self._lock.write():
            removed = self._records.pop(content_hash, None)
        return removed is not None

    async def search_by_tag(self, tags: set[str], match_all: bool = False) -> list[MemoryRecord]:
        async with self._lock.read():
            return [
                record for record in self._records.values()
                if record.has_tags(tags, match_all=match_all)
            ]

    async def similarity_search(self, query_vector: list[float], top_k: int) -> list[SearchResult]:
        if top_k <= 0:
            return []
        async with self._lock.read():
            snapshot = list(self._records.values())
        try:
            return rank_by_similarity(
                query_vector, snapshot, top_k,
                strict_dimensions=self.strict_dimensions,
            )
        except DimensionMismatchError as e:
            raise BackendProtocolError(str(e)) from e

    async def record_count(self) -> int:
        async with self._lock.read():
            return len(self._records)
