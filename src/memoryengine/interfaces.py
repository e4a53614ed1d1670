"""Core interfaces for the memory engine.

These interfaces define the contract that every storage backend and every
embedding generator must satisfy, so either side can be swapped without the
retrieval engine noticing.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MemoryRecord:
    """A single stored memory.

    Records are immutable once created: there is no update operation, only
    store and delete-by-hash.

    Attributes:
        content: The raw memory text.
        content_hash: SHA-256 hex digest of ``content``; the primary key.
        tags: Categorization tags, duplicates collapsed, first-seen order kept.
        memory_type: Optional free-form category label.
        metadata: String-to-string metadata, held as a read-only view over
            a private copy.
        embedding: Vector produced by the active embedding generator.
        created_at: When the memory was stored (UTC).
    """
    content: str
    content_hash: str
    tags: tuple[str, ...] = ()
    memory_type: Optional[str] = None
    metadata: Mapping[str, str] = field(default_factory=dict)
    embedding: Optional[tuple[float, ...]] = None
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def has_tags(self, tags: set[str], match_all: bool = False) -> bool:
        """Check the record's tags against a query tag set."""
        if not tags:
            return False
        own = set(self.tags)
        if match_all:
            return tags.issubset(own)
        return not own.isdisjoint(tags)

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "content": self.content,
            "content_hash": self.content_hash,
            "tags": list(self.tags),
            "memory_type": self.memory_type,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
        }
        if include_embedding:
            data["embedding"] = list(self.embedding) if self.embedding else None
        return data

    def __repr__(self) -> str:
        """Concise repr for debugging."""
        preview = self.content[:50] + "..." if len(self.content) > 50 else self.content
        return f"MemoryRecord(hash={self.content_hash[:8]}..., content='{preview}', tags={list(self.tags)})"


@dataclass(frozen=True)
class SearchResult:
    """One ranked hit from a similarity search."""
    record: MemoryRecord
    score: float

    def __repr__(self) -> str:
        return f"SearchResult(score={self.score:.3f}, hash={self.record.content_hash[:8]}...)"


@dataclass
class OperationResult:
    """Structured outcome of a retrieval-engine operation.

    ``success=False`` always carries ``error_kind`` and ``error`` so callers
    can tell "nothing found" (success with an empty payload) apart from
    "the operation could not complete".
    """
    success: bool
    content_hash: Optional[str] = None
    message: Optional[str] = None
    results: list[SearchResult] = field(default_factory=list)
    records: list[MemoryRecord] = field(default_factory=list)
    deleted: bool = False
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, kind: str, error: str, content_hash: Optional[str] = None) -> "OperationResult":
        return cls(success=False, content_hash=content_hash, error_kind=kind, error=error)

    def __repr__(self) -> str:
        if self.success:
            return f"OperationResult(success=True, hash={self.content_hash}, results={len(self.results)}, records={len(self.records)})"
        return f"OperationResult(success=False, kind={self.error_kind}, error='{self.error}')"


class IEmbeddingGenerator(ABC):
    """Interface for embedding generation.

    Instances are immutable after construction and safe to call concurrently.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable generator identifier."""
        pass

    @abstractmethod
    def dimension(self) -> int:
        """Length of every vector this generator produces."""
        pass

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Generate embedding for text.

        Raises:
            EmbeddingError: If any stage of generation fails.
        """
        pass

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        return [await self.embed(t) for t in texts]


class IStorageBackend(ABC):
    """Interface for memory persistence and retrieval.

    Every variant must rank identically: cosine similarity, descending, with
    ties broken by most recent ``created_at`` first.
    """

    async def initialize(self) -> None:
        """Prepare the backend for use. Called once at startup."""
        return None

    async def close(self) -> None:
        """Release any resources held by the backend."""
        return None

    @abstractmethod
    async def store(self, record: MemoryRecord) -> None:
        """Persist a record.

        Raises:
            DuplicateHashError: If a record with the same hash exists.
        """
        pass

    @abstractmethod
    async def get_by_hash(self, content_hash: str) -> Optional[MemoryRecord]:
        """Fetch a record by its content hash, or None."""
        pass

    @abstractmethod
    async def delete_by_hash(self, content_hash: str) -> bool:
        """Remove a record. Returns False if no such record existed."""
        pass

    @abstractmethod
    async def search_by_tag(self, tags: set[str], match_all: bool = False) -> list[MemoryRecord]:
        """Return records whose tags match the query set."""
        pass

    @abstractmethod
    async def similarity_search(self, query_vector: list[float], top_k: int) -> list[SearchResult]:
        """Return up to ``top_k`` records ranked by cosine similarity."""
        pass

    @abstractmethod
    async def record_count(self) -> int:
        """Number of stored records."""
        pass
