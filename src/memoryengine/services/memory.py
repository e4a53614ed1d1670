"""Memory engine - the retrieval engine behind every protocol tool."""

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from ..exceptions import (
    ConfigurationError,
    DuplicateHashError,
    EmbeddingError,
    InferenceError,
    MemoryEngineError,
    StorageError,
    ValidationError,
)
from ..interfaces import IEmbeddingGenerator, IStorageBackend, MemoryRecord, OperationResult
from ..utils import content_hash as compute_content_hash
from ..utils import normalize_tags

logger = logging.getLogger(__name__)

DEFAULT_N_RESULTS = 5
MAX_N_RESULTS = 100


class MemoryEngine:
    """Stateless orchestrator over one embedding generator and one backend.

    Queries and stored content always go through the same generator instance,
    so every vector in a process lives in one embedding space. Engine and
    storage errors never escape: each operation returns an
    :class:`OperationResult`, failed ones carrying an error kind.

    Usage:
        engine = MemoryEngine(
            embedding_generator=HashEmbeddingGenerator(384),
            storage_backend=InMemoryStorageBackend(),
        )

        await engine.store_memory("The sky is blue", tags=["weather"])
        result = await engine.retrieve_memory("What color is the sky?")
    """

    def __init__(
        self,
        embedding_generator: IEmbeddingGenerator,
        storage_backend: IStorageBackend,
        default_n_results: int = DEFAULT_N_RESULTS,
        max_n_results: int = MAX_N_RESULTS,
    ):
        if default_n_results < 1:
            raise ValueError("default_n_results must be >= 1")
        if max_n_results < default_n_results:
            raise ValueError("max_n_results must be >= default_n_results")
        self.embedding_generator = embedding_generator
        self.storage_backend = storage_backend
        self.default_n_results = default_n_results
        self.max_n_results = max_n_results

    def __repr__(self) -> str:
        return (
            f"MemoryEngine(generator={self.embedding_generator!r}, "
            f"backend={self.storage_backend!r})"
        )

    async def close(self) -> None:
        await self.storage_backend.close()

    async def _embed(self, text: str) -> list[float]:
        embedding = await self.embedding_generator.embed(text)
        expected = self.embedding_generator.dimension()
        if len(embedding) != expected:
            raise InferenceError(
                f"Generator produced {len(embedding)}-dim embedding, expected {expected}"
            )
        return embedding

    @staticmethod
    def _failure(operation: str, error: MemoryEngineError, content_hash: Optional[str] = None) -> OperationResult:
        logger.warning("%s failed (%s): %s", operation, error.kind, error.message)
        return OperationResult.failure(error.kind, error.message, content_hash=content_hash)

    @staticmethod
    def _validate_metadata(metadata: Optional[Mapping[str, Any]]) -> dict[str, str]:
        if metadata is None:
            return {}
        if not isinstance(metadata, Mapping):
            raise ValidationError("metadata must be a mapping of string keys to string values")
        for key, value in metadata.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise ValidationError(
                    f"metadata must map strings to strings; got {key!r}: {type(value).__name__}"
                )
        return dict(metadata)

    async def store_memory(
        self,
        content: str,
        tags: Optional[Iterable[str]] = None,
        memory_type: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> OperationResult:
        """Store a new memory.

        The content hash is computed before embedding, so a duplicate is
        reported with its hash even when the backend rejects it.
        """
        if not isinstance(content, str) or not content.strip():
            return self._failure("store_memory", ValidationError("Content cannot be empty"))

        content = content.strip()
        digest = compute_content_hash(content)
        if isinstance(tags, str):
            tags = [tags]

        try:
            user_metadata = self._validate_metadata(metadata)
            embedding = await self._embed(content)
            record = MemoryRecord(
                content=content,
                content_hash=digest,
                tags=normalize_tags(tags),
                memory_type=memory_type or None,
                metadata=user_metadata,
                embedding=tuple(embedding),
                created_at=datetime.now(timezone.utc),
            )
            await self.storage_backend.store(record)
        except DuplicateHashError as e:
            logger.info("Duplicate content rejected: %s", digest[:12])
            return OperationResult(
                success=False,
                content_hash=digest,
                message="Duplicate content detected",
                error_kind=e.kind,
                error=e.message,
            )
        except (ValidationError, EmbeddingError, StorageError) as e:
            return self._failure("store_memory", e, content_hash=digest)

        return OperationResult(
            success=True,
            content_hash=digest,
            message=f"Successfully stored memory with hash: {digest}",
        )

    async def retrieve_memory(self, query: str, n_results: Optional[int] = None) -> OperationResult:
        """Semantic search: rank stored memories by similarity to ``query``.

        ``n_results`` defaults to ``default_n_results``; zero or negative
        returns an empty result and values above ``max_n_results`` are clamped.
        """
        if n_results is None:
            n_results = self.default_n_results
        if isinstance(n_results, bool) or not isinstance(n_results, int):
            return self._failure("retrieve_memory", ValidationError("n_results must be an integer"))
        if n_results <= 0:
            return OperationResult(success=True, message="No matching memories found")
        n_results = min(n_results, self.max_n_results)

        if not isinstance(query, str) or not query.strip():
            return self._failure("retrieve_memory", ValidationError("Query cannot be empty"))

        try:
            query_embedding = await self._embed(query)
            results = await self.storage_backend.similarity_search(query_embedding, n_results)
        except (EmbeddingError, StorageError) as e:
            return self._failure("retrieve_memory", e)

        message = (
            f"Found {len(results)} memories" if results else "No matching memories found"
        )
        return OperationResult(success=True, results=results, message=message)

    async def search_by_tag(self, tags: Iterable[str], match_all: bool = False) -> OperationResult:
        """Exact tag search; no embedding involved."""
        if isinstance(tags, str):
            tags = [tags]
        tag_set = set(normalize_tags(tags))
        if not tag_set:
            return self._failure("search_by_tag", ValidationError("No tags provided for search"))

        try:
            records = await self.storage_backend.search_by_tag(tag_set, match_all=bool(match_all))
        except StorageError as e:
            return self._failure("search_by_tag", e)

        message = (
            f"Found {len(records)} memories" if records
            else "No memories found with the specified tags"
        )
        return OperationResult(success=True, records=records, message=message)

    async def delete_memory(self, content_hash: str) -> OperationResult:
        """Delete by hash. An unknown hash is a successful no-op."""
        if not isinstance(content_hash, str) or not content_hash.strip():
            return self._failure("delete_memory", ValidationError("content_hash cannot be empty"))
        content_hash = content_hash.strip()

        try:
            deleted = await self.storage_backend.delete_by_hash(content_hash)
        except StorageError as e:
            return self._failure("delete_memory", e, content_hash=content_hash)

        message = (
            f"Successfully deleted memory with hash: {content_hash}" if deleted
            else f"No memory found with hash: {content_hash}"
        )
        return OperationResult(success=True, content_hash=content_hash, deleted=deleted, message=message)

    async def get_memory(self, content_hash: str) -> OperationResult:
        """Fetch one memory by hash; not found is an empty success."""
        if not isinstance(content_hash, str) or not content_hash.strip():
            return self._failure("get_memory", ValidationError("content_hash cannot be empty"))
        content_hash = content_hash.strip()

        try:
            record = await self.storage_backend.get_by_hash(content_hash)
        except StorageError as e:
            return self._failure("get_memory", e, content_hash=content_hash)

        return OperationResult(
            success=True,
            content_hash=content_hash,
            records=[record] if record else [],
            message=None if record else f"No memory found with hash: {content_hash}",
        )


def create_embedding_generator(config) -> IEmbeddingGenerator:
    """Build the embedding generator named by an ``EmbeddingConfig``.

    Raises:
        ConfigurationError: If the transformer model or tokenizer cannot load.
    """
    from ..config import EmbeddingProviderType
    from .embeddings import HashEmbeddingGenerator

    if config.provider == EmbeddingProviderType.STUB:
        return HashEmbeddingGenerator(dimensions=config.dimensions)

    from .transformer import TransformerEmbeddingGenerator

    generator = TransformerEmbeddingGenerator(
        model_path=config.model_path,
        tokenizer_path=config.tokenizer_path,
        dimensions=config.dimensions,
        max_length=config.max_sequence_length,
    )
    try:
        generator.load()
    except EmbeddingError as e:
        raise ConfigurationError(f"Embedding model failed to load: {e}") from e
    return generator


def create_storage_backend(config) -> IStorageBackend:
    """Build the storage backend named by a ``StorageConfig``."""
    from ..config import StorageProviderType
    from .vector_store import InMemoryStorageBackend

    if config.provider == StorageProviderType.MEMORY:
        return InMemoryStorageBackend(strict_dimensions=config.strict_dimensions)

    from .chroma_store import ChromaStorageBackend

    return ChromaStorageBackend(
        base_url=config.url,
        collection_name=config.collection_name,
        native_search=config.native_search,
        timeout_seconds=config.timeout_seconds,
        strict_dimensions=config.strict_dimensions,
    )


async def create_memory_engine(config) -> MemoryEngine:
    """Factory: validate config and build a ready-to-use engine.

    Everything that can fail because of configuration fails here, before the
    first request: invalid settings, unloadable models, a model whose output
    dimension disagrees with the configured one, or an unreachable remote
    backend.

    Args:
        config: A ``MemoryEngineConfig``.

    Raises:
        ConfigurationError: On any startup failure.
    """
    config.require_valid()

    generator = create_embedding_generator(config.embedding)
    verify = getattr(generator, "verify_dimension", None)
    if verify is not None:
        await verify()
    logger.info(
        "Embedding generator: %s (%d dims)", generator.name, generator.dimension()
    )

    backend = create_storage_backend(config.storage)
    try:
        await backend.initialize()
    except StorageError as e:
        await backend.close()
        raise ConfigurationError(f"Storage backend failed to initialize: {e}") from e
    logger.info("Storage backend: %r", backend)

    return MemoryEngine(
        embedding_generator=generator,
        storage_backend=backend,
        default_n_results=config.default_n_results,
        max_n_results=config.max_n_results,
    )
