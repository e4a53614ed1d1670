"""Memory engine service implementations."""

from .embeddings import HashEmbeddingGenerator
from .vector_store import InMemoryStorageBackend
from .chroma_store import ChromaStorageBackend
from .memory import MemoryEngine, create_memory_engine

__all__ = [
    "HashEmbeddingGenerator",
    "InMemoryStorageBackend",
    "ChromaStorageBackend",
    "MemoryEngine",
    "create_memory_engine",
]
