"""Pytest fixtures for memory engine tests."""

import pytest

from memoryengine.services.chroma_store import ChromaStorageBackend
from memoryengine.services.embeddings import HashEmbeddingGenerator
from memoryengine.services.memory import MemoryEngine
from memoryengine.services.vector_store import InMemoryStorageBackend
from memoryengine.testing import FakeChromaServer


@pytest.fixture
def embedding_generator():
    """Provide a stub embedding generator."""
    return HashEmbeddingGenerator(dimensions=384)


@pytest.fixture
def memory_backend():
    """Provide an empty in-process backend."""
    return InMemoryStorageBackend()


@pytest.fixture
def memory_engine(embedding_generator, memory_backend):
    """Provide an engine over the stub generator and in-process backend."""
    return MemoryEngine(
        embedding_generator=embedding_generator,
        storage_backend=memory_backend,
    )


@pytest.fixture
def chroma_server():
    """Provide a fake Chroma HTTP server."""
    return FakeChromaServer()


@pytest.fixture
def chroma_backend(chroma_server):
    """Provide a Chroma backend wired to the fake server."""
    return ChromaStorageBackend(
        base_url="http://chroma.test",
        transport=chroma_server.transport,
    )
