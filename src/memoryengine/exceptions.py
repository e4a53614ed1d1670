"""Error taxonomy for the memory engine.

Every error carries a stable ``kind`` string that is surfaced to protocol
clients alongside the human-readable message.
"""


class MemoryEngineError(Exception):
    """Base class for all memory engine errors."""

    kind = "MemoryEngineError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ConfigurationError(MemoryEngineError):
    """Invalid configuration. Fatal at process start."""

    kind = "ConfigurationError"


class ValidationError(MemoryEngineError):
    """Malformed caller input."""

    kind = "ValidationError"


class EmbeddingError(MemoryEngineError):
    """Embedding generation failed for one request."""

    kind = "EmbeddingError"


class TokenizationError(EmbeddingError):
    kind = "TokenizationError"


class InferenceError(EmbeddingError):
    kind = "InferenceError"


class EmptyInputError(EmbeddingError):
    """Attention mask summed to zero; nothing to pool."""

    kind = "EmptyInputError"


class DegenerateEmbeddingError(EmbeddingError):
    """Pooled vector had zero norm and cannot be normalized."""

    kind = "DegenerateEmbeddingError"


class StorageError(MemoryEngineError):
    """Storage backend failed for one request."""

    kind = "StorageError"


class DuplicateHashError(StorageError):
    """A record with the same content hash is already stored."""

    kind = "DuplicateHash"

    def __init__(self, content_hash: str):
        super().__init__(f"Duplicate content hash: {content_hash}")
        self.content_hash = content_hash


class BackendUnavailableError(StorageError):
    """Remote backend could not be reached or timed out."""

    kind = "BackendUnavailable"


class BackendProtocolError(StorageError):
    """Remote backend returned an error status or a malformed response."""

    kind = "BackendProtocolError"


class RecordLookupError(StorageError):
    kind = "LookupError"


class DimensionMismatchError(ValueError):
    """Two vectors of different lengths were compared."""

    def __init__(self, left: int, right: int):
        super().__init__(f"Embedding dimensions don't match: {left} vs {right}")
        self.left = left
        self.right = right
