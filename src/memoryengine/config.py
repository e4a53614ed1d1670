"""Engine configuration.

Resolved once at process start from environment variables, optionally
layered over a YAML file, and held unchanged for the process lifetime.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urlparse

import yaml

from .exceptions import ConfigurationError

ENV_PREFIX = "MCP_MEMORY_"
CONFIG_PATH_ENV = "MCP_MEMORY_CONFIG"
VALID_LOG_LEVELS = ("debug", "info", "warning", "error")


class StorageProviderType(Enum):
    """Available storage backends."""
    MEMORY = "memory"
    CHROMADB = "chromadb"


class EmbeddingProviderType(Enum):
    """Available embedding generators."""
    STUB = "stub"
    TRANSFORMER = "transformer"


_STORAGE_ALIASES = {
    "memory": StorageProviderType.MEMORY,
    "inmemory": StorageProviderType.MEMORY,
    "in-memory": StorageProviderType.MEMORY,
    "chromadb": StorageProviderType.CHROMADB,
    "chroma": StorageProviderType.CHROMADB,
}

_EMBEDDING_ALIASES = {
    "stub": EmbeddingProviderType.STUB,
    "dummy": EmbeddingProviderType.STUB,
    "transformer": EmbeddingProviderType.TRANSFORMER,
    "onnx": EmbeddingProviderType.TRANSFORMER,
}


def parse_storage_provider(value) -> StorageProviderType:
    if isinstance(value, StorageProviderType):
        return value
    try:
        return _STORAGE_ALIASES[str(value).strip().lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown storage backend: {value!r}. "
            f"Valid options: {', '.join(sorted(_STORAGE_ALIASES))}"
        ) from None


def parse_embedding_provider(value) -> EmbeddingProviderType:
    if isinstance(value, EmbeddingProviderType):
        return value
    try:
        return _EMBEDDING_ALIASES[str(value).strip().lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown embedding model: {value!r}. "
            f"Valid options: {', '.join(sorted(_EMBEDDING_ALIASES))}"
        ) from None


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None


def _parse_float(name: str, value: str) -> float:
    try:
        return float(value.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None


@dataclass
class StorageConfig:
    """Storage backend configuration.

    Attributes:
        provider: Which backend to use.
        url: Chroma server base URL (remote backend only).
        collection_name: Chroma collection holding the memories.
        native_search: Use Chroma's vector query; False forces the
            client-side cosine ranking.
        timeout_seconds: Per-request timeout for remote calls.
        strict_dimensions: Raise instead of skipping records whose embedding
            length differs from the query.
    """
    provider: StorageProviderType = StorageProviderType.MEMORY
    url: str = "http://localhost:8000"
    collection_name: str = "memory_collection"
    native_search: bool = True
    timeout_seconds: float = 30.0
    strict_dimensions: bool = False

    def __post_init__(self):
        self.provider = parse_storage_provider(self.provider)


@dataclass
class EmbeddingConfig:
    """Embedding generator configuration.

    Attributes:
        provider: Which generator to use.
        model_path: ONNX model file (transformer only).
        tokenizer_path: ``tokenizer.json`` file (transformer only).
        dimensions: Target embedding dimension.
        max_sequence_length: Tokenizer truncation length.
    """
    provider: EmbeddingProviderType = EmbeddingProviderType.STUB
    model_path: Optional[str] = None
    tokenizer_path: Optional[str] = None
    dimensions: int = 384
    max_sequence_length: int = 256

    def __post_init__(self):
        self.provider = parse_embedding_provider(self.provider)
        if self.model_path:
            self.model_path = str(Path(self.model_path).expanduser())
        if self.tokenizer_path:
            self.tokenizer_path = str(Path(self.tokenizer_path).expanduser())


@dataclass
class MemoryEngineConfig:
    """Full engine configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    log_level: str = "info"
    default_n_results: int = 5
    max_n_results: int = 100

    @classmethod
    def from_file(cls, path: str | Path) -> "MemoryEngineConfig":
        """Load configuration from YAML file."""
        path = Path(path).expanduser()
        if not path.exists():
            return cls()

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryEngineConfig":
        """Create configuration from dictionary."""
        storage_data = data.get("storage", {}) or {}
        embedding_data = data.get("embedding", {}) or {}

        try:
            return cls(
                storage=StorageConfig(**storage_data),
                embedding=EmbeddingConfig(**embedding_data),
                log_level=str(data.get("log_level", "info")),
                default_n_results=data.get("default_n_results", 5),
                max_n_results=data.get("max_n_results", 100),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MemoryEngineConfig":
        """Create configuration from environment variables.

        If ``MCP_MEMORY_CONFIG`` names a YAML file it is loaded first and the
        environment overrides it.
        """
        env = os.environ if environ is None else environ

        config_path = env.get(CONFIG_PATH_ENV)
        config = cls.from_file(config_path) if config_path else cls()
        storage = config.storage
        embedding = config.embedding

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value is not None and value.strip() != "" else None

        if (value := get("STORAGE_BACKEND")) is not None:
            storage.provider = parse_storage_provider(value)
        if (value := get("CHROMA_URL")) is not None:
            storage.url = value.strip()
        if (value := get("CHROMA_COLLECTION")) is not None:
            storage.collection_name = value.strip()
        if (value := get("CHROMA_NATIVE_SEARCH")) is not None:
            storage.native_search = _parse_bool("MCP_MEMORY_CHROMA_NATIVE_SEARCH", value)
        if (value := get("CHROMA_TIMEOUT")) is not None:
            storage.timeout_seconds = _parse_float("MCP_MEMORY_CHROMA_TIMEOUT", value)
        if (value := get("STRICT_DIMENSIONS")) is not None:
            storage.strict_dimensions = _parse_bool("MCP_MEMORY_STRICT_DIMENSIONS", value)

        if (value := get("EMBEDDING_MODEL")) is not None:
            embedding.provider = parse_embedding_provider(value)
        if (value := get("EMBEDDING_MODEL_PATH")) is not None:
            embedding.model_path = str(Path(value.strip()).expanduser())
        if (value := get("TOKENIZER_PATH")) is not None:
            embedding.tokenizer_path = str(Path(value.strip()).expanduser())
        if (value := get("EMBEDDING_SIZE")) is not None:
            embedding.dimensions = _parse_int("MCP_MEMORY_EMBEDDING_SIZE", value)
        if (value := get("MAX_SEQUENCE_LENGTH")) is not None:
            embedding.max_sequence_length = _parse_int("MCP_MEMORY_MAX_SEQUENCE_LENGTH", value)

        if (value := get("LOG_LEVEL")) is not None:
            config.log_level = value.strip().lower()

        return config

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        emb = self.embedding
        if isinstance(emb.dimensions, bool) or not isinstance(emb.dimensions, int) or emb.dimensions < 1:
            errors.append(f"embedding.dimensions must be a positive integer, got {emb.dimensions!r}")
        if isinstance(emb.max_sequence_length, bool) or not isinstance(emb.max_sequence_length, int) \
                or emb.max_sequence_length < 2:
            errors.append("embedding.max_sequence_length must be an integer >= 2")

        if emb.provider == EmbeddingProviderType.TRANSFORMER:
            if not emb.model_path:
                errors.append(
                    "embedding.model_path is required for the transformer model "
                    "(or set MCP_MEMORY_EMBEDDING_MODEL_PATH)"
                )
            elif not Path(emb.model_path).is_file():
                errors.append(f"embedding model file not found: {emb.model_path}")
            if not emb.tokenizer_path:
                errors.append(
                    "embedding.tokenizer_path is required for the transformer model "
                    "(or set MCP_MEMORY_TOKENIZER_PATH)"
                )
            elif not Path(emb.tokenizer_path).is_file():
                errors.append(f"tokenizer file not found: {emb.tokenizer_path}")

        if self.storage.provider == StorageProviderType.CHROMADB:
            parsed = urlparse(self.storage.url or "")
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(f"storage.url must be an HTTP(S) URL, got: {self.storage.url!r}")
            if not self.storage.collection_name:
                errors.append("storage.collection_name is required")
            if self.storage.timeout_seconds <= 0:
                errors.append("storage.timeout_seconds must be positive")

        if self.log_level.lower() not in VALID_LOG_LEVELS:
            errors.append(
                f"Invalid log_level: {self.log_level}. "
                f"Valid options: {', '.join(VALID_LOG_LEVELS)}"
            )

        if not isinstance(self.default_n_results, int) or self.default_n_results < 1:
            errors.append("default_n_results must be a positive integer")
        elif not isinstance(self.max_n_results, int) or self.max_n_results < self.default_n_results:
            errors.append("max_n_results must be an integer >= default_n_results")

        return errors

    def require_valid(self) -> None:
        """Raise ``ConfigurationError`` listing every validation error."""
        errors = self.validate()
        if errors:
            raise ConfigurationError("Configuration errors: " + "; ".join(errors))

    def to_dict(self) -> dict:
        return {
            "storage": {
                "provider": self.storage.provider.value,
                "url": self.storage.url,
                "collection_name": self.storage.collection_name,
                "native_search": self.storage.native_search,
                "timeout_seconds": self.storage.timeout_seconds,
                "strict_dimensions": self.storage.strict_dimensions,
            },
            "embedding": {
                "provider": self.embedding.provider.value,
                "model_path": self.embedding.model_path,
                "tokenizer_path": self.embedding.tokenizer_path,
                "dimensions": self.embedding.dimensions,
                "max_sequence_length": self.embedding.max_sequence_length,
            },
            "log_level": self.log_level,
            "default_n_results": self.default_n_results,
            "max_n_results": self.max_n_results,
        }


def load_env_file(path: str | Path = ".env") -> None:
    """Load a ``.env`` file into os.environ if it exists.

    Existing environment variables win over values in the file.
    """
    path = Path(path)
    if not path.is_file():
        return
    for line in path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, _, v = line.partition("=")
            k, v = k.strip(), v.strip().strip('"').strip("'")
            # Don't overwrite explicit env vars
            if k not in os.environ:
                os.environ[k] = v
