"""Transformer embedding generator.

Local ONNX sentence-embedding pipeline. Four ordered stages, each of which
can fail the request on its own:

    1. tokenize     text -> input ids, attention mask, token type ids
    2. infer        token tensors -> per-token hidden states (seq x hidden)
    3. mean pool    hidden states -> one vector, weighted by attention mask
    4. normalize    pooled vector -> unit L2 norm

Usage:
    generator = TransformerEmbeddingGenerator(
        model_path="~/models/all-MiniLM-L6-v2/model.onnx",
        tokenizer_path="~/models/all-MiniLM-L6-v2/tokenizer.json",
        dimensions=384,
    )
    generator.load()
    await generator.verify_dimension()
    embedding = await generator.embed("hello world")
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np

from ..exceptions import (
    ConfigurationError,
    DegenerateEmbeddingError,
    EmptyInputError,
    InferenceError,
    TokenizationError,
)
from ..interfaces import IEmbeddingGenerator

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 256
_PROBE_TEXT = "dimension probe"


@dataclass
class TokenizedInput:
    """Model-ready token tensors, each shaped (1, sequence_length)."""
    input_ids: np.ndarray
    attention_mask: np.ndarray
    token_type_ids: np.ndarray

    @property
    def sequence_length(self) -> int:
        return int(self.input_ids.shape[1])

    def as_feeds(self) -> dict[str, np.ndarray]:
        return {
            "input_ids": self.input_ids,
            "attention_mask": self.attention_mask,
            "token_type_ids": self.token_type_ids,
        }


def mean_pool(hidden_states: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
    """Average token vectors, weighting each by its attention mask value.

    Args:
        hidden_states: Array shaped (sequence_length, hidden_size).
        attention_mask: Array shaped (sequence_length,); zeros mark padding.

    Raises:
        EmptyInputError: If the mask sums to zero.
    """
    mask = np.asarray(attention_mask, dtype=np.float64).reshape(-1)
    states = np.asarray(hidden_states, dtype=np.float64)
    if states.ndim != 2 or states.shape[0] != mask.shape[0]:
        raise InferenceError(
            f"Hidden states shape {states.shape} does not match "
            f"attention mask length {mask.shape[0]}"
        )
    total = mask.sum()
    if total <= 0:
        raise EmptyInputError("Attention mask is empty; no tokens to pool")
    return (states * mask[:, None]).sum(axis=0) / total


def l2_normalize_vector(vector: np.ndarray) -> np.ndarray:
    """Scale a vector to unit Euclidean length.

    Raises:
        DegenerateEmbeddingError: If the norm is zero or not finite.
    """
    norm = float(np.linalg.norm(vector))
    if norm == 0.0 or not np.isfinite(norm):
        raise DegenerateEmbeddingError(
            f"Cannot normalize pooled embedding with norm {norm}"
        )
    return vector / norm


class TransformerEmbeddingGenerator(IEmbeddingGenerator):
    """ONNX transformer embedding generator.

    The tokenizer and inference session are loaded once by :meth:`load` and
    are read-only afterwards, so :meth:`embed` may run concurrently. Both
    can be injected for testing; anything exposing ``encode(text)`` and
    ``get_inputs()`` / ``run(None, feeds)`` respectively will do.
    """

    def __init__(
        self,
        model_path: Optional[Union[str, Path]] = None,
        tokenizer_path: Optional[Union[str, Path]] = None,
        dimensions: int = 384,
        max_length: int = DEFAULT_MAX_LENGTH,
        tokenizer: Optional[Any] = None,
        session: Optional[Any] = None,
    ):
        if dimensions < 1:
            raise ValueError(f"Dimensions must be >= 1, got {dimensions}")
        if max_length < 2:
            raise ValueError(f"max_length must be >= 2, got {max_length}")

        self.model_path = Path(model_path).expanduser() if model_path else None
        self.tokenizer_path = Path(tokenizer_path).expanduser() if tokenizer_path else None
        self._dimensions = dimensions
        self.max_length = max_length
        self._tokenizer = tokenizer
        self._session = session
        self._input_names: Optional[set[str]] = None

    @property
    def name(self) -> str:
        return "transformer"

    def dimension(self) -> int:
        return self._dimensions

    def __repr__(self) -> str:
        return (
            f"TransformerEmbeddingGenerator(model={str(self.model_path)!r}, "
            f"dimensions={self._dimensions})"
        )

    @property
    def is_loaded(self) -> bool:
        return self._tokenizer is not None and self._session is not None

    def load(self) -> None:
        """Load tokenizer vocabulary and model graph.

        Raises:
            TokenizationError: If the tokenizer cannot be loaded.
            InferenceError: If the model graph cannot be loaded.
        """
        if self._tokenizer is None:
            self._tokenizer = self._load_tokenizer()
        if self._session is None:
            self._session = self._load_session()
        self._input_names = {i.name for i in self._session.get_inputs()}
        logger.info(
            "Transformer embedding model loaded: %s (%d dims)",
            self.model_path, self._dimensions,
        )

    def _load_tokenizer(self):
        if self.tokenizer_path is None:
            raise TokenizationError("No tokenizer path configured")
        try:
            from tokenizers import Tokenizer
        except ImportError:
            raise TokenizationError(
                "tokenizers not installed. Run: pip install 'memory-engine[transformer]'"
            )
        try:
            tokenizer = Tokenizer.from_file(str(self.tokenizer_path))
        except Exception as e:
            raise TokenizationError(
                f"Failed to load tokenizer from {self.tokenizer_path}: {e}"
            ) from e
        tokenizer.enable_truncation(max_length=self.max_length)
        tokenizer.no_padding()
        return tokenizer

    def _load_session(self):
        if self.model_path is None:
            raise InferenceError("No model path configured")
        try:
            import onnxruntime as ort
        except ImportError:
            raise InferenceError(
                "onnxruntime not installed. Run: pip install 'memory-engine[transformer]'"
            )
        try:
            return ort.InferenceSession(
                str(self.model_path), providers=["CPUExecutionProvider"]
            )
        except Exception as e:
            raise InferenceError(
                f"Failed to load model from {self.model_path}: {e}"
            ) from e

    async def verify_dimension(self) -> None:
        """Run one probe embedding and check its length.

        Raises:
            ConfigurationError: If the model output does not match
                the configured dimension, or the probe fails.
        """
        try:
            probe = await self.embed(_PROBE_TEXT)
        except Exception as e:
            raise ConfigurationError(f"Embedding model probe failed: {e}") from e
        if len(probe) != self._dimensions:
            raise ConfigurationError(
                f"Model produces {len(probe)}-dim embeddings, "
                f"configured dimension is {self._dimensions}"
            )

    async def embed(self, text: str) -> list[float]:
        """Generate a unit-length embedding for a single text."""
        return await asyncio.to_thread(self.embed_sync, text)

    def embed_sync(self, text: str) -> list[float]:
        """Run the full pipeline on the calling thread."""
        if not self.is_loaded:
            raise InferenceError("Model not loaded; call load() first")

        tokens = self.tokenize(text)
        hidden_states = self.infer(tokens)
        pooled = mean_pool(hidden_states, tokens.attention_mask[0])
        normalized = l2_normalize_vector(pooled)
        return [float(x) for x in normalized]

    def tokenize(self, text: str) -> TokenizedInput:
        """Stage 1: text to token tensors.

        Raises:
            TokenizationError: On non-string input or tokenizer failure.
        """
        if not isinstance(text, str):
            raise TokenizationError(
                f"Expected text to be str, got {type(text).__name__}"
            )
        try:
            encoding = self._tokenizer.encode(text)
            ids = list(encoding.ids)[: self.max_length]
            mask = list(encoding.attention_mask)[: self.max_length]
            type_ids = list(encoding.type_ids)[: self.max_length]
        except Exception as e:
            raise TokenizationError(f"Tokenization failed: {e}") from e

        if not (len(ids) == len(mask) == len(type_ids)):
            raise TokenizationError(
                "Tokenizer returned inconsistent ids/mask/type_ids lengths"
            )

        return TokenizedInput(
            input_ids=np.array([ids], dtype=np.int64),
            attention_mask=np.array([mask], dtype=np.int64),
            token_type_ids=np.array([type_ids], dtype=np.int64),
        )

    def infer(self, tokens: TokenizedInput) -> np.ndarray:
        """Stage 2: token tensors to a (sequence_length, hidden_size) matrix.

        Raises:
            InferenceError: If the session is missing, the runtime fails, or
                the output shape is unusable.
        """
        if self._session is None:
            raise InferenceError("Model graph not loaded")

        input_names = self._input_names
        if input_names is None:
            input_names = {i.name for i in self._session.get_inputs()}
        feeds = {k: v for k, v in tokens.as_feeds().items() if k in input_names}
        missing = input_names - set(feeds)
        if missing:
            raise InferenceError(f"Model expects unsupported inputs: {sorted(missing)}")

        try:
            outputs = self._session.run(None, feeds)
        except Exception as e:
            raise InferenceError(f"Model execution failed: {e}") from e

        if not outputs:
            raise InferenceError("Model returned no outputs")
        hidden = np.asarray(outputs[0])
        if hidden.ndim == 3:
            if hidden.shape[0] != 1:
                raise InferenceError(f"Unexpected batch size {hidden.shape[0]}")
            hidden = hidden[0]
        if hidden.ndim != 2 or hidden.shape[0] != tokens.sequence_length:
            raise InferenceError(
                f"Unexpected hidden state shape {tuple(np.asarray(outputs[0]).shape)} "
                f"for sequence length {tokens.sequence_length}"
            )
        return hidden
