"""Hash-based embedding generator.

Deterministic stand-in for a real model: the same text always produces the
same vector, across calls and across process restarts. Texts that share
words get overlapping vectors, so similarity search still behaves sensibly
in tests and model-less environments.
"""

import hashlib
import re

from ..interfaces import IEmbeddingGenerator
from ..utils import normalize_embedding

# Each term sets this many (index, sign) slots in the vector.
SLOTS_PER_TERM = 8
MIN_WORD_LENGTH = 3

_WORD_RE = re.compile(r"\b\w+\b")


class HashEmbeddingGenerator(IEmbeddingGenerator):
    """Stub embedding generator using feature hashing.

    Every word (three characters or longer) is hashed with SHA-256 and
    scattered into ``SLOTS_PER_TERM`` signed slots; the sum is L2-normalized,
    so all components lie in [-1.0, 1.0]. Never fails.
    """

    def __init__(self, dimensions: int = 384):
        if dimensions < 1:
            raise ValueError(f"Dimensions must be >= 1, got {dimensions}")
        self._dimensions = dimensions

    @property
    def name(self) -> str:
        return "stub"

    def dimension(self) -> int:
        return self._dimensions

    def __repr__(self) -> str:
        return f"HashEmbeddingGenerator(dimensions={self._dimensions})"

    async def embed(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        return self.hash_to_embedding(text)

    def hash_to_embedding(self, text: str) -> list[float]:
        embedding = [0.0] * self._dimensions

        terms = [
            w for w in dict.fromkeys(_WORD_RE.findall(text.lower()))
            if len(w) >= MIN_WORD_LENGTH
        ]
        if not terms:
            # No usable words: fall back to the whole text so the vector is
            # still deterministic and non-zero.
            terms = [text.strip().lower()]

        for term in terms:
            self._add_term(embedding, term)

        if not any(embedding):
            # Signed slots cancelled out (only plausible at tiny dimensions).
            seed = hashlib.sha256(text.encode("utf-8")).digest()
            embedding[int.from_bytes(seed[:4], "big") % self._dimensions] = 1.0

        return normalize_embedding(embedding)

    def _add_term(self, embedding: list[float], term: str) -> None:
        digest = hashlib.sha256(term.encode("utf-8")).digest()
        for slot in range(SLOTS_PER_TERM):
            chunk = int.from_bytes(digest[slot * 4:(slot + 1) * 4], "big")
            index = chunk % self._dimensions
            sign = 1.0 if (chunk >> 31) & 1 == 0 else -1.0
            embedding[index] += sign
