"""Testing utilities for the memory engine."""

from .fakes import (
    FakeChromaServer,
    FakeEncoding,
    FakeInferenceSession,
    FakeTokenizer,
)

__all__ = [
    "FakeChromaServer",
    "FakeEncoding",
    "FakeInferenceSession",
    "FakeTokenizer",
]
