"""Memory engine: semantic memory storage and retrieval."""

__version__ = "0.1.0"
