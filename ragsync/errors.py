"""Exception types shared across the indexing and chat paths."""
from __future__ import annotations


class RagError(Exception):
    """Base class for errors raised by ragsync."""


class ConfigurationError(RagError):
    """A provider credential or setting is missing. Never retried."""


class VectorStoreError(RagError):
    """A vector store operation failed."""
