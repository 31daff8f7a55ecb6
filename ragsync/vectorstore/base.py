"""Vector-similarity store capability consumed by indexing and retrieval."""
from __future__ import annotations

from typing import Any, Optional, Protocol

import numpy as np

from ragsync.schemas import IndexedChunk, IndexedDocumentStatus

MetadataFilter = dict[str, Any]


class VectorStore(Protocol):
    """
    Scores returned by query() are distances: lower means more similar.

    Filters and predicates are metadata filters (see ragsync.vectorstore.filters).
    """

    async def add_chunks(self, chunks: list[IndexedChunk], vectors: np.ndarray) -> None:
        ...

    async def delete_where(self, predicate: MetadataFilter) -> int:
        ...

    async def query(
        self,
        vector: np.ndarray,
        k: int,
        filter: Optional[MetadataFilter] = None,
    ) -> list[tuple[IndexedChunk, float]]:
        ...

    async def find_one_where(self, predicate: MetadataFilter) -> Optional[dict[str, Any]]:
        ...

    async def aggregate_documents(self, team_id: str) -> list[IndexedDocumentStatus]:
        ...

    async def document_chunks(self, document_id: str, team_id: str) -> list[IndexedChunk]:
        ...

    async def close(self) -> None:
        ...
