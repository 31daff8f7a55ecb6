"""
FAISS Vector Store
-------------------
In-process store for development, the CLI and tests.

Wraps faiss.IndexIDMap2 over IndexFlatIP (inner product == cosine similarity
after L2 normalisation) so rows can be removed by id, which the
replace-not-merge reindex needs. Scores are reported as cosine distance
(1 - similarity) so callers see the same metric as the pgvector backend.

Metadata filtering happens after the search: the flat index is scanned in
full, then rows are filtered and cut to k.

Persistence (optional, when index_dir is set):
  - FAISS index  -> <index_dir>/faiss.index
  - Chunk records -> <index_dir>/chunks.json
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from pathlib import Path
from typing import Any, Optional

import faiss
import numpy as np
from loguru import logger

from ragsync.schemas import IndexedChunk, IndexedDocumentStatus
from ragsync.utils.helpers import load_json, save_json
from ragsync.vectorstore.filters import matches


def _normalise(matrix: np.ndarray) -> np.ndarray:
    matrix = np.ascontiguousarray(np.atleast_2d(matrix), dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)  # avoid div-by-zero
    return (matrix / norms).astype(np.float32)


class FaissVectorStore:
    def __init__(self, dimensions: int = 1024, index_dir: Optional[str | Path] = None) -> None:
        self.dimensions = dimensions
        self.index_dir = Path(index_dir) if index_dir else None
        self.faiss_index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimensions))
        self.chunks: dict[int, IndexedChunk] = {}
        self._next_id = 0
        self._lock = asyncio.Lock()

    # --- Writes ---------------------------------------------------------------

    async def add_chunks(self, chunks: list[IndexedChunk], vectors: np.ndarray) -> None:
        if len(chunks) != len(vectors):
            raise ValueError(
                f"Mismatch: {len(chunks)} chunks vs {len(vectors)} embeddings"
            )
        if not chunks:
            return

        async with self._lock:
            ids = np.arange(self._next_id, self._next_id + len(chunks), dtype=np.int64)
            self.faiss_index.add_with_ids(_normalise(vectors), ids)
            for row_id, chunk in zip(ids.tolist(), chunks):
                self.chunks[row_id] = chunk
            self._next_id += len(chunks)

        logger.debug(
            f"[FaissStore] Added {len(chunks)} chunks | {self.faiss_index.ntotal} vectors"
        )

    async def delete_where(self, predicate: dict[str, Any]) -> int:
        async with self._lock:
            doomed = [
                row_id for row_id, chunk in self.chunks.items()
                if matches(chunk.metadata, predicate)
            ]
            if doomed:
                self.faiss_index.remove_ids(np.array(doomed, dtype=np.int64))
                for row_id in doomed:
                    del self.chunks[row_id]

        logger.debug(f"[FaissStore] Deleted {len(doomed)} chunks matching {predicate}")
        return len(doomed)

    # --- Reads ----------------------------------------------------------------

    async def query(
        self,
        vector: np.ndarray,
        k: int,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[tuple[IndexedChunk, float]]:
        total = self.faiss_index.ntotal
        if total == 0 or k <= 0:
            return []

        similarities, labels = self.faiss_index.search(_normalise(vector), total)
        results: list[tuple[IndexedChunk, float]] = []
        for similarity, row_id in zip(similarities[0], labels[0]):
            if row_id < 0:
                continue
            chunk = self.chunks.get(int(row_id))
            if chunk is None or not matches(chunk.metadata, filter):
                continue
            results.append((chunk, float(1.0 - similarity)))
            if len(results) >= k:
                break
        return results

    async def find_one_where(self, predicate: dict[str, Any]) -> Optional[dict[str, Any]]:
        for chunk in self.chunks.values():
            if matches(chunk.metadata, predicate):
                return dict(chunk.metadata)
        return None

    async def aggregate_documents(self, team_id: str) -> list[IndexedDocumentStatus]:
        groups: dict[tuple[Any, Any], list[IndexedChunk]] = defaultdict(list)
        for chunk in self.chunks.values():
            if chunk.team_id == team_id:
                groups[(chunk.document_id, chunk.metadata.get("documentTitle"))].append(chunk)

        rows = [
            IndexedDocumentStatus(
                document_id=document_id,
                document_title=title,
                chunks=len(members),
                updated_at=max(
                    (str(c.metadata["updatedAt"]) for c in members if c.metadata.get("updatedAt")),
                    default=None,
                ),
            )
            for (document_id, title), members in groups.items()
        ]
        rows.sort(key=lambda r: r.updated_at or "", reverse=True)
        return rows

    async def document_chunks(self, document_id: str, team_id: str) -> list[IndexedChunk]:
        found = [
            chunk for chunk in self.chunks.values()
            if chunk.document_id == document_id and chunk.team_id == team_id
        ]
        return sorted(found, key=lambda c: c.id)

    # --- Persistence ----------------------------------------------------------

    def save(self, index_dir: Optional[Path] = None) -> None:
        """Persist FAISS index + chunk records to disk."""
        index_dir = Path(index_dir or self.index_dir)
        index_dir.mkdir(parents=True, exist_ok=True)

        faiss.write_index(self.faiss_index, str(index_dir / "faiss.index"))
        save_json(
            {
                "dimensions": self.dimensions,
                "next_id": self._next_id,
                "chunks": {str(k): v.model_dump(mode="json") for k, v in self.chunks.items()},
            },
            index_dir / "chunks.json",
        )
        logger.info(
            f"[FaissStore] Saved {self.faiss_index.ntotal} vectors -> {index_dir}/"
        )

    @classmethod
    def open(cls, index_dir: str | Path, dimensions: int = 1024) -> "FaissVectorStore":
        """Load a persisted store, or start an empty one bound to ``index_dir``."""
        index_dir = Path(index_dir)
        instance = cls(dimensions=dimensions, index_dir=index_dir)
        if not (index_dir / "faiss.index").exists():
            return instance

        instance.faiss_index = faiss.read_index(str(index_dir / "faiss.index"))
        raw = load_json(index_dir / "chunks.json")
        instance.dimensions = raw["dimensions"]
        instance._next_id = raw["next_id"]
        instance.chunks = {int(k): IndexedChunk(**v) for k, v in raw["chunks"].items()}

        logger.info(
            f"[FaissStore] Loaded: {instance.faiss_index.ntotal} vectors, "
            f"{len(instance.chunks)} chunks"
        )
        return instance

    async def close(self) -> None:
        if self.index_dir is not None:
            self.save()
