"""
pgvector Store
---------------
Production vector store over a single PostgreSQL table:

    id uuid | content text | metadata jsonb | vector vector(N)

Metadata is the only carrier of document/team/collection linkage; there is
no foreign key table. Similarity uses the cosine distance operator (<=>),
so lower scores are better.

Indexes (created by ensure_schema):
  - HNSW on vector (vector_cosine_ops, m=16, ef_construction=64)
  - GIN on metadata for containment filters
"""
from __future__ import annotations

import re
import uuid
from typing import Any, Optional

import asyncpg
import numpy as np
from loguru import logger

from ragsync.errors import VectorStoreError
from ragsync.schemas import IndexedChunk, IndexedDocumentStatus
from ragsync.vectorstore.filters import to_sql

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class PgVectorStore:
    def __init__(
        self,
        pool: asyncpg.Pool,
        table_name: str = "rag_vectors",
        dimensions: int = 1024,
    ) -> None:
        if not _TABLE_RE.match(table_name):
            raise ValueError(f"Invalid table name: {table_name!r}")
        self._pool = pool
        self.table = table_name
        self.dimensions = dimensions

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self.table} (
                        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
                        content text,
                        metadata jsonb,
                        vector vector({self.dimensions})
                    )
                    """
                )
                await conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {self.table}_vector_idx ON {self.table} "
                    f"USING hnsw (vector vector_cosine_ops) WITH (m = 16, ef_construction = 64)"
                )
                await conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {self.table}_metadata_idx ON {self.table} "
                    f"USING gin (metadata)"
                )
        logger.info(f"[PgVectorStore] Schema ready | table={self.table} dims={self.dimensions}")

    # --- Writes ---------------------------------------------------------------

    async def add_chunks(self, chunks: list[IndexedChunk], vectors: np.ndarray) -> None:
        if len(chunks) != len(vectors):
            raise ValueError(
                f"Mismatch: {len(chunks)} chunks vs {len(vectors)} embeddings"
            )
        if not chunks:
            return
        rows = [
            (uuid.UUID(chunk.id), chunk.content, chunk.metadata, np.asarray(vec, dtype=np.float32))
            for chunk, vec in zip(chunks, vectors)
        ]
        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    f"INSERT INTO {self.table} (id, content, metadata, vector) "
                    f"VALUES ($1, $2, $3, $4)",
                    rows,
                )
        except asyncpg.PostgresError as exc:
            raise VectorStoreError(f"Failed to insert {len(rows)} chunks: {exc}") from exc
        logger.debug(f"[PgVectorStore] Inserted {len(rows)} chunks")

    async def delete_where(self, predicate: dict[str, Any]) -> int:
        where, params = to_sql(predicate)
        if where == "TRUE":
            raise ValueError("Refusing to delete with an empty predicate")
        try:
            async with self._pool.acquire() as conn:
                status = await conn.execute(f"DELETE FROM {self.table} WHERE {where}", *params)
        except asyncpg.PostgresError as exc:
            raise VectorStoreError(f"Failed to delete chunks: {exc}") from exc
        # status is "DELETE <n>"
        return int(status.split()[-1])

    # --- Reads ----------------------------------------------------------------

    async def query(
        self,
        vector: np.ndarray,
        k: int,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[tuple[IndexedChunk, float]]:
        where, params = to_sql(filter, first_param=3)
        sql = (
            f"SELECT id, content, metadata, vector <=> $1 AS score "
            f"FROM {self.table} WHERE {where} ORDER BY score ASC LIMIT $2"
        )
        try:
            async with self._pool.acquire() as conn:
                records = await conn.fetch(sql, np.asarray(vector, dtype=np.float32), k, *params)
        except asyncpg.PostgresError as exc:
            raise VectorStoreError(f"Similarity query failed: {exc}") from exc
        return [
            (
                IndexedChunk(id=str(r["id"]), content=r["content"] or "", metadata=r["metadata"] or {}),
                float(r["score"]),
            )
            for r in records
        ]

    async def find_one_where(self, predicate: dict[str, Any]) -> Optional[dict[str, Any]]:
        where, params = to_sql(predicate)
        async with self._pool.acquire() as conn:
            metadata = await conn.fetchval(
                f"SELECT metadata FROM {self.table} WHERE {where} LIMIT 1", *params
            )
        return dict(metadata) if metadata is not None else None

    async def aggregate_documents(self, team_id: str) -> list[IndexedDocumentStatus]:
        async with self._pool.acquire() as conn:
            records = await conn.fetch(
                f"""
                SELECT
                    metadata->>'documentId' AS document_id,
                    metadata->>'documentTitle' AS document_title,
                    COUNT(*) AS chunks,
                    MAX(metadata->>'updatedAt') AS updated_at
                FROM {self.table}
                WHERE metadata->>'teamId' = $1
                GROUP BY metadata->>'documentId', metadata->>'documentTitle'
                ORDER BY MAX(metadata->>'updatedAt') DESC
                """,
                team_id,
            )
        return [
            IndexedDocumentStatus(
                document_id=r["document_id"],
                document_title=r["document_title"],
                chunks=int(r["chunks"]),
                updated_at=r["updated_at"],
            )
            for r in records
        ]

    async def document_chunks(self, document_id: str, team_id: str) -> list[IndexedChunk]:
        async with self._pool.acquire() as conn:
            records = await conn.fetch(
                f"SELECT id, content, metadata FROM {self.table} "
                f"WHERE metadata->>'documentId' = $1 AND metadata->>'teamId' = $2 "
                f"ORDER BY id",
                document_id,
                team_id,
            )
        return [
            IndexedChunk(id=str(r["id"]), content=r["content"] or "", metadata=r["metadata"] or {})
            for r in records
        ]

    async def close(self) -> None:
        # The pool is owned by RagService, which closes it
        return None
