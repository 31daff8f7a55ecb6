"""
Host document repository
-------------------------
Read-only access to the host knowledge base's documents. ragsync never edits
documents; it only needs their current state when a lifecycle event settles.
"""
from __future__ import annotations

from typing import Optional, Protocol, Sequence

import asyncpg

from ragsync.schemas import HostDocument


class DocumentRepository(Protocol):
    async def find(self, document_id: str) -> Optional[HostDocument]:
        ...

    async def find_titles(self, document_ids: Sequence[str], team_id: str) -> dict[str, str]:
        ...

    async def find_published(
        self, team_id: str, collection_id: Optional[str] = None
    ) -> list[HostDocument]:
        ...


class InMemoryDocumentRepository:
    def __init__(self, documents: Optional[Sequence[HostDocument]] = None) -> None:
        self._documents: dict[str, HostDocument] = {d.id: d for d in documents or ()}
        self.title_lookups = 0

    def put(self, document: HostDocument) -> None:
        self._documents[document.id] = document

    def remove(self, document_id: str) -> None:
        self._documents.pop(document_id, None)

    async def find(self, document_id: str) -> Optional[HostDocument]:
        return self._documents.get(document_id)

    async def find_titles(self, document_ids: Sequence[str], team_id: str) -> dict[str, str]:
        self.title_lookups += 1
        return {
            doc_id: self._documents[doc_id].title
            for doc_id in document_ids
            if doc_id in self._documents and self._documents[doc_id].team_id == team_id
        }

    async def find_published(
        self, team_id: str, collection_id: Optional[str] = None
    ) -> list[HostDocument]:
        return [
            d for d in self._documents.values()
            if d.team_id == team_id
            and d.is_published
            and (collection_id is None or d.collection_id == collection_id)
        ]


_DOCUMENT_COLUMNS = (
    'id, title, text, "teamId", "collectionId", "createdById", "updatedAt", "publishedAt"'
)


def _to_document(record: asyncpg.Record) -> HostDocument:
    return HostDocument(
        id=str(record["id"]),
        title=record["title"] or "",
        text=record["text"] or "",
        team_id=str(record["teamId"]),
        collection_id=str(record["collectionId"]) if record["collectionId"] else None,
        created_by_id=str(record["createdById"]) if record["createdById"] else None,
        updated_at=record["updatedAt"],
        published_at=record["publishedAt"],
    )


class PostgresDocumentRepository:
    """Reads the host's ``documents`` table; archived and deleted rows are invisible."""

    def __init__(self, pool: asyncpg.Pool, table_name: str = "documents") -> None:
        self._pool = pool
        self._table = table_name

    async def find(self, document_id: str) -> Optional[HostDocument]:
        async with self._pool.acquire() as conn:
            record = await conn.fetchrow(
                f'SELECT {_DOCUMENT_COLUMNS} FROM {self._table} '
                f'WHERE id = $1::uuid AND "deletedAt" IS NULL AND "archivedAt" IS NULL',
                document_id,
            )
        return _to_document(record) if record else None

    async def find_titles(self, document_ids: Sequence[str], team_id: str) -> dict[str, str]:
        if not document_ids:
            return {}
        async with self._pool.acquire() as conn:
            records = await conn.fetch(
                f'SELECT id, title FROM {self._table} '
                f'WHERE id = ANY($1::uuid[]) AND "teamId" = $2::uuid',
                list(document_ids),
                team_id,
            )
        return {str(r["id"]): r["title"] for r in records}

    async def find_published(
        self, team_id: str, collection_id: Optional[str] = None
    ) -> list[HostDocument]:
        sql = (
            f'SELECT {_DOCUMENT_COLUMNS} FROM {self._table} '
            f'WHERE "teamId" = $1::uuid AND "publishedAt" IS NOT NULL '
            f'AND "deletedAt" IS NULL AND "archivedAt" IS NULL'
        )
        params: list = [team_id]
        if collection_id:
            sql += ' AND "collectionId" = $2::uuid'
            params.append(collection_id)
        async with self._pool.acquire() as conn:
            records = await conn.fetch(sql, *params)
        return [_to_document(r) for r in records]
