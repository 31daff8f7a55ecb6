"""
Chunk & Upsert Orchestrator
----------------------------
Turns a host document into a fresh chunk set in the vector store:

    published?  ->  normalise text  ->  stale?  ->  chunk + embed
        ->  delete old chunks (best effort)  ->  insert new chunks

A document's chunks are always replaced as a whole set, never merged.
Embedding happens before the delete so a provider outage leaves the old
chunks in place. A failure between delete and insert is still possible
(the two are not one transaction); it is raised to the caller, and the
document stays without chunks until the next successful or forced reindex.
"""
from __future__ import annotations

from typing import Any, Optional

from langsmith import traceable
from loguru import logger

from ragsync.chunking.chunker import DocumentChunker
from ragsync.indexing.staleness import StalenessResolver
from ragsync.providers.factory import ProviderClientFactory
from ragsync.schemas import HostDocument, IndexedChunk, utcnow
from ragsync.settings.resolver import TenantSettingsResolver
from ragsync.utils.helpers import clean_text, isoformat
from ragsync.vectorstore.base import VectorStore


def document_metadata(document: HostDocument) -> dict[str, Any]:
    """Metadata shared by every chunk of ``document``."""
    return {
        "documentId": document.id,
        "documentTitle": document.title,
        "collectionId": document.collection_id,
        "teamId": document.team_id,
        "createdById": document.created_by_id,
        "updatedAt": isoformat(document.updated_at),
        "publishedAt": isoformat(document.published_at) if document.published_at else None,
    }


class ChunkUpsertOrchestrator:
    def __init__(
        self,
        store: VectorStore,
        settings: TenantSettingsResolver,
        providers: ProviderClientFactory,
    ) -> None:
        self.store = store
        self.settings = settings
        self.providers = providers
        self.staleness = StalenessResolver(store)

    @traceable(name="reindex_document", run_type="chain")
    async def reindex(self, document: HostDocument, forced: bool = False) -> int:
        """
        Replace the indexed copy of ``document``.

        Returns the number of chunks written; 0 when the document was
        skipped (unpublished, empty or already up to date).
        """
        if not document.is_published:
            logger.info(f"[Indexer] Skipping unpublished document {document.id}")
            return 0

        text = clean_text(document.text or "")
        if not text:
            logger.info(f"[Indexer] Skipping empty document {document.id}")
            return 0

        if not forced and not await self.staleness.is_stale(document):
            logger.info(f"[Indexer] Document {document.id} is already up-to-date in vector store")
            return 0

        chunks, vectors = await self._prepare(
            text,
            document_metadata(document),
            tenant_id=document.team_id,
            title=document.title or None,
        )

        await self.remove_document(document.id)
        await self.store.add_chunks(chunks, vectors)

        logger.info(
            f"[Indexer] Indexed document {document.id} | {len(chunks)} chunks | forced={forced}"
        )
        return len(chunks)

    async def index_document(
        self,
        content: str,
        metadata: dict[str, Any],
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        """
        Chunk, embed and insert arbitrary content without touching existing chunks.

        The caller's team and user are stamped onto the metadata along with
        ``indexedAt``, so the content is visible to team-filtered retrieval
        and to the status projection.
        """
        text = clean_text(content)
        if not text:
            return 0
        tenant_id = tenant_id or metadata.get("teamId")
        metadata = {**metadata, "indexedAt": isoformat(utcnow())}
        if tenant_id:
            metadata["teamId"] = tenant_id
        if user_id:
            metadata["userId"] = user_id

        chunks, vectors = await self._prepare(
            text,
            metadata,
            tenant_id=tenant_id,
            title=metadata.get("documentTitle"),
        )
        await self.store.add_chunks(chunks, vectors)
        logger.debug(f"[Indexer] Indexed document: {metadata.get('documentId')} | {len(chunks)} chunks")
        return len(chunks)

    async def delete_document(self, document_id: str) -> int:
        """Remove every chunk of a document. Errors propagate."""
        removed = await self.store.delete_where({"documentId": document_id})
        logger.debug(f"[Indexer] Deleted document from vector store: {document_id} ({removed} chunks)")
        return removed

    async def remove_document(self, document_id: str) -> None:
        """Best-effort removal: failures are logged and never raised."""
        try:
            await self.delete_document(document_id)
            logger.info(f"[Indexer] Removed document {document_id} from vector store")
        except Exception:
            logger.exception(f"[Indexer] Failed to remove document {document_id} from vector store")

    async def find_document_metadata(self, document_id: str) -> Optional[dict[str, Any]]:
        return await self.store.find_one_where({"documentId": document_id})

    async def _prepare(
        self,
        text: str,
        metadata: dict[str, Any],
        tenant_id: Optional[str],
        title: Optional[str],
    ) -> tuple[list[IndexedChunk], Any]:
        settings = await self.settings.resolve(tenant_id)
        embedder = self.providers.embedder(settings.embedding)

        chunker = DocumentChunker(settings.chunk_size, settings.chunk_overlap)
        chunks = chunker.chunk(text, metadata, title=title)
        vectors = await embedder.embed_texts([chunk.content for chunk in chunks])
        return chunks, vectors
