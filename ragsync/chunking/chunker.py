"""
Document Chunker
-----------------
Splits a document's normalised markdown into overlapping character windows
and wraps each window as an IndexedChunk carrying the document's metadata.

Splitting is markdown-aware: headings, fenced code, horizontal rules and
paragraph breaks are preferred cut points, falling back to lines, words and
finally characters, so a window only breaks mid-sentence when a single
sentence exceeds chunk_size.

The document title is prepended to every window. Once a long document is
cut into windows, later windows lose the heading context; carrying the
title keeps "which document is this" visible to both the embedding model
and the chat model reading the retrieved passage.

chunk_overlap must be smaller than chunk_size; that is a configuration
invariant and is not re-checked here.
"""
from __future__ import annotations

from typing import Any, Optional

from langchain_text_splitters import Language, RecursiveCharacterTextSplitter
from loguru import logger

from ragsync.schemas import IndexedChunk


class DocumentChunker:
    """
    Usage:
        chunker = DocumentChunker(chunk_size=500, chunk_overlap=50)
        chunks = chunker.chunk(text, metadata, title="Onboarding")
    """

    def __init__(self, chunk_size: int = 500, chunk_overlap: int = 50) -> None:
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self._splitter = RecursiveCharacterTextSplitter.from_language(
            Language.MARKDOWN,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
        )

    def split_text(self, text: str) -> list[str]:
        return [segment for segment in self._splitter.split_text(text) if segment.strip()]

    def chunk(
        self,
        text: str,
        metadata: dict[str, Any],
        title: Optional[str] = None,
    ) -> list[IndexedChunk]:
        segments = self.split_text(text)
        chunks = [
            IndexedChunk(
                content=f"{title}\n\n{segment}" if title else segment,
                metadata={**metadata, "chunkOrdinal": ordinal},
            )
            for ordinal, segment in enumerate(segments)
        ]
        logger.debug(
            f"[Chunker] {metadata.get('documentId', '?')} | {len(text)} chars | "
            f"size={self.chunk_size} overlap={self.chunk_overlap} -> {len(chunks)} chunk(s)"
        )
        return chunks
