"""
Core Pydantic schemas for ragsync.

Indexing and chat share these models so that what the lifecycle pipeline
writes into the vector store is exactly what retrieval and the status
projection read back.

Chunk metadata is stored with camelCase keys (``documentId``, ``teamId`` ...)
because the metadata JSON is the only carrier of document/team/collection
linkage in the persisted layout and other readers of that table expect
those names.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Enumerations ------------------------------------------------------------

class EventName(str, Enum):
    PUBLISH = "documents.publish"
    UPDATE = "documents.update"
    UPDATE_DEBOUNCED = "documents.update.debounced"
    DELETE = "documents.delete"
    ARCHIVE = "documents.archive"
    INDEX = "documents.index"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


class IndexingState(str, Enum):
    INDEXING = "indexing"
    PENDING = "pending"
    RETRYING = "retrying"
    FAILED = "failed"


# --- Host documents & lifecycle events -----------------------------------------

class HostDocument(BaseModel):
    """The host knowledge base's current view of a document."""

    id: str
    title: str = ""
    text: str = ""
    team_id: str
    collection_id: Optional[str] = None
    created_by_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
    published_at: Optional[datetime] = None

    @property
    def is_published(self) -> bool:
        return self.published_at is not None


class LifecycleEvent(BaseModel):
    """
    A document lifecycle notification emitted by the host.

    ``created_at`` is the moment the host emitted the event; a debounced copy
    keeps the original timestamp so the settle step can tell whether the
    document changed again afterwards.
    """

    name: EventName
    document_id: str
    team_id: Optional[str] = None
    collection_id: Optional[str] = None
    actor_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def force(self) -> bool:
        return bool(self.data.get("force"))

    def renamed(self, name: EventName) -> "LifecycleEvent":
        return self.model_copy(update={"name": name})


# --- Vector store records --------------------------------------------------------

class IndexedChunk(BaseModel):
    """
    A single embeddable segment of a document as stored in the vector store.

    Chunks are fungible: a reindex always replaces the full set for a
    document, so identity only matters at document granularity.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def document_id(self) -> Optional[str]:
        return self.metadata.get("documentId")

    @property
    def team_id(self) -> Optional[str]:
        return self.metadata.get("teamId")

    @property
    def collection_id(self) -> Optional[str]:
        return self.metadata.get("collectionId")

    @property
    def chunk_ordinal(self) -> Optional[int]:
        return self.metadata.get("chunkOrdinal")


class RetrievedSource(BaseModel):
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    score: float


# --- Chat ------------------------------------------------------------------------

class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class SourcesEvent(BaseModel):
    type: Literal["sources"] = "sources"
    data: list[RetrievedSource] = Field(default_factory=list)


class ChunkEvent(BaseModel):
    type: Literal["chunk"] = "chunk"
    data: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    data: str


ChatStreamEvent = Annotated[
    Union[SourcesEvent, ChunkEvent, DoneEvent, ErrorEvent],
    Field(discriminator="type"),
]


# --- Indexing status projection --------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IndexedDocumentStatus(_CamelModel):
    document_id: str
    document_title: Optional[str] = None
    chunks: int
    updated_at: Optional[str] = None
    status: Literal["indexed"] = "indexed"


class IndexingDocumentStatus(_CamelModel):
    document_id: str
    document_title: Optional[str] = None
    chunks: int = 0
    status: IndexingState
    error: Optional[str] = None


class IndexingStatus(_CamelModel):
    indexed: list[IndexedDocumentStatus] = Field(default_factory=list)
    indexing: list[IndexingDocumentStatus] = Field(default_factory=list)
