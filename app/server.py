"""
ragsync - Web API Server
-------------------------
FastAPI app exposing the indexing pipeline and grounded chat of a RagService.

Endpoints:
  GET  /api/health                -> backend and queue depth
  POST /api/rag.events            -> intake of a host lifecycle event
  POST /api/rag.index             -> index ad hoc content synchronously
  POST /api/rag.indexAll          -> queue every published document of a team
  POST /api/rag.delete            -> remove a document's chunks
  POST /api/rag.search            -> similarity search with distances
  POST /api/rag.chat              -> full answer + sources
  POST /api/rag.chat.stream       -> Server-Sent Events: sources, chunk*, done|error
  POST /api/rag.documents         -> indexing status projection for a team
  POST /api/rag.document.chunks   -> stored chunks of one document

Run from the project root:
    uvicorn app.server:app --reload --port 8000
"""
from __future__ import annotations

import sys
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator, Optional

# Windows cp1252 terminal fix
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

import orjson
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ragsync.errors import ConfigurationError
from ragsync.schemas import ChatMessage, ChatStreamEvent, EventName, LifecycleEvent
from ragsync.service import RagService
from ragsync.utils.logger import setup_logger

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IndexRequest(_Request):
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    team_id: Optional[str] = None
    user_id: Optional[str] = None


class IndexAllRequest(_Request):
    team_id: str
    collection_id: Optional[str] = None
    force: bool = False


class DeleteRequest(_Request):
    document_id: str


class SearchRequest(_Request):
    query: str
    k: Optional[int] = Field(default=None, ge=1, le=20)
    team_id: Optional[str] = None
    collection_ids: Optional[list[str]] = None

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Query cannot be empty")
        return v.strip()


class ChatRequest(SearchRequest):
    history: list[ChatMessage] = Field(default_factory=list)


class TeamRequest(_Request):
    team_id: str


class DocumentChunksRequest(_Request):
    document_id: str
    team_id: str


class EventRequest(_Request):
    name: EventName
    document_id: str
    team_id: Optional[str] = None
    collection_id: Optional[str] = None
    actor_id: Optional[str] = None
    created_at: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    def to_event(self) -> LifecycleEvent:
        fields = self.model_dump(exclude_none=True)
        return LifecycleEvent.model_validate(fields)


# ---------------------------------------------------------------------------
# SSE framing
# ---------------------------------------------------------------------------

def sse_frame(event: ChatStreamEvent) -> bytes:
    return b"data: " + orjson.dumps(event.model_dump(mode="json")) + b"\n\n"


async def _sse_body(
    first: ChatStreamEvent,
    stream: AsyncIterator[ChatStreamEvent],
) -> AsyncIterator[bytes]:
    # Closing the body (client disconnect) closes the chat stream and, with
    # it, the provider stream.
    async with aclosing(stream) as events:
        yield sse_frame(first)
        async for event in events:
            yield sse_frame(event)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(service: Optional[RagService] = None) -> FastAPI:
    """
    Build the API. With ``service`` given the caller keeps ownership of it;
    otherwise one is created from the environment at startup and closed at
    shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = service is None
        if owned:
            setup_logger()
            logger.info("[Server] Building RagService...")
            app.state.service = await RagService.create()
            app.state.service.start_workers()
        else:
            app.state.service = service
        logger.info("[Server] Ready")
        yield
        if owned:
            await app.state.service.close()
        logger.info("[Server] Shut down")

    app = FastAPI(
        title="ragsync API",
        description="Incremental document indexing and grounded streaming chat",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _service(request: Request) -> RagService:
        return request.app.state.service

    @app.get("/api/health")
    async def health(request: Request):
        svc = _service(request)
        return {
            "status": "ok",
            "backend": "pgvector" if svc.pool is not None else "faiss",
            "queued": {
                "events": await svc.events_queue.depth(),
                "processors": await svc.processor_queue.depth(),
            },
        }

    @app.post("/api/rag.events", status_code=202)
    async def events(body: EventRequest, request: Request):
        job = await _service(request).handle_event(body.to_event())
        return {"jobId": job.id}

    @app.post("/api/rag.index")
    async def index(body: IndexRequest, request: Request):
        if not body.content.strip():
            raise HTTPException(status_code=400, detail="Content cannot be empty")
        try:
            chunks = await _service(request).index_document(
                body.content, body.metadata, body.team_id, body.user_id
            )
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"success": True, "chunks": chunks}

    @app.post("/api/rag.indexAll")
    async def index_all(body: IndexAllRequest, request: Request):
        return await _service(request).index_all(body.team_id, body.collection_id, body.force)

    @app.post("/api/rag.delete")
    async def delete(body: DeleteRequest, request: Request):
        deleted = await _service(request).delete_document(body.document_id)
        return {"success": True, "deleted": deleted}

    @app.post("/api/rag.search")
    async def search(body: SearchRequest, request: Request):
        search_filter: dict[str, Any] = {}
        if body.team_id:
            search_filter["teamId"] = body.team_id
        if body.collection_ids:
            search_filter["collectionId"] = {"$in": body.collection_ids}
        try:
            results = await _service(request).similarity_search_with_score(
                body.query, body.k, search_filter, body.team_id
            )
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "data": [
                {"content": chunk.content, "metadata": chunk.metadata, "score": score}
                for chunk, score in results
            ]
        }

    @app.post("/api/rag.chat")
    async def chat(body: ChatRequest, request: Request):
        logger.info(f"[API] Chat | team={body.team_id} | query={body.query[:80]!r}")
        try:
            result = await _service(request).answer_question(
                body.query, body.k, body.history, body.collection_ids, body.team_id
            )
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "answer": result["answer"],
            "sources": [source.model_dump(mode="json") for source in result["sources"]],
        }

    @app.post("/api/rag.chat.stream")
    async def chat_stream(body: ChatRequest, request: Request):
        logger.info(f"[API] Chat stream | team={body.team_id} | query={body.query[:80]!r}")
        stream = _service(request).stream_answer(
            body.query, body.k, body.history, body.collection_ids, body.team_id
        )
        # Failures before the sources event surface as HTTP errors
        try:
            first = await stream.__anext__()
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return StreamingResponse(
            _sse_body(first, stream),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    @app.post("/api/rag.documents")
    async def documents(body: TeamRequest, request: Request):
        status = await _service(request).get_indexing_status(body.team_id)
        return {"data": status.model_dump(mode="json", by_alias=True)}

    @app.post("/api/rag.document.chunks")
    async def document_chunks(body: DocumentChunksRequest, request: Request):
        chunks = await _service(request).document_chunks(body.document_id, body.team_id)
        return {
            "data": [
                {"id": chunk.id, "content": chunk.content, "metadata": chunk.metadata}
                for chunk in chunks
            ]
        }

    return app


app = create_app()
