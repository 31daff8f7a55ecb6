"""
Streaming Chat Orchestrator
----------------------------
Turns a question into a grounded, streamed answer:

    tenant settings -> filtered retrieval -> sources event
        -> (no sources)  sentinel chunk -> done
        -> (sources)     system prompt + history + question
                         -> provider stream -> chunk events -> done

Event contract for one call: exactly one ``sources``, then zero or more
``chunk``, then exactly one terminal ``done`` or ``error``.

Failures before ``sources`` is emitted (settings, credentials, retrieval)
are raised to the caller. After ``sources`` the caller may already be
rendering, so failures become an in-band ``error`` event that ends the
stream.

The stream is consumer-pulled. When the consumer stops pulling and closes
the generator (client disconnect), the provider stream is closed with it.
An explicit ``cancel`` event is raced against every pull from the provider,
so a stalled provider cannot hold the stream open after cancellation.
"""
from __future__ import annotations

import asyncio
from contextlib import aclosing
from typing import Any, AsyncIterator, Optional, Sequence

from langsmith import traceable
from loguru import logger

from ragsync.config import CHAT_DEFAULT_K
from ragsync.generation.prompts import CONTEXT_SEPARATOR, NO_RELEVANT_DOCUMENTS, SYSTEM_PROMPT
from ragsync.providers.factory import ProviderClientFactory
from ragsync.retrieval.retriever import RetrievalEngine, ScoredChunk, to_sources
from ragsync.schemas import (
    ChatMessage,
    ChatStreamEvent,
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    SourcesEvent,
)
from ragsync.settings.resolver import TenantSettingsResolver


def build_filter(
    collection_ids: Optional[Sequence[str]],
    tenant_id: Optional[str],
) -> dict[str, Any]:
    search_filter: dict[str, Any] = {}
    if collection_ids:
        search_filter["collectionId"] = {"$in": list(collection_ids)}
    if tenant_id:
        search_filter["teamId"] = tenant_id
    return search_filter


def build_messages(
    question: str,
    history: Sequence[ChatMessage],
    results: list[ScoredChunk],
) -> list[dict[str, str]]:
    """System prompt with context (most relevant first), prior turns, then the question."""
    context = CONTEXT_SEPARATOR.join(chunk.content for chunk, _ in results)
    return [
        {"role": "system", "content": SYSTEM_PROMPT.format(context=context)},
        *({"role": m.role, "content": m.content} for m in history),
        {"role": "user", "content": question},
    ]


def _as_positive_int(value: Any) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


_END = object()


async def _anext(deltas: AsyncIterator[str]) -> Any:
    try:
        return await deltas.__anext__()
    except StopAsyncIteration:
        return _END


async def _next_delta(deltas: AsyncIterator[str], cancel: Optional[asyncio.Event]) -> Any:
    """
    Next delta from ``deltas``, or ``_END`` once the stream is exhausted or
    ``cancel`` is set. The pull races the cancel event: when cancel wins, the
    pending pull is cancelled, which closes the provider stream even if it
    has stalled.
    """
    if cancel is None:
        return await _anext(deltas)
    if cancel.is_set():
        return _END

    pull = asyncio.create_task(_anext(deltas))
    cancelled = asyncio.create_task(cancel.wait())
    try:
        await asyncio.wait({pull, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (pull, cancelled):
            task.cancel()
        await asyncio.gather(pull, cancelled, return_exceptions=True)

    if cancel.is_set() or pull.cancelled():
        return _END
    return pull.result()


class StreamingChatOrchestrator:
    def __init__(
        self,
        retriever: RetrievalEngine,
        settings: TenantSettingsResolver,
        providers: ProviderClientFactory,
        default_k: int = CHAT_DEFAULT_K,
    ) -> None:
        self.retriever = retriever
        self.settings = settings
        self.providers = providers
        self.default_k = default_k

    async def _prepare(
        self,
        question: str,
        k: Optional[int],
        collection_ids: Optional[Sequence[str]],
        tenant_id: Optional[str],
    ):
        overrides, settings = await self.settings.resolve_layers(tenant_id)
        effective_k = k or _as_positive_int(overrides.get("RAG_RETRIEVAL_K")) or self.default_k

        logger.debug(f"[Chat] Retrieving documents for query: {question[:50]!r} | k={effective_k}")
        results = await self.retriever.retrieve(
            question,
            k=effective_k,
            filter=build_filter(collection_ids, tenant_id),
            tenant_id=tenant_id,
            settings=settings,
        )
        # Chat credentials are only required when there is context to answer from
        chat_model = self.providers.chat_model(settings.chat) if results else None
        return chat_model, results

    async def stream_answer(
        self,
        question: str,
        k: Optional[int] = None,
        history: Sequence[ChatMessage] = (),
        collection_ids: Optional[Sequence[str]] = None,
        tenant_id: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ChatStreamEvent]:
        try:
            chat_model, results = await self._prepare(question, k, collection_ids, tenant_id)
        except Exception:
            logger.exception("[Chat] stream_answer failed before streaming")
            raise

        yield SourcesEvent(data=to_sources(results))

        if not results:
            yield ChunkEvent(data=NO_RELEVANT_DOCUMENTS)
            yield DoneEvent()
            return

        chunk_count = 0
        try:
            messages = build_messages(question, history, results)
            logger.debug(f"[Chat] Streaming response | {len(messages)} messages")
            async with aclosing(chat_model.stream(messages, cancel=cancel)) as deltas:
                while True:
                    delta = await _next_delta(deltas, cancel)
                    if delta is _END:
                        break
                    if not delta:
                        continue
                    chunk_count += 1
                    yield ChunkEvent(data=delta)
        except Exception as exc:
            logger.exception(f"[Chat] Provider stream failed after {chunk_count} chunks")
            yield ErrorEvent(data=str(exc) or exc.__class__.__name__)
            return

        if cancel is not None and cancel.is_set():
            logger.info(f"[Chat] Stream cancelled after {chunk_count} chunks")
            yield ErrorEvent(data="cancelled")
            return

        logger.debug(f"[Chat] Stream finished | chunks={chunk_count}")
        yield DoneEvent()

    @traceable(name="answer_question", run_type="chain")
    async def answer_question(
        self,
        question: str,
        k: Optional[int] = None,
        history: Sequence[ChatMessage] = (),
        collection_ids: Optional[Sequence[str]] = None,
        tenant_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Non-streaming variant: the whole answer plus its sources."""
        chat_model, results = await self._prepare(question, k, collection_ids, tenant_id)
        sources = to_sources(results)
        if not results:
            return {"answer": NO_RELEVANT_DOCUMENTS, "sources": sources}
        answer = await chat_model.complete(build_messages(question, history, results))
        return {"answer": answer, "sources": sources}
