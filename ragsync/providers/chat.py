"""
Chat-completion client
-----------------------
Thin async wrapper over an OpenAI-compatible chat completions endpoint.

stream() is an async generator of text deltas. Closing it (explicitly, via
``contextlib.aclosing``, or because the consumer went away) closes the
underlying HTTP response, so an abandoned request stops consuming provider
quota. An optional ``asyncio.Event`` acts as an explicit cancel token.
"""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional, Protocol, Sequence

from langsmith import traceable
from loguru import logger
from openai import AsyncOpenAI

from ragsync.errors import ConfigurationError

Message = dict[str, str]


class ChatModel(Protocol):
    async def complete(self, messages: Sequence[Message]) -> str:
        ...

    def stream(
        self,
        messages: Sequence[Message],
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[str]:
        ...


class OpenAIChatModel:
    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        base_url: Optional[str] = None,
        temperature: float = 0.1,
        max_retries: int = 1,
    ) -> None:
        if not api_key:
            raise ConfigurationError("Chat API Key not configured")
        self.model = model
        self.temperature = temperature
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or None,
            max_retries=max_retries,
        )

    @traceable(name="chat_complete", run_type="llm")
    async def complete(self, messages: Sequence[Message]) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=list(messages),
            temperature=self.temperature,
        )
        answer = response.choices[0].message.content or ""
        if response.usage:
            logger.info(
                f"[ChatModel] Done | prompt={response.usage.prompt_tokens} "
                f"completion={response.usage.completion_tokens}"
            )
        return answer

    async def stream(
        self,
        messages: Sequence[Message],
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[str]:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=list(messages),
            temperature=self.temperature,
            stream=True,
        )
        parts = 0
        try:
            async for part in response:
                if cancel is not None and cancel.is_set():
                    logger.debug(f"[ChatModel] Stream cancelled after {parts} parts")
                    break
                parts += 1
                if not part.choices:
                    continue
                delta = part.choices[0].delta.content
                if delta:
                    yield delta
                elif parts == 1:
                    logger.warning("[ChatModel] First stream part has no content")
        finally:
            await response.close()
            logger.debug(f"[ChatModel] Stream closed | parts={parts}")

    async def close(self) -> None:
        await self._client.close()
