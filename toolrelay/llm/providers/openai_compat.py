"""
OpenAI-compatible chat-completion backend.

Works with any endpoint that speaks the OpenAI ``/chat/completions`` wire
protocol -- OpenAI itself, DeepSeek, Volcengine Ark, Zhipu, Gemini's
OpenAI-compatible surface, vLLM, etc.

Reasoning text arrives as ``delta.reasoning_content`` (DeepSeek, Zhipu,
Ark) or ``delta.reasoning`` (OpenRouter-style gateways) and is turned into a
reasoning span that closes when ordinary content starts.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from toolrelay.llm.providers.base import HTTPStreamBackend, iter_sse
from toolrelay.llm.types import Message, StreamEvent

logger = logging.getLogger(__name__)


class OpenAICompatBackend(HTTPStreamBackend):
    """
    Stream-capable backend for any OpenAI-API-compatible endpoint.

    Parameters
    ----------
    url:
        Base URL of the API, e.g. ``"https://api.openai.com/v1"``.
    model:
        Model identifier sent in the ``model`` field.
    api_key:
        Bearer token.  Pass ``""`` for unauthenticated local endpoints.
    max_output:
        Sent as ``max_tokens`` when set.
    """

    def __init__(
        self,
        url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
        api_key: str = "",
        max_output: int | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._url = url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._max_output = max_output

    @property
    def name(self) -> str:
        return "openai-compat"

    async def stream(
        self,
        messages: list[Message],
        *,
        timeout: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        body = self._build_body(messages)
        url = f"{self._url}/chat/completions"
        async for event in self._post_stream(url, body, self._build_headers(), timeout):
            yield event

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _build_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_body(self, messages: list[Message]) -> dict:
        body: dict = {
            "model": self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": True,
        }
        if self._max_output:
            body["max_tokens"] = self._max_output
        logger.info("REQUEST: model=%s messages=%d url=%s", self._model, len(messages), self._url)
        return body

    # ------------------------------------------------------------------
    # Stream parsing
    # ------------------------------------------------------------------

    async def _parse(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        """
        Translate ``data:`` payloads into stream events.

        The sentinel ``data: [DONE]`` terminates the stream.  A stream that
        ends without it still gets a closing ``finish``.
        """
        in_reasoning = False
        async for _event, data_str in iter_sse(response):
            if data_str == "[DONE]":
                break
            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning("Failed to parse SSE data: %s", data_str[:200])
                continue

            if data.get("error"):
                yield StreamEvent.error(data["error"])
                return

            choices = data.get("choices")
            if not choices:
                continue
            delta = choices[0].get("delta") or {}

            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            if reasoning:
                if not in_reasoning:
                    in_reasoning = True
                    yield StreamEvent.reasoning_start()
                yield StreamEvent.reasoning_delta(reasoning)

            content = delta.get("content")
            if content:
                if in_reasoning:
                    in_reasoning = False
                    yield StreamEvent.reasoning_end()
                yield StreamEvent.text_delta(content)

        if in_reasoning:
            yield StreamEvent.reasoning_end()
        yield StreamEvent.finish()
