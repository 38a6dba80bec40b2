"""
Native Anthropic Messages API backend.

Streams ``POST /v1/messages`` over SSE with ``httpx``.  Thinking blocks map
to reasoning spans and text blocks to text deltas.  System turns are lifted
into the top-level ``system`` field as the API requires.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from toolrelay.llm.providers.base import HTTPStreamBackend, iter_sse
from toolrelay.llm.types import Message, StreamEvent

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicBackend(HTTPStreamBackend):
    """
    Parameters
    ----------
    url:
        API root, ``"https://api.anthropic.com"`` by default.
    model:
        Claude model identifier.
    api_key:
        Sent as ``x-api-key``.
    max_output:
        Required ``max_tokens`` value.
    thinking_budget:
        When set, extended thinking is requested with this token budget.
    """

    def __init__(
        self,
        url: str = "https://api.anthropic.com",
        model: str = "claude-sonnet-4-5",
        api_key: str = "",
        max_output: int = 4096,
        thinking_budget: int | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._url = url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._max_output = max_output
        self._thinking_budget = thinking_budget

    @property
    def name(self) -> str:
        return "anthropic"

    async def stream(
        self,
        messages: list[Message],
        *,
        timeout: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        url = f"{self._url}/v1/messages"
        async for event in self._post_stream(url, self._build_body(messages), headers, timeout):
            yield event

    def _build_body(self, messages: list[Message]) -> dict:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        turns: list[dict] = []
        for m in messages:
            if m.role == "system":
                continue
            # The API rejects consecutive turns with the same role.
            if turns and turns[-1]["role"] == m.role:
                turns[-1]["content"] += "\n\n" + m.content
            else:
                turns.append({"role": m.role, "content": m.content})

        max_tokens = self._max_output
        body: dict = {
            "model": self._model,
            "messages": turns,
            "stream": True,
        }
        if system:
            body["system"] = system
        if self._thinking_budget:
            body["thinking"] = {"type": "enabled", "budget_tokens": self._thinking_budget}
            max_tokens = max(max_tokens, self._thinking_budget + 1024)
        body["max_tokens"] = max_tokens
        logger.info("REQUEST: model=%s messages=%d thinking=%s", self._model, len(turns), bool(self._thinking_budget))
        return body

    async def _parse(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        thinking_blocks: set[int] = set()
        async for _event, data_str in iter_sse(response):
            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning("Failed to parse SSE data: %s", data_str[:200])
                continue

            kind = data.get("type")
            if kind == "content_block_start":
                block = data.get("content_block") or {}
                if block.get("type") in ("thinking", "redacted_thinking"):
                    thinking_blocks.add(data.get("index", 0))
                    yield StreamEvent.reasoning_start()
                elif block.get("type") == "text" and block.get("text"):
                    yield StreamEvent.text_delta(block["text"])
            elif kind == "content_block_delta":
                delta = data.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield StreamEvent.text_delta(delta["text"])
                elif delta.get("type") == "thinking_delta" and delta.get("thinking"):
                    yield StreamEvent.reasoning_delta(delta["thinking"])
            elif kind == "content_block_stop":
                index = data.get("index", 0)
                if index in thinking_blocks:
                    thinking_blocks.discard(index)
                    yield StreamEvent.reasoning_end()
            elif kind == "message_stop":
                yield StreamEvent.finish()
                return
            elif kind == "error":
                yield StreamEvent.error(data.get("error") or data)
                return

        # Stream closed without message_stop.
        yield StreamEvent.finish()
