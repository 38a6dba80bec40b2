"""Abstract base class for model backends, plus the shared SSE plumbing."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator

import httpx

from toolrelay.llm.types import Message, StreamEvent

logger = logging.getLogger(__name__)


class Backend(ABC):
    """
    A backend streams one model response as ``StreamEvent`` objects.

    Implementations end a successful stream with exactly one ``finish``
    event.  Backend-reported failures are yielded as ``error`` events;
    transport failures may also be raised.
    """

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        *,
        timeout: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name (e.g. ``"openai-compat"``)."""
        ...


class HTTPStreamBackend(Backend):
    """
    Shared POST-and-stream logic for HTTP/SSE backends.

    Parameters
    ----------
    timeout:
        Default HTTP timeout in seconds.
    max_retries:
        Retries on 429/5xx or transport errors, only before any event has
        been yielded.
    transport:
        Optional ``httpx`` transport; tests pass ``httpx.MockTransport``.
    """

    def __init__(
        self,
        timeout: float = 120.0,
        max_retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._max_retries = max_retries
        self._transport = transport

    @abstractmethod
    def _parse(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        ...

    async def _post_stream(
        self,
        url: str,
        body: dict,
        headers: dict[str, str],
        timeout: float | None,
    ) -> AsyncIterator[StreamEvent]:
        effective_timeout = timeout or self._timeout
        for attempt in range(1 + self._max_retries):
            last_attempt = attempt == self._max_retries
            try:
                async with httpx.AsyncClient(
                    timeout=effective_timeout, transport=self._transport
                ) as client:
                    async with client.stream("POST", url, json=body, headers=headers) as response:
                        status = response.status_code
                        if (status == 429 or status >= 500) and not last_attempt:
                            # Retryable -- read body so the connection is released.
                            await response.aread()
                            logger.warning("HTTP %d from %s, retrying", status, url)
                            continue
                        if status >= 400:
                            await response.aread()
                            yield StreamEvent.error(
                                httpx.HTTPStatusError(
                                    f"HTTP {status}: {response.text[:500]}",
                                    request=response.request,
                                    response=response,
                                )
                            )
                            return

                        async for event in self._parse(response):
                            yield event
                        return
            except httpx.TransportError as exc:
                if last_attempt:
                    raise
                logger.warning("Transport error talking to %s: %s, retrying", url, exc)


async def iter_sse(response: httpx.Response) -> AsyncIterator[tuple[str | None, str]]:
    """
    Parse Server-Sent Events from the response byte stream.

    Yields ``(event_name, data)`` pairs.  Each SSE event has the form::

        event: name\\n
        data: {json}\\n\\n
    """
    buffer = ""
    event_name: str | None = None
    async for raw_bytes in response.aiter_bytes():
        buffer += raw_bytes.decode("utf-8", errors="replace")

        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            line = line.rstrip("\r")

            if not line:
                # Empty line -- SSE event boundary.
                event_name = None
                continue
            if line.startswith(":"):
                continue
            if line.startswith("event:"):
                event_name = line[len("event:"):].strip()
            elif line.startswith("data:"):
                yield event_name, line[len("data:"):].strip()

    tail = buffer.strip()
    if tail.startswith("data:"):
        yield event_name, tail[len("data:"):].strip()
