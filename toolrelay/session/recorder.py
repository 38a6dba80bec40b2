"""
Persists an exchange as it runs.

``ExchangeRecorder.callbacks()`` returns an ``ExchangeCallbacks`` that writes
tool activity to the store while the exchange runs and the final assistant
text once it ends.  Caller callbacks are chained after the recorder's own.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from toolrelay.callbacks import ExchangeCallbacks, invoke
from toolrelay.mcp.security import mask_arguments
from toolrelay.orchestrator.state import ExchangeOutcome, ExchangeResult
from toolrelay.session.events import (
    assistant_message_event,
    exchange_error_event,
    reasoning_event,
    routing_note_event,
    tool_call_request_event,
    tool_call_result_event,
    user_message_event,
)
from toolrelay.session.store import ExchangeStore
from toolrelay.types import ToolExecutionResult

logger = logging.getLogger(__name__)

# Cancelled turns with less visible text than this are dropped.
MIN_CANCELLED_TEXT = 10


class ExchangeRecorder:
    """
    Records one exchange of a conversation.

    Parameters
    ----------
    store:
        An initialised ``ExchangeStore``.
    conversation_id:
        Conversation the exchange belongs to.
    provider, model:
        What the caller asked for; routing notes record any substitution.
    min_cancelled_text:
        Cancelled exchanges whose stripped text is shorter than this are
        discarded instead of persisted.
    """

    def __init__(
        self,
        store: ExchangeStore,
        conversation_id: str,
        provider: str,
        model: str,
        *,
        min_cancelled_text: int = MIN_CANCELLED_TEXT,
    ) -> None:
        self.store = store
        self.conversation_id = conversation_id
        self.provider = provider
        self.model = model
        self.min_cancelled_text = min_cancelled_text
        self.exchange_id: str | None = None
        self.discarded = False

    async def begin(self, user_text: str) -> str:
        self.exchange_id = await self.store.begin_exchange(
            self.conversation_id, self.provider, self.model
        )
        await self.store.append_event(user_message_event(self.exchange_id, user_text))
        return self.exchange_id

    def callbacks(self, inner: ExchangeCallbacks | None = None) -> ExchangeCallbacks:
        inner = inner or ExchangeCallbacks()
        return ExchangeCallbacks(
            on_token=inner.on_token,
            on_reasoning=inner.on_reasoning,
            on_reasoning_start=inner.on_reasoning_start,
            on_reasoning_end=inner.on_reasoning_end,
            on_tool_call=_chain(self.on_tool_call, inner.on_tool_call),
            on_tool_result=_chain(self.on_tool_result, inner.on_tool_result),
            on_done=_chain(self.on_done, inner.on_done),
            on_error=_chain(self.on_error, inner.on_error),
        )

    # ------------------------------------------------------------------
    # Callback targets
    # ------------------------------------------------------------------

    def _require_exchange(self) -> str:
        if self.exchange_id is None:
            raise RuntimeError("ExchangeRecorder.begin() was not called")
        return self.exchange_id

    async def on_tool_call(self, name: str, arguments: Any) -> None:
        masked = mask_arguments(arguments) if isinstance(arguments, dict) else arguments
        await self.store.append_event(
            tool_call_request_event(self._require_exchange(), name, masked)
        )

    async def on_tool_result(self, name: str, result: ToolExecutionResult) -> None:
        await self.store.append_event(
            tool_call_result_event(self._require_exchange(), name, result)
        )

    async def on_done(self, result: ExchangeResult) -> None:
        exchange_id = self._require_exchange()
        if (
            result.outcome is ExchangeOutcome.CANCELLED
            and len(result.text.strip()) < self.min_cancelled_text
        ):
            logger.debug("Discarding cancelled exchange %s with negligible text", exchange_id)
            await self.store.discard_exchange(exchange_id)
            self.discarded = True
            return

        for note in result.diagnostics:
            await self.store.append_event(routing_note_event(exchange_id, note))
        if result.reasoning:
            await self.store.append_event(reasoning_event(exchange_id, result.reasoning))
        await self.store.append_event(
            assistant_message_event(exchange_id, result.text, model=self.model)
        )
        await self.store.finish_exchange(exchange_id, result.outcome.value, passes=result.passes)

    async def on_error(self, error: BaseException) -> None:
        exchange_id = self._require_exchange()
        await self.store.append_event(
            exchange_error_event(exchange_id, str(error), error_type=type(error).__name__)
        )
        await self.store.finish_exchange(exchange_id, "error")


def _chain(first: Callable[..., Any], second: Callable[..., Any] | None) -> Callable[..., Any]:
    async def chained(*args: Any) -> None:
        await invoke(first, *args)
        await invoke(second, *args)

    return chained
