"""
Orchestrator core -- drives one tool-augmented exchange with a model.

The orchestrator:
1. Resolves the (provider, model) route once per exchange
2. Opens one backend stream per pass and classifies each event
3. Forwards reasoning (when the model supports it) and ordinary text
4. Stops forwarding text once a complete ``<tool_use>`` block appears
5. Runs the requested tools and feeds their results into the next pass
6. Stops after ``max_depth`` passes, on cancellation, or when no tools are asked for
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

from toolrelay.callbacks import ExchangeCallbacks, invoke
from toolrelay.errors import (
    ExchangeCancelled,
    MissingCredential,
    RecursionLimitReached,
    StreamError,
)
from toolrelay.llm.capabilities import supports_reasoning, supports_tool_use, supports_vision
from toolrelay.llm.providers import Backend, create_backend
from toolrelay.llm.router import CredentialStore, ProviderRouter
from toolrelay.llm.tool_tags import closes_block, contains_tool_use, parse_tool_use
from toolrelay.llm.types import Message, RoutingDecision, StreamEvent, StreamEventType
from toolrelay.mcp.classifier import describe
from toolrelay.mcp.coordinator import ToolExecutionCoordinator
from toolrelay.orchestrator.state import ExchangeOutcome, ExchangeResult, PassState
from toolrelay.prompts.system import build_system_prompt

logger = logging.getLogger(__name__)

MAX_DEPTH = 3
AGGREGATE_LIMIT = 200_000
AGGREGATE_KEEP = 100_000

_REASONING_EVENTS = (
    StreamEventType.REASONING_START,
    StreamEventType.REASONING_DELTA,
    StreamEventType.REASONING_END,
)


async def _anext(stream: AsyncIterator[StreamEvent]) -> StreamEvent:
    return await stream.__anext__()


async def _until_cancelled(
    awaitable_factory: Callable[[], Awaitable[Any]],
    cancel: asyncio.Event | None,
) -> Any:
    """Await the work, abandoning it with ``ExchangeCancelled`` once *cancel* is set."""
    if cancel is None:
        return await awaitable_factory()
    if cancel.is_set():
        raise ExchangeCancelled()

    work = asyncio.ensure_future(awaitable_factory())
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()
    if work.done():
        return work.result()

    work.cancel()
    await asyncio.wait({work})
    if not work.cancelled() and work.exception() is not None:
        logger.debug("Abandoned work failed after cancellation: %s", work.exception())
    raise ExchangeCancelled()


class _Exchange:
    """Accumulators that span every pass of one ``run``."""

    def __init__(self, decision: RoutingDecision) -> None:
        self.decision = decision
        self.text: list[str] = []
        self.reasoning: list[str] = []
        self.tool_calls: list[str] = []
        self.passes = 0

    def result(self, outcome: ExchangeOutcome) -> ExchangeResult:
        return ExchangeResult(
            text="".join(self.text),
            reasoning="".join(self.reasoning),
            passes=self.passes,
            outcome=outcome,
            diagnostics=self.decision.diagnostics,
            tool_calls=list(self.tool_calls),
        )


class StreamOrchestrator:
    """
    Multi-pass streaming exchange driver.

    Parameters
    ----------
    provider : str
        Requested provider name (``openai``, ``anthropic``, ``google``...).
    model : str
        Requested model identifier.
    credentials : CredentialStore
        Source of API keys and base URLs.
    coordinator : ToolExecutionCoordinator
        Runs tool requests; ``None`` disables tool use.
    router : ProviderRouter
        Route resolver; a default router is used when omitted.
    backend_factory : callable
        Builds a ``Backend`` for the resolved route.
    max_depth : int
        Maximum number of passes in one exchange.
    aggregate_limit, aggregate_keep : int
        Once a pass's text exceeds *aggregate_limit* characters only the last
        *aggregate_keep* are retained for tool-tag scanning.
    system_prompt : str
        Caller instructions placed ahead of the tool-use grammar.
    stream_timeout : float
        HTTP timeout handed to the backend.
    """

    def __init__(
        self,
        provider: str,
        model: str,
        credentials: CredentialStore,
        coordinator: ToolExecutionCoordinator | None = None,
        *,
        router: ProviderRouter | None = None,
        backend_factory: Callable[[RoutingDecision], Backend] = create_backend,
        max_depth: int = MAX_DEPTH,
        aggregate_limit: int = AGGREGATE_LIMIT,
        aggregate_keep: int = AGGREGATE_KEEP,
        system_prompt: str | None = None,
        stream_timeout: float | None = None,
    ) -> None:
        if aggregate_keep > aggregate_limit:
            raise ValueError("aggregate_keep must not exceed aggregate_limit")
        self.provider = provider
        self.model = model
        self.credentials = credentials
        self.coordinator = coordinator
        self.router = router or ProviderRouter()
        self.backend_factory = backend_factory
        self.max_depth = max_depth
        self.aggregate_limit = aggregate_limit
        self.aggregate_keep = aggregate_keep
        self.system_prompt = system_prompt
        self.stream_timeout = stream_timeout

    async def run(
        self,
        initial_messages: Sequence[Message],
        callbacks: ExchangeCallbacks | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """
        Run one exchange, reporting everything through *callbacks*.

        Fatal errors, and any unexpected exception, reach ``on_error`` exactly
        once and suppress ``on_done``.
        Every other ending, cancellation included, fires ``on_done`` once.
        """
        callbacks = callbacks or ExchangeCallbacks()

        try:
            decision = self.router.resolve(self.provider, self.model, self.credentials)
            logger.info(
                "Exchange routed to %s/%s (%s)",
                decision.provider, decision.model_id, decision.transport.value,
            )
            backend = self.backend_factory(decision)
        except MissingCredential as exc:
            logger.error("Cannot start exchange: %s", exc)
            await invoke(callbacks.on_error, exc)
            return
        except Exception as exc:
            logger.exception("Cannot start exchange")
            await invoke(callbacks.on_error, exc)
            return

        exchange = _Exchange(decision)

        try:
            messages = await _until_cancelled(
                lambda: self._prepare_messages(list(initial_messages), decision), cancel
            )
            outcome = await self._run_passes(
                PassState(messages=messages), backend, callbacks, cancel, exchange
            )
        except ExchangeCancelled:
            logger.info("Exchange cancelled after %d pass(es)", exchange.passes)
            outcome = ExchangeOutcome.CANCELLED
        except StreamError as exc:
            logger.error("Exchange failed: %s", exc)
            await invoke(callbacks.on_error, exc)
            return
        except Exception as exc:
            logger.exception("Exchange failed unexpectedly")
            await invoke(callbacks.on_error, exc)
            return

        await invoke(callbacks.on_done, exchange.result(outcome))

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def _prepare_messages(
        self, messages: list[Message], decision: RoutingDecision
    ) -> list[Message]:
        """Prepend the tool-use system turn when tools are available."""
        tools = []
        if self.coordinator is not None and supports_tool_use(decision.provider, decision.model_id):
            tools = await self.coordinator.list_available_tools()

        base = self.system_prompt
        if messages and messages[0].role == "system":
            base = "\n\n".join(p for p in (base, messages[0].content) if p)
            messages = messages[1:]

        prompt = build_system_prompt(tools=tools, base_prompt=base)
        if prompt:
            messages = [Message(role="system", content=prompt), *messages]
        return messages

    async def _run_passes(
        self,
        state: PassState,
        backend: Backend,
        callbacks: ExchangeCallbacks,
        cancel: asyncio.Event | None,
        exchange: _Exchange,
    ) -> ExchangeOutcome:
        decision = exchange.decision
        vision = supports_vision(decision.provider, decision.model_id)

        while True:
            await self._run_pass(state, backend, callbacks, cancel, exchange)
            exchange.passes += 1

            requests = parse_tool_use(state.aggregated_text)
            if not requests or self.coordinator is None:
                return ExchangeOutcome.COMPLETED
            if state.depth >= self.max_depth:
                logger.warning("%s; finalizing with partial output", RecursionLimitReached(state.depth))
                return ExchangeOutcome.RECURSION_LIMIT

            exchange.tool_calls.extend(r.tool_name for r in requests)
            coordinator = self.coordinator
            try:
                summary = await _until_cancelled(
                    lambda: coordinator.execute(
                        requests,
                        on_tool_call=callbacks.on_tool_call,
                        on_tool_result=callbacks.on_tool_result,
                        vision=vision,
                    ),
                    cancel,
                )
            except ExchangeCancelled:
                raise
            except Exception:
                logger.exception("Tool execution failed; finalizing with partial output")
                return ExchangeOutcome.TOOL_FAILURE

            state = state.next_pass(summary)

    async def _run_pass(
        self,
        state: PassState,
        backend: Backend,
        callbacks: ExchangeCallbacks,
        cancel: asyncio.Event | None,
        exchange: _Exchange,
    ) -> None:
        decision = exchange.decision
        forward_reasoning = supports_reasoning(decision.provider, decision.model_id)
        logger.debug("Pass %d: %d message(s)", state.depth, len(state.messages))

        stream = backend.stream(state.messages, timeout=self.stream_timeout)
        try:
            while True:
                try:
                    event = await _until_cancelled(lambda: _anext(stream), cancel)
                except StopAsyncIteration:
                    return
                except (ExchangeCancelled, StreamError):
                    raise
                except Exception as exc:
                    if state.did_finish:
                        logger.warning("Ignoring transport error after finish: %s", exc)
                        return
                    raise StreamError(describe(exc), cause=exc) from exc

                if event.type is StreamEventType.ERROR:
                    if state.did_finish:
                        logger.warning("Discarding late stream error: %s", describe(event.cause))
                        continue
                    raise StreamError(describe(event.cause), cause=event.cause)

                if state.did_finish:
                    continue

                if event.type is StreamEventType.FINISH:
                    state.did_finish = True
                elif event.type is StreamEventType.TEXT_DELTA:
                    await self._on_text(state, event.text, callbacks, exchange)
                elif event.type in _REASONING_EVENTS and forward_reasoning:
                    await self._on_reasoning(event, callbacks, exchange)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _on_text(
        self,
        state: PassState,
        text: str,
        callbacks: ExchangeCallbacks,
        exchange: _Exchange,
    ) -> None:
        if not text:
            return
        state.append(text, self.aggregate_limit, self.aggregate_keep)
        if state.tool_detected:
            return

        exchange.text.append(text)
        await invoke(callbacks.on_token, text)
        if closes_block(state.aggregated_text, len(text)) and contains_tool_use(state.aggregated_text):
            logger.debug("Tool-use block detected in pass %d", state.depth)
            state.tool_detected = True

    async def _on_reasoning(
        self,
        event: StreamEvent,
        callbacks: ExchangeCallbacks,
        exchange: _Exchange,
    ) -> None:
        if event.type is StreamEventType.REASONING_START:
            await invoke(callbacks.on_reasoning_start)
        elif event.type is StreamEventType.REASONING_DELTA:
            exchange.reasoning.append(event.text)
            await invoke(callbacks.on_reasoning, event.text)
        else:
            await invoke(callbacks.on_reasoning_end)
