"""
Orchestrator tests driven by mock backends and fake tool servers.
"""

from __future__ import annotations

import asyncio

import pytest

from tests.mock_backends import (
    Hang,
    MockBackend,
    Raise,
    make_text_backend,
    make_tool_backend,
    text_events,
    tool_events,
)
from tests.mock_servers import (
    FakeConnector,
    FakeCredentials,
    FakeRegistry,
    FakeSession,
    make_server,
    tool_def,
)
from toolrelay.callbacks import ExchangeCallbacks
from toolrelay.errors import MissingCredential, StreamError
from toolrelay.llm.types import Message, StreamEvent
from toolrelay.mcp.connection import ToolServerConnectionManager
from toolrelay.mcp.coordinator import ToolExecutionCoordinator
from toolrelay.orchestrator.core import StreamOrchestrator
from toolrelay.orchestrator.state import ExchangeOutcome


class Recorder:
    """Collects every callback an exchange fires."""

    def __init__(self) -> None:
        self.tokens: list[str] = []
        self.reasoning: list[str] = []
        self.reasoning_marks: list[str] = []
        self.tool_calls: list[tuple[str, object]] = []
        self.tool_results: list[tuple[str, object]] = []
        self.done: list = []
        self.errors: list[BaseException] = []

    def callbacks(self) -> ExchangeCallbacks:
        return ExchangeCallbacks(
            on_token=self.tokens.append,
            on_reasoning=self.reasoning.append,
            on_reasoning_start=lambda: self.reasoning_marks.append("start"),
            on_reasoning_end=lambda: self.reasoning_marks.append("end"),
            on_tool_call=lambda name, args: self.tool_calls.append((name, args)),
            on_tool_result=lambda name, result: self.tool_results.append((name, result)),
            on_done=self.done.append,
            on_error=self.errors.append,
        )

    @property
    def text(self) -> str:
        return "".join(self.tokens)

    @property
    def result(self):
        assert len(self.done) == 1
        return self.done[0]


class BrokenCoordinator:
    async def list_available_tools(self):
        return []

    async def execute(self, requests, **kwargs):
        raise RuntimeError("tool subsystem offline")


def _coordinator(handlers=None):
    session_factory = lambda server: FakeSession(
        tools=[tool_def("search"), tool_def("add")],
        handlers=handlers or {"search": lambda args: f"results for {args.get('q')}"},
    )
    manager = ToolServerConnectionManager(connector=FakeConnector(session_factory))
    return ToolExecutionCoordinator(manager, FakeRegistry([make_server("web")]))


def _orchestrator(backend, coordinator=None, model="gpt-4o", **kwargs):
    return StreamOrchestrator(
        "openai",
        model,
        FakeCredentials(keys={"openai": "sk-test"}),
        coordinator,
        backend_factory=lambda decision: backend,
        **kwargs,
    )


USER = [Message(role="user", content="hello")]


class TestPlainExchange:
    async def test_text_is_forwarded(self):
        backend = make_text_backend("Hello there friend")
        rec = Recorder()
        await _orchestrator(backend).run(USER, rec.callbacks())

        assert rec.text == "Hello there friend"
        assert rec.result.text == "Hello there friend"
        assert rec.result.outcome is ExchangeOutcome.COMPLETED
        assert rec.result.passes == 1
        assert rec.errors == []
        assert backend.call_count == 1
        assert backend.closed == 1

    async def test_no_system_turn_without_tools_or_prompt(self):
        backend = make_text_backend("ok")
        await _orchestrator(backend).run(USER, Recorder().callbacks())
        assert [m.role for m in backend.last_messages] == ["user"]

    async def test_system_prompt_merges_leading_system_message(self):
        backend = make_text_backend("ok")
        messages = [Message(role="system", content="Be brief."), *USER]
        await _orchestrator(backend, system_prompt="You are helpful.").run(messages)
        system = backend.last_messages[0]
        assert system.role == "system"
        assert system.content.startswith("You are helpful.\n\nBe brief.")
        assert [m.role for m in backend.last_messages] == ["system", "user"]

    async def test_tools_are_advertised(self):
        backend = make_text_backend("ok")
        await _orchestrator(backend, _coordinator()).run(USER)
        system = backend.last_messages[0].content
        assert "<name>search</name>" in system
        assert "<name>add</name>" in system

    async def test_without_callbacks(self):
        await _orchestrator(make_text_backend("quiet")).run(USER)

    async def test_failing_callback_does_not_abort(self):
        def explode(token):
            raise RuntimeError("ui gone")

        done = []
        callbacks = ExchangeCallbacks(on_token=explode, on_done=done.append)
        await _orchestrator(make_text_backend("still fine")).run(USER, callbacks)
        assert done[0].text == "still fine"

    def test_keep_larger_than_limit_rejected(self):
        with pytest.raises(ValueError):
            _orchestrator(make_text_backend("x"), aggregate_limit=10, aggregate_keep=20)


class TestToolRounds:
    async def test_tool_round_trip(self):
        backend = make_tool_backend("search", {"q": "weather"}, final_text="It is sunny.")
        rec = Recorder()
        await _orchestrator(backend, _coordinator()).run(USER, rec.callbacks())

        assert backend.call_count == 2
        assert rec.tool_calls == [("search", {"q": "weather"})]
        assert rec.tool_results[0][1].text == "results for weather"
        assert rec.result.outcome is ExchangeOutcome.COMPLETED
        assert rec.result.passes == 2
        assert rec.result.tool_calls == ["search"]
        assert rec.text.endswith("It is sunny.")

        second = backend.all_messages[1]
        assert second[-2].role == "assistant"
        assert "<tool_use>" in second[-2].content
        assert second[-1].role == "user"
        assert second[-1].content == "Here is the result of tool use `search`:\nresults for weather"

    async def test_text_after_block_is_not_forwarded(self):
        backend = MockBackend([
            tool_events("search", {"q": "x"}, prefix="Checking. ", suffix=" I will now guess wildly."),
            text_events("Answer."),
        ])
        rec = Recorder()
        await _orchestrator(backend, _coordinator()).run(USER, rec.callbacks())

        assert "guess wildly" not in rec.text
        assert rec.text.startswith("Checking. <tool_use>")
        assert "guess wildly" in backend.all_messages[1][-2].content

    async def test_recursion_limit(self):
        backend = MockBackend([tool_events("search", {"q": "again"})])
        rec = Recorder()
        await _orchestrator(backend, _coordinator()).run(USER, rec.callbacks())

        assert backend.call_count == 3
        assert len(rec.tool_calls) == 2
        assert rec.result.outcome is ExchangeOutcome.RECURSION_LIMIT
        assert rec.result.passes == 3
        assert rec.errors == []

    async def test_custom_depth(self):
        backend = MockBackend([tool_events("search", {"q": "again"})])
        rec = Recorder()
        await _orchestrator(backend, _coordinator(), max_depth=1).run(USER, rec.callbacks())
        assert backend.call_count == 1
        assert rec.tool_calls == []
        assert rec.result.outcome is ExchangeOutcome.RECURSION_LIMIT

    async def test_blocks_ignored_without_coordinator(self):
        backend = make_tool_backend("search", {"q": "x"})
        rec = Recorder()
        await _orchestrator(backend).run(USER, rec.callbacks())
        assert backend.call_count == 1
        assert rec.result.outcome is ExchangeOutcome.COMPLETED

    async def test_unknown_tool_is_reported_back(self):
        backend = make_tool_backend("teleport", {})
        rec = Recorder()
        await _orchestrator(backend, _coordinator()).run(USER, rec.callbacks())
        assert rec.tool_results[0][1].is_error
        assert "Error [not_found]" in backend.all_messages[1][-1].content
        assert rec.result.outcome is ExchangeOutcome.COMPLETED

    async def test_tool_subsystem_failure(self):
        backend = make_tool_backend("search", {"q": "x"})
        rec = Recorder()
        await _orchestrator(backend, BrokenCoordinator()).run(USER, rec.callbacks())
        assert backend.call_count == 1
        assert rec.result.outcome is ExchangeOutcome.TOOL_FAILURE
        assert rec.errors == []

    async def test_block_found_after_aggregate_trim(self):
        filler = "x" * 300
        backend = MockBackend([
            [StreamEvent.text_delta(filler), *tool_events("search", {"q": "y"})],
            text_events("Done."),
        ])
        rec = Recorder()
        orch = _orchestrator(backend, _coordinator(), aggregate_limit=250, aggregate_keep=200)
        await orch.run(USER, rec.callbacks())
        assert rec.tool_calls == [("search", {"q": "y"})]
        assert "<tool_use>" in backend.all_messages[1][-2].content
        assert len(backend.all_messages[1][-2].content) <= 250


class TestStreamErrors:
    async def test_error_before_finish_is_fatal(self):
        backend = MockBackend([[StreamEvent.text_delta("partial"), StreamEvent.error("HTTP 500: overloaded")]])
        rec = Recorder()
        await _orchestrator(backend).run(USER, rec.callbacks())

        assert len(rec.errors) == 1
        assert isinstance(rec.errors[0], StreamError)
        assert rec.done == []
        assert backend.closed == 1

    async def test_error_after_finish_is_discarded(self):
        backend = MockBackend([[*text_events("All good"), StreamEvent.error("late socket reset")]])
        rec = Recorder()
        await _orchestrator(backend).run(USER, rec.callbacks())
        assert rec.errors == []
        assert rec.result.text == "All good"

    async def test_events_after_finish_are_ignored(self):
        backend = MockBackend([[*text_events("Final"), StreamEvent.text_delta(" extra")]])
        rec = Recorder()
        await _orchestrator(backend).run(USER, rec.callbacks())
        assert rec.text == "Final"

    async def test_transport_exception_becomes_stream_error(self):
        backend = MockBackend([[StreamEvent.text_delta("a"), Raise(ConnectionError("connection reset"))]])
        rec = Recorder()
        await _orchestrator(backend).run(USER, rec.callbacks())
        assert isinstance(rec.errors[0], StreamError)
        assert isinstance(rec.errors[0].cause, ConnectionError)
        assert rec.done == []

    async def test_transport_exception_after_finish_is_ignored(self):
        backend = MockBackend([[*text_events("ok"), Raise(ConnectionError("closed"))]])
        rec = Recorder()
        await _orchestrator(backend).run(USER, rec.callbacks())
        assert rec.errors == []
        assert rec.result.outcome is ExchangeOutcome.COMPLETED

    async def test_missing_credential(self):
        backend = make_text_backend("never")
        rec = Recorder()
        orch = StreamOrchestrator(
            "anthropic", "claude-sonnet-4-5", FakeCredentials(),
            backend_factory=lambda decision: backend,
        )
        await orch.run(USER, rec.callbacks())
        assert isinstance(rec.errors[0], MissingCredential)
        assert rec.done == []
        assert backend.call_count == 0

    async def test_backend_factory_failure_reaches_on_error(self):
        def factory(decision):
            raise ValueError("unsupported transport")

        rec = Recorder()
        orch = StreamOrchestrator(
            "openai", "gpt-4o", FakeCredentials(keys={"openai": "sk-test"}),
            backend_factory=factory,
        )
        await orch.run(USER, rec.callbacks())
        assert len(rec.errors) == 1
        assert isinstance(rec.errors[0], ValueError)
        assert rec.done == []

    async def test_tool_listing_failure_reaches_on_error(self):
        class UnlistableCoordinator(BrokenCoordinator):
            async def list_available_tools(self):
                raise RuntimeError("registry unavailable")

        backend = make_text_backend("never")
        rec = Recorder()
        await _orchestrator(backend, UnlistableCoordinator()).run(USER, rec.callbacks())
        assert len(rec.errors) == 1
        assert str(rec.errors[0]) == "registry unavailable"
        assert rec.done == []
        assert backend.call_count == 0


class TestCancellation:
    async def test_cancel_mid_stream(self):
        backend = MockBackend([[StreamEvent.text_delta("Thinking about it"), Hang()]])
        rec = Recorder()
        cancel = asyncio.Event()
        task = asyncio.create_task(_orchestrator(backend).run(USER, rec.callbacks(), cancel=cancel))

        await asyncio.wait_for(backend.hanging.wait(), timeout=1)
        cancel.set()
        await asyncio.wait_for(task, timeout=1)

        assert rec.result.outcome is ExchangeOutcome.CANCELLED
        assert rec.result.text == "Thinking about it"
        assert rec.errors == []
        assert backend.closed == 1

    async def test_cancel_before_start(self):
        backend = make_text_backend("never")
        rec = Recorder()
        cancel = asyncio.Event()
        cancel.set()
        await _orchestrator(backend).run(USER, rec.callbacks(), cancel=cancel)
        assert rec.result.outcome is ExchangeOutcome.CANCELLED
        assert backend.call_count == 0

    async def test_cancel_during_tool_execution(self):
        started = asyncio.Event()

        async def slow(args):
            started.set()
            await asyncio.Event().wait()

        backend = make_tool_backend("search", {"q": "x"})
        rec = Recorder()
        cancel = asyncio.Event()
        orch = _orchestrator(backend, _coordinator({"search": slow}))
        task = asyncio.create_task(orch.run(USER, rec.callbacks(), cancel=cancel))

        await asyncio.wait_for(started.wait(), timeout=1)
        cancel.set()
        await asyncio.wait_for(task, timeout=1)

        assert rec.result.outcome is ExchangeOutcome.CANCELLED
        assert backend.call_count == 1
        assert rec.tool_results == []


class TestReasoning:
    def _events(self):
        return [
            StreamEvent.reasoning_start(),
            StreamEvent.reasoning_delta("let me "),
            StreamEvent.reasoning_delta("think"),
            StreamEvent.reasoning_end(),
            *text_events("Answer"),
        ]

    async def test_forwarded_for_reasoning_models(self):
        rec = Recorder()
        await _orchestrator(MockBackend([self._events()]), model="o3-mini").run(USER, rec.callbacks())
        assert rec.reasoning == ["let me ", "think"]
        assert rec.reasoning_marks == ["start", "end"]
        assert rec.result.reasoning == "let me think"
        assert rec.text == "Answer"

    async def test_dropped_for_plain_models(self):
        rec = Recorder()
        await _orchestrator(MockBackend([self._events()]), model="gpt-4o").run(USER, rec.callbacks())
        assert rec.reasoning == []
        assert rec.reasoning_marks == []
        assert rec.result.reasoning == ""
        assert rec.text == "Answer"


class TestRouting:
    async def test_diagnostics_reach_result(self):
        backend = make_text_backend("ok")
        seen = []
        orch = StreamOrchestrator(
            "openai", "deepseek-chat", FakeCredentials(keys={"openai": "sk"}),
            backend_factory=lambda decision: seen.append(decision) or backend,
        )
        rec = Recorder()
        await orch.run(USER, rec.callbacks())
        assert seen[0].provider == "openai"
        assert rec.result.diagnostics
