"""End-to-end tests: chat handler and CLI wired to mock backends and fake servers."""

from __future__ import annotations

import io

import pytest
from rich.console import Console
from typer.testing import CliRunner

from tests.mock_backends import MockBackend, make_text_backend, make_tool_backend, text_events
from tests.mock_servers import FakeConnector, FakeSession, tool_def
from toolrelay import __version__
from toolrelay.cli.app import app
from toolrelay.cli.chat import ChatHandler
from toolrelay.config import ConfigServerRegistry, ToolRelayConfig
from toolrelay.mcp.connection import ToolServerConnectionManager
from toolrelay.mcp.coordinator import ToolExecutionCoordinator
from toolrelay.session.events import EVENT_TOOL_CALL_RESULT
from toolrelay.session.store import ExchangeStore


def _session(server):
    return FakeSession(
        tools=[tool_def("lookup"), tool_def("delete_file")],
        handlers={"lookup": lambda args: f"value of {args.get('key')}"},
    )


@pytest.fixture
def cfg():
    c = ToolRelayConfig()
    c.providers["openai"].api_key = "sk-test"
    c.mcp.servers = [
        {"name": "kv", "url": "http://kv.test/mcp", "disabled_auto_approve_tools": ["delete_file"]},
    ]
    return c


@pytest.fixture
async def full_stack(cfg, tmp_path, monkeypatch):
    """Chat handler over a fake MCP server, recording into a temp database."""
    for entry in cfg.providers.values():
        if entry.api_key_env:
            monkeypatch.delenv(entry.api_key_env, raising=False)
    store = ExchangeStore(str(tmp_path / "e2e.db"))
    await store.init()
    conversation_id = await store.create_conversation()

    manager = ToolServerConnectionManager(connector=FakeConnector(_session))
    coordinator = ToolExecutionCoordinator(manager, ConfigServerRegistry(cfg))
    output = io.StringIO()
    handler = ChatHandler(
        cfg, manager, coordinator,
        store=store,
        conversation_id=conversation_id,
        console=Console(file=output, width=200, color_system=None),
    )
    yield {
        "handler": handler,
        "store": store,
        "conversation_id": conversation_id,
        "output": output,
    }

    await manager.close_all()
    await store.close()


def _use(handler, backend):
    handler._backend_factory = lambda decision: backend


class TestChatHandler:
    async def test_plain_reply_extends_history(self, full_stack):
        handler = full_stack["handler"]
        _use(handler, make_text_backend("Hi there"))

        await handler.handle_input("hello")

        assert "Hi there" in full_stack["output"].getvalue()
        assert [m.role for m in handler.history] == ["user", "assistant"]
        assert handler.history[1].content == "Hi there"

    async def test_tool_round_is_recorded(self, full_stack):
        handler, store = full_stack["handler"], full_stack["store"]
        backend = make_tool_backend("lookup", {"key": "color"}, final_text="It is blue.")
        _use(handler, backend)

        await handler.handle_input("what color?")

        assert backend.call_count == 2
        exchanges = await store.list_exchanges(full_stack["conversation_id"])
        assert len(exchanges) == 1
        assert exchanges[0]["outcome"] == "completed"
        results = await store.get_events(exchanges[0]["exchange_id"], EVENT_TOOL_CALL_RESULT)
        assert results[0].payload["content"] == "value of color"

    async def test_guarded_tool_is_declined_without_prompt(self, full_stack):
        handler, store = full_stack["handler"], full_stack["store"]
        _use(handler, make_tool_backend("delete_file", {"path": "/tmp/x"}))

        await handler.handle_input("clean up")

        exchanges = await store.list_exchanges(full_stack["conversation_id"])
        results = await store.get_events(exchanges[0]["exchange_id"], EVENT_TOOL_CALL_RESULT)
        assert results[0].payload["category"] == "declined"

    async def test_history_is_sent_on_next_turn(self, full_stack):
        handler = full_stack["handler"]
        backend = MockBackend([text_events("First answer"), text_events("Second answer")])
        _use(handler, backend)

        await handler.handle_input("one")
        await handler.handle_input("two")

        contents = [m.content for m in backend.all_messages[1] if m.role != "system"]
        assert contents == ["one", "First answer", "two"]

    async def test_missing_key_reports_error(self, full_stack):
        handler = full_stack["handler"]
        handler.provider, handler.model = "anthropic", "claude-sonnet-4-5"
        backend = make_text_backend("unused")
        _use(handler, backend)

        await handler.handle_input("hello")

        assert "No API key configured" in full_stack["output"].getvalue()
        assert backend.call_count == 0
        assert handler.history == []


class TestChatCommands:
    async def test_model_switch(self, full_stack):
        handler = full_stack["handler"]
        assert await handler.handle_command("/model deepseek/deepseek-chat")
        assert (handler.provider, handler.model) == ("deepseek", "deepseek-chat")
        assert await handler.handle_command("/model deepseek-reasoner")
        assert handler.model == "deepseek-reasoner"

    async def test_route(self, full_stack):
        handler = full_stack["handler"]
        assert await handler.handle_command("/route")
        assert "Routing decision" in full_stack["output"].getvalue()

    async def test_tools(self, full_stack):
        assert await full_stack["handler"].handle_command("/tools")
        out = full_stack["output"].getvalue()
        assert "lookup" in out
        assert "delete_file" in out

    async def test_tool_details(self, full_stack):
        handler = full_stack["handler"]
        assert await handler.handle_command("/tools lookup")
        assert "Tool: lookup" in full_stack["output"].getvalue()

        assert await handler.handle_command("/tools nothing_here")
        assert "Unknown tool: nothing_here" in full_stack["output"].getvalue()

    async def test_history_events(self, full_stack):
        handler, store = full_stack["handler"], full_stack["store"]
        _use(handler, make_tool_backend("lookup", {"key": "color"}, final_text="It is blue."))
        await handler.handle_input("what color?")
        exchange_id = (await store.list_exchanges(full_stack["conversation_id"]))[0]["exchange_id"]

        assert await handler.handle_command(f"/history {exchange_id}")
        out = full_stack["output"].getvalue()
        assert "user_message" in out
        assert "lookup -> OK" in out
        assert "assistant_message" in out

    async def test_clear(self, full_stack):
        handler = full_stack["handler"]
        _use(handler, make_text_backend("Hi"))
        await handler.handle_input("hello")
        assert await handler.handle_command("/clear")
        assert handler.history == []

    async def test_quit(self, full_stack):
        handler = full_stack["handler"]
        assert await handler.handle_command("/quit")
        assert not handler._running

    async def test_unknown_command_falls_through(self, full_stack):
        assert not await full_stack["handler"].handle_command("/frobnicate")


class TestCLI:
    @pytest.fixture(autouse=True)
    def isolated(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        for var in ("OPENAI_API_KEY", "DEEPSEEK_API_KEY", "TOOLRELAY_LLM_PROVIDER"):
            monkeypatch.delenv(var, raising=False)

    def test_version(self):
        result = CliRunner().invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_route(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk")
        monkeypatch.setenv("DEEPSEEK_API_KEY", "ds")
        result = CliRunner().invoke(app, ["route", "deepseek-r1"])
        assert result.exit_code == 0
        assert "deepseek" in result.output
        assert "generic-compatible" in result.output

    def test_route_without_key_fails(self):
        result = CliRunner().invoke(app, ["route", "gpt-4o"])
        assert result.exit_code == 1
        assert "No API key" in result.output

    def test_config_show_masks_keys(self, tmp_path):
        (tmp_path / "toolrelay.yaml").write_text(
            "providers:\n  openai:\n    api_key: sk-very-secret\n", encoding="utf-8"
        )
        result = CliRunner().invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "sk-very-secret" not in result.output
        assert "***" in result.output
