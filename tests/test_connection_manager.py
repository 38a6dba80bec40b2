"""Tests for the tool-server connection manager."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from tests.mock_servers import (
    FakeConnector,
    FakeSession,
    make_server,
    notification,
    tool_def,
)
from toolrelay.errors import ToolServerNotFound
from toolrelay.mcp.cache import CacheKeys, TTLCache
from toolrelay.mcp.classifier import ErrorCategory
from toolrelay.mcp.connection import (
    PROMPTS_CHANGED,
    RESOURCE_UPDATED,
    RESOURCES_CHANGED,
    TOOLS_CHANGED,
    ConnectionStatus,
    ToolServerConnectionManager,
)


def _sessions_with_tools(*names: str):
    return lambda server: FakeSession(
        tools=[tool_def(n) for n in names],
        resources={"file:///a.txt": "A", "file:///b.txt": "B"},
        prompts={"greet": "Hello", "named": "Hi {who}"},
    )


@pytest.fixture
def connector():
    return FakeConnector(_sessions_with_tools("echo", "add"))


@pytest.fixture
def manager(connector):
    return ToolServerConnectionManager(TTLCache(), connector=connector, probe_timeout=0.5)


@pytest.fixture
def server():
    return make_server("alpha")


class TestInitClient:
    async def test_creates_connection(self, manager, connector, server):
        conn = await manager.init_client(server)
        assert connector.connect_count == 1
        assert manager.status("alpha") is ConnectionStatus.CONNECTED
        assert manager.is_connected("alpha")
        assert conn.session is connector.sessions[0]

    async def test_concurrent_callers_share_one_attempt(self, server):
        connector = FakeConnector(_sessions_with_tools("echo"), delay=0.05)
        manager = ToolServerConnectionManager(connector=connector)

        results = await asyncio.gather(*(manager.init_client(server) for _ in range(5)))

        assert connector.connect_count == 1
        assert all(r is results[0] for r in results)

    async def test_concurrent_callers_share_failure(self, server):
        connector = FakeConnector(delay=0.05, fail_times=1)
        manager = ToolServerConnectionManager(connector=connector)

        results = await asyncio.gather(
            *(manager.init_client(server) for _ in range(3)), return_exceptions=True
        )

        assert connector.connect_count == 1
        assert all(isinstance(r, ConnectionError) for r in results)
        assert manager.status("alpha") is ConnectionStatus.DISCONNECTED
        assert manager.last_error("alpha") == "connection refused"

    async def test_cancelled_creator_fails_waiters_without_cancelling_them(self, server):
        connector = FakeConnector(_sessions_with_tools("echo"), delay=0.05)
        manager = ToolServerConnectionManager(connector=connector)

        creator = asyncio.create_task(manager.init_client(server))
        await asyncio.sleep(0.01)
        waiter = asyncio.create_task(manager.init_client(server))
        await asyncio.sleep(0.01)
        creator.cancel()

        with pytest.raises(asyncio.CancelledError):
            await creator
        with pytest.raises(ConnectionError, match="abandoned"):
            await waiter
        assert not waiter.cancelled()
        assert manager.status("alpha") is ConnectionStatus.DISCONNECTED

        conn = await manager.init_client(server)
        assert connector.connect_count == 2
        assert manager.is_connected("alpha")
        assert conn.session is connector.sessions[0]

    async def test_live_connection_is_reused_after_probe(self, manager, connector, server):
        first = await manager.init_client(server)
        second = await manager.init_client(server)
        assert first is second
        assert connector.connect_count == 1
        assert first.session.ping_count == 1

    async def test_dead_connection_is_replaced(self, manager, connector, server):
        first = await manager.init_client(server)
        first.session.ping_ok = False

        second = await manager.init_client(server)

        assert second is not first
        assert connector.connect_count == 2
        assert connector.closed == 1
        assert manager.is_connected("alpha")

    async def test_hung_probe_times_out(self, connector, server):
        manager = ToolServerConnectionManager(connector=connector, probe_timeout=0.01)
        first = await manager.init_client(server)

        async def hang():
            await asyncio.Event().wait()

        first.session.send_ping = hang
        second = await manager.init_client(server)
        assert second is not first

    async def test_independent_servers_get_independent_connections(self, manager, connector):
        a = await manager.init_client(make_server("a"))
        b = await manager.init_client(make_server("b"))
        assert a is not b
        assert sorted(manager.connected_server_ids()) == ["a", "b"]

    async def test_failure_is_recorded(self, server):
        manager = ToolServerConnectionManager(connector=FakeConnector(fail_times=1))
        with pytest.raises(ConnectionError):
            await manager.init_client(server)
        assert manager.error_stats.get("alpha").last_category is ErrorCategory.NETWORK


class TestLifecycle:
    async def test_disconnect_clears_server_cache_only(self, manager):
        await manager.init_client(make_server("a"))
        await manager.init_client(make_server("b"))
        await manager.list_tools("a")
        await manager.list_tools("b")

        await manager.disconnect("a")

        assert manager.cache.keys(CacheKeys.server_prefix("a")) == []
        assert manager.cache.has(CacheKeys.tools("b"))
        assert manager.status("a") is ConnectionStatus.DISCONNECTED

    async def test_reconnect_retries_with_backoff(self, server):
        delays: list[float] = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        connector = FakeConnector(fail_times=2)
        manager = ToolServerConnectionManager(connector=connector, sleep=fake_sleep)
        manager.register(server)

        assert await manager.reconnect("alpha")
        assert connector.connect_count == 3
        assert delays == [0.6, 1.2]

    async def test_reconnect_gives_up(self, server):
        async def fake_sleep(seconds):
            pass

        manager = ToolServerConnectionManager(
            connector=FakeConnector(fail_times=10), sleep=fake_sleep
        )
        manager.register(server)
        assert not await manager.reconnect("alpha", max_attempts=2)
        assert not manager.is_connected("alpha")

    async def test_unknown_server(self, manager):
        with pytest.raises(ToolServerNotFound):
            await manager.list_tools("ghost")

    async def test_health_check(self, manager, server):
        manager.register(server)
        check = await manager.check_health("alpha")
        assert check.healthy
        assert check.response_time is not None

    async def test_health_check_failure(self, server):
        manager = ToolServerConnectionManager(connector=FakeConnector(fail_times=1))
        manager.register(server)
        check = await manager.check_health("alpha")
        assert not check.healthy
        assert "refused" in check.error

    async def test_cleanup_idle(self, connector):
        now = [100.0]
        manager = ToolServerConnectionManager(connector=connector, clock=lambda: now[0])
        await manager.init_client(make_server("old"))
        now[0] = 500.0
        await manager.init_client(make_server("new"))
        now[0] = 800.0

        closed = await manager.cleanup_idle(max_idle=600)

        assert closed == ["old"]
        assert manager.connected_server_ids() == ["new"]

    async def test_idle_reaper_closes_stale_connections(self, connector):
        now = [100.0]
        manager = ToolServerConnectionManager(connector=connector, clock=lambda: now[0])
        await manager.init_client(make_server("old"))
        now[0] = 800.0

        manager.start_idle_reaper(max_idle=600, interval=0.01)
        for _ in range(50):
            if not manager.connected_server_ids():
                break
            await asyncio.sleep(0.01)
        await manager.stop_idle_reaper()

        assert manager.connected_server_ids() == []
        assert connector.closed == 1

    async def test_idle_reaper_start_is_idempotent(self, manager):
        manager.start_idle_reaper(max_idle=600)
        first = manager._reaper
        manager.start_idle_reaper(max_idle=600)
        assert manager._reaper is first
        await manager.stop_idle_reaper()
        await manager.stop_idle_reaper()

    async def test_close_all(self, manager, connector):
        await manager.init_client(make_server("a"))
        await manager.init_client(make_server("b"))
        await manager.close_all()
        assert manager.connected_server_ids() == []
        assert connector.closed == 2


class TestCachedReads:
    async def test_list_tools_is_cached(self, manager, server):
        manager.register(server)
        first = await manager.list_tools("alpha")
        second = await manager.list_tools("alpha")
        assert [t.name for t in first] == ["echo", "add"]
        assert first == second
        session = manager._connections["alpha"].session
        assert session.list_tools_count == 1
        assert first[0].server_id == "alpha"
        assert first[0].server_name == "Alpha"

    async def test_call_tool_is_never_cached(self, manager, server):
        manager.register(server)
        await manager.call_tool("alpha", "echo", {"x": 1})
        result = await manager.call_tool("alpha", "echo", {"x": 1})
        session = manager._connections["alpha"].session
        assert len(session.calls) == 2
        assert result.text == "echo ok"
        assert not result.is_error

    async def test_call_tool_error_flag_and_structured_content(self, server):
        def handler(args):
            return SimpleNamespace(content=[], structuredContent={"sum": 3}, isError=True)

        connector = FakeConnector(lambda s: FakeSession(tools=[tool_def("add")], handlers={"add": handler}))
        manager = ToolServerConnectionManager(connector=connector)
        manager.register(server)
        result = await manager.call_tool("alpha", "add", {})
        assert result.is_error
        assert result.text == '{"sum": 3}'

    async def test_call_tool_failure_is_recorded_and_raised(self, server):
        def handler(args):
            raise TimeoutError("tool timed out")

        connector = FakeConnector(lambda s: FakeSession(handlers={"slow": handler}))
        manager = ToolServerConnectionManager(connector=connector)
        manager.register(server)
        with pytest.raises(TimeoutError):
            await manager.call_tool("alpha", "slow", {})
        assert manager.error_stats.get("alpha").last_category is ErrorCategory.TIMEOUT

    async def test_resources(self, manager, server):
        manager.register(server)
        listed = await manager.list_resources("alpha")
        assert [r.uri for r in listed] == ["file:///a.txt", "file:///b.txt"]
        contents = await manager.read_resource("alpha", "file:///a.txt")
        await manager.read_resource("alpha", "file:///a.txt")
        assert contents[0].text == "A"
        assert manager._connections["alpha"].session.read_count == 1

    async def test_prompts(self, manager, server):
        manager.register(server)
        names = [p.name for p in await manager.list_prompts("alpha")]
        assert names == ["greet", "named"]

        greet = await manager.get_prompt("alpha", "greet")
        await manager.get_prompt("alpha", "greet")
        assert greet.messages[0].content.text == "Hello"

        named = await manager.get_prompt("alpha", "named", {"who": "Ada"})
        await manager.get_prompt("alpha", "named", {"who": "Ada"})
        assert named.messages[0].content.text == "Hi Ada"
        assert manager._connections["alpha"].session.get_prompt_count == 3

    async def test_expired_entry_refetched(self, server):
        now = [0.0]
        cache = TTLCache(clock=lambda: now[0])
        connector = FakeConnector(_sessions_with_tools("echo"))
        manager = ToolServerConnectionManager(cache, connector=connector)
        manager.register(server)
        await manager.list_tools("alpha")
        now[0] = 301.0
        await manager.list_tools("alpha")
        assert connector.sessions[0].list_tools_count == 2


class TestNotifications:
    async def _warm(self, manager):
        for sid in ("a", "b"):
            manager.register(make_server(sid))
            await manager.list_tools(sid)
            await manager.list_resources(sid)
            await manager.read_resource(sid, "file:///a.txt")
            await manager.read_resource(sid, "file:///b.txt")
            await manager.list_prompts(sid)
            await manager.get_prompt(sid, "greet")

    async def test_tools_changed(self, manager):
        await self._warm(manager)
        await manager.handle_notification("a", notification(TOOLS_CHANGED))
        assert not manager.cache.has(CacheKeys.tools("a"))
        assert manager.cache.has(CacheKeys.resources("a"))
        assert manager.cache.has(CacheKeys.tools("b"))

    async def test_resource_updated_scoped_to_uri(self, manager):
        await self._warm(manager)
        await manager.handle_notification("a", notification(RESOURCE_UPDATED, "file:///a.txt"))
        assert not manager.cache.has(CacheKeys.resource("a", "file:///a.txt"))
        assert manager.cache.has(CacheKeys.resource("a", "file:///b.txt"))
        assert manager.cache.has(CacheKeys.resource("b", "file:///a.txt"))
        assert manager.cache.has(CacheKeys.resources("a"))

    async def test_resources_changed(self, manager):
        await self._warm(manager)
        await manager.handle_notification("a", notification(RESOURCES_CHANGED))
        assert not manager.cache.has(CacheKeys.resources("a"))
        assert manager.cache.has(CacheKeys.resources("b"))

    async def test_prompts_changed_drops_prompt_bodies(self, manager):
        await self._warm(manager)
        await manager.handle_notification("a", notification(PROMPTS_CHANGED))
        assert not manager.cache.has(CacheKeys.prompts("a"))
        assert not manager.cache.has(CacheKeys.prompt("a", "greet"))
        assert manager.cache.has(CacheKeys.prompt("b", "greet"))

    async def test_sink_routes_to_owning_server(self, manager, connector):
        await self._warm(manager)
        await connector.sinks["b"](notification(TOOLS_CHANGED))
        assert manager.cache.has(CacheKeys.tools("a"))
        assert not manager.cache.has(CacheKeys.tools("b"))

    async def test_unknown_notification_is_ignored(self, manager):
        await self._warm(manager)
        before = len(manager.cache)
        await manager.handle_notification("a", notification("notifications/message"))
        assert len(manager.cache) == before

    def test_invalidate_unknown_kind(self, manager):
        with pytest.raises(ValueError):
            manager.invalidate("a", "everything")
