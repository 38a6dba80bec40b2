"""
Pooled connections to MCP tool servers.

One live ``ClientSession`` is kept per server.  ``init_client`` shares an
in-flight connection attempt between concurrent callers and probes a pooled
connection with ``ping`` before handing it out again.  Reads (tools,
resources, prompts) go through a ``TTLCache`` whose keys are scoped per
server; server push notifications invalidate exactly the affected keys.

Dependencies: ``mcp`` (official Python SDK) for the streamable HTTP transport.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable

from toolrelay import __version__
from toolrelay.errors import ToolServerNotFound
from toolrelay.mcp.cache import CacheKeys, TTLCache
from toolrelay.mcp.classifier import ErrorStats
from toolrelay.mcp.security import mask_headers
from toolrelay.types import (
    ContentItem,
    PromptDescriptor,
    PromptMessage,
    PromptResult,
    ResourceContent,
    ResourceDescriptor,
    ToolDescriptor,
    ToolExecutionResult,
)

logger = logging.getLogger(__name__)

DEFAULT_HEADERS: dict[str, str] = {
    "Accept": "application/json, text/event-stream",
    "Content-Type": "application/json",
    "User-Agent": f"toolrelay/{__version__}",
}

TOOLS_CHANGED = "notifications/tools/list_changed"
RESOURCES_CHANGED = "notifications/resources/list_changed"
RESOURCE_UPDATED = "notifications/resources/updated"
PROMPTS_CHANGED = "notifications/prompts/list_changed"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class ServerConfig:
    id: str
    name: str
    base_url: str
    timeout_seconds: float = 60.0
    disabled_auto_approve_tools: list[str] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)
    enabled: bool = True


@dataclass
class CacheTTLs:
    """Seconds each kind of read stays cached."""

    tools: float = 5 * 60.0
    resources: float = 60 * 60.0
    resource: float = 30 * 60.0
    prompts: float = 60 * 60.0
    prompt: float = 30 * 60.0


@dataclass
class ServerConnection:
    server: ServerConfig
    session: Any
    closer: Callable[[], Awaitable[None]] | None = None
    connected_at: float = field(default_factory=time.monotonic)
    last_used_at: float = field(default_factory=time.monotonic)

    async def close(self) -> None:
        if self.closer is not None:
            await self.closer()


@dataclass(frozen=True)
class HealthCheck:
    server_id: str
    healthy: bool
    response_time: float | None = None
    error: str | None = None
    checked_at: float = field(default_factory=time.time)


NotificationCallback = Callable[[Any], Awaitable[None]]
Connector = Callable[[ServerConfig, NotificationCallback], Awaitable[ServerConnection]]


# ---------------------------------------------------------------------------
# Default transport
# ---------------------------------------------------------------------------


async def connect_streamable_http(
    server: ServerConfig,
    on_notification: NotificationCallback,
) -> ServerConnection:
    """
    Open a streamable HTTP session to *server*.

    The transport and session contexts live in a dedicated task so that they
    are entered and exited by the same task; ``ServerConnection.close`` asks
    that task to unwind.
    """
    from mcp import ClientSession, types
    from mcp.client.streamable_http import streamablehttp_client

    if not server.base_url:
        raise ValueError(f"MCP server {server.name or server.id} has no base_url")

    headers = {**DEFAULT_HEADERS, **server.headers}
    logger.debug(
        "Connecting to MCP server %s at %s headers=%s",
        server.id, server.base_url, mask_headers(headers),
    )

    async def message_handler(message: Any) -> None:
        if isinstance(message, types.ServerNotification):
            await on_notification(message.root)
        elif isinstance(message, Exception):
            logger.warning("MCP server %s transport error: %s", server.id, message)

    loop = asyncio.get_running_loop()
    ready: asyncio.Future = loop.create_future()
    closing = asyncio.Event()

    async def hold_open() -> None:
        try:
            async with streamablehttp_client(
                server.base_url,
                headers=headers,
                timeout=timedelta(seconds=server.timeout_seconds),
            ) as (read, write, _session_id):
                async with ClientSession(
                    read,
                    write,
                    message_handler=message_handler,
                    client_info=types.Implementation(name="toolrelay", version=__version__),
                ) as session:
                    await session.initialize()
                    ready.set_result(session)
                    await closing.wait()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.warning("MCP server %s session ended: %s", server.id, exc)

    task = loop.create_task(hold_open(), name=f"mcp-{server.id}")
    try:
        session = await ready
    except BaseException:
        task.cancel()
        raise

    async def close() -> None:
        closing.set()
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except asyncio.TimeoutError:
            task.cancel()

    return ServerConnection(server=server, session=session, closer=close)


# ---------------------------------------------------------------------------
# Result conversion
# ---------------------------------------------------------------------------


def _content_item(block: Any) -> ContentItem:
    kind = getattr(block, "type", None) or "text"
    if kind == "resource":
        resource = getattr(block, "resource", None)
        return ContentItem(
            type="resource",
            text=getattr(resource, "text", None),
            data=getattr(resource, "blob", None),
            mime_type=getattr(resource, "mimeType", None),
            uri=str(getattr(resource, "uri", "")) or None,
        )
    if kind == "resource_link":
        return ContentItem(
            type="resource",
            text=getattr(block, "name", None),
            mime_type=getattr(block, "mimeType", None),
            uri=str(getattr(block, "uri", "")) or None,
        )
    return ContentItem(
        type=kind,
        text=getattr(block, "text", None),
        data=getattr(block, "data", None),
        mime_type=getattr(block, "mimeType", None),
    )


def tool_result_from_call(name: str, server_id: str, result: Any) -> ToolExecutionResult:
    items = [_content_item(b) for b in (getattr(result, "content", None) or [])]
    structured = getattr(result, "structuredContent", None)
    if not items and structured:
        items.append(ContentItem(type="text", text=json.dumps(structured, ensure_ascii=False)))
    return ToolExecutionResult(
        tool_name=name,
        content=tuple(items),
        is_error=bool(getattr(result, "isError", False)),
        server_id=server_id,
    )


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ToolServerConnectionManager:
    """
    Registry of live tool-server connections.

    Parameters
    ----------
    cache:
        Shared cache for tool, resource and prompt reads.
    connector:
        Coroutine that opens a ``ServerConnection``.  Defaults to the MCP
        streamable HTTP transport; tests inject fakes.
    probe_timeout:
        Seconds a liveness ``ping`` may take before the pooled connection is
        considered dead.
    ttls:
        Per-kind cache lifetimes.
    """

    def __init__(
        self,
        cache: TTLCache | None = None,
        *,
        connector: Connector = connect_streamable_http,
        probe_timeout: float = 3.0,
        ttls: CacheTTLs | None = None,
        error_stats: ErrorStats | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.cache = cache or TTLCache()
        self.error_stats = error_stats or ErrorStats()
        self._connector = connector
        self._probe_timeout = probe_timeout
        self._ttls = ttls or CacheTTLs()
        self._clock = clock
        self._sleep = sleep

        self._servers: dict[str, ServerConfig] = {}
        self._connections: dict[str, ServerConnection] = {}
        self._pending: dict[str, asyncio.Future] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._status: dict[str, ConnectionStatus] = {}
        self._errors: dict[str, str] = {}
        self._reconnecting: set[str] = set()
        self._reaper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Server registration and state
    # ------------------------------------------------------------------

    def register(self, server: ServerConfig) -> None:
        self._servers[server.id] = server

    def server(self, server_id: str) -> ServerConfig:
        try:
            return self._servers[server_id]
        except KeyError:
            raise ToolServerNotFound(server_id) from None

    def status(self, server_id: str) -> ConnectionStatus:
        return self._status.get(server_id, ConnectionStatus.DISCONNECTED)

    def is_connected(self, server_id: str) -> bool:
        return (
            server_id in self._connections
            and self.status(server_id) is ConnectionStatus.CONNECTED
        )

    def last_error(self, server_id: str) -> str | None:
        return self._errors.get(server_id)

    def connected_server_ids(self) -> list[str]:
        return [sid for sid in self._connections if self.is_connected(sid)]

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        lock = self._locks.get(server_id)
        if lock is None:
            lock = self._locks[server_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def init_client(self, server: ServerConfig) -> ServerConnection:
        """
        Return a usable connection for *server*, creating one if needed.

        Concurrent callers share a single in-flight attempt.  A pooled
        connection is reused only after a successful liveness probe.
        """
        self.register(server)
        sid = server.id

        async with self._lock_for(sid):
            pending = self._pending.get(sid)
            if pending is None:
                existing = self._connections.get(sid)
                if existing is not None:
                    if await self._probe(existing):
                        existing.last_used_at = self._clock()
                        return existing
                    await self._discard(sid, existing)

                pending = asyncio.get_running_loop().create_future()
                pending.add_done_callback(_consume_future_exception)
                self._pending[sid] = pending
                creator = True
            else:
                creator = False

        if not creator:
            logger.debug("Awaiting in-flight connection to %s", sid)
            return await asyncio.shield(pending)

        self._status[sid] = ConnectionStatus.CONNECTING
        try:
            conn = await self._connector(server, self._notification_sink(sid))
        except asyncio.CancelledError:
            self._status[sid] = ConnectionStatus.DISCONNECTED
            # Other waiters were not cancelled; they see an ordinary failure.
            pending.set_exception(ConnectionError(f"connection attempt to {sid} abandoned"))
            raise
        except Exception as exc:
            self._status[sid] = ConnectionStatus.DISCONNECTED
            self._errors[sid] = str(exc) or type(exc).__name__
            self.error_stats.record(sid, exc)
            logger.error("Failed to connect to MCP server %s: %s", sid, exc)
            pending.set_exception(exc)
            raise
        else:
            conn.connected_at = conn.last_used_at = self._clock()
            self._connections[sid] = conn
            self._status[sid] = ConnectionStatus.CONNECTED
            self._errors.pop(sid, None)
            logger.info("Connected to MCP server %s (%s)", server.name, sid)
            pending.set_result(conn)
            return conn
        finally:
            self._pending.pop(sid, None)

    async def connect(self, server: ServerConfig) -> None:
        """Connect and warm the tool cache.  A failed warm-up is only logged."""
        await self.init_client(server)
        try:
            await self.list_tools(server.id)
        except Exception as exc:
            logger.warning("Tool listing after connect failed for %s: %s", server.id, exc)

    async def disconnect(self, server_id: str) -> None:
        conn = self._connections.pop(server_id, None)
        if conn is not None:
            await self._close_quietly(server_id, conn)
        self._status[server_id] = ConnectionStatus.DISCONNECTED
        self._errors.pop(server_id, None)
        self.cache.clear_prefix(CacheKeys.server_prefix(server_id))
        logger.debug("Disconnected MCP server %s", server_id)

    async def reconnect(self, server_id: str, max_attempts: int = 3) -> bool:
        """
        Disconnect and reconnect with a doubling delay starting at 0.6 s.

        Returns ``False`` when every attempt failed or when a reconnect for
        the same server is already running.
        """
        if server_id in self._reconnecting:
            logger.debug("Reconnect for %s already running", server_id)
            return False
        server = self.server(server_id)
        self._reconnecting.add(server_id)
        try:
            for attempt in range(1, max_attempts + 1):
                if attempt > 1:
                    await self._sleep(0.6 * 2 ** (attempt - 2))
                logger.info("Reconnecting %s (attempt %d/%d)", server_id, attempt, max_attempts)
                await self.disconnect(server_id)
                try:
                    await self.init_client(server)
                except Exception as exc:
                    logger.warning("Reconnect attempt %d for %s failed: %s", attempt, server_id, exc)
                    continue
                if self.is_connected(server_id):
                    return True
            logger.error("Giving up on %s after %d attempts", server_id, max_attempts)
            return False
        finally:
            self._reconnecting.discard(server_id)

    async def check_health(self, server_id: str) -> HealthCheck:
        start = self._clock()
        try:
            conn = await self.init_client(self.server(server_id))
            await asyncio.wait_for(conn.session.send_ping(), timeout=max(self._probe_timeout, 5.0))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return HealthCheck(server_id=server_id, healthy=False, error=str(exc) or type(exc).__name__)
        return HealthCheck(server_id=server_id, healthy=True, response_time=self._clock() - start)

    async def cleanup_idle(self, max_idle: float = 10 * 60.0) -> list[str]:
        """Disconnect every connection unused for more than *max_idle* seconds."""
        now = self._clock()
        idle = [
            sid for sid, conn in self._connections.items()
            if now - conn.last_used_at > max_idle
        ]
        for sid in idle:
            logger.info("Closing idle MCP connection %s", sid)
            await self.disconnect(sid)
        return idle

    async def close_all(self) -> None:
        await asyncio.gather(
            *(self.disconnect(sid) for sid in list(self._connections)),
            return_exceptions=True,
        )

    def start_idle_reaper(self, max_idle: float, interval: float = 60.0) -> None:
        """Run ``cleanup_idle(max_idle)`` every *interval* seconds in the background."""
        if self._reaper is not None and not self._reaper.done():
            return
        self._reaper = asyncio.get_running_loop().create_task(
            self._reap_loop(max_idle, interval)
        )

    async def stop_idle_reaper(self) -> None:
        if self._reaper is None:
            return
        self._reaper.cancel()
        try:
            await self._reaper
        except asyncio.CancelledError:
            pass
        self._reaper = None

    async def _reap_loop(self, max_idle: float, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_idle(max_idle)
            except Exception:
                logger.exception("Idle connection cleanup failed")

    async def _probe(self, conn: ServerConnection) -> bool:
        try:
            await asyncio.wait_for(conn.session.send_ping(), timeout=self._probe_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Liveness probe failed for %s: %s",
                conn.server.id, str(exc) or type(exc).__name__,
            )
            return False
        return True

    async def _discard(self, server_id: str, conn: ServerConnection) -> None:
        self._connections.pop(server_id, None)
        self._status[server_id] = ConnectionStatus.DISCONNECTED
        await self._close_quietly(server_id, conn)

    async def _close_quietly(self, server_id: str, conn: ServerConnection) -> None:
        try:
            await conn.close()
        except Exception:
            logger.exception("Error closing MCP connection %s", server_id)

    # ------------------------------------------------------------------
    # Cached reads
    # ------------------------------------------------------------------

    async def _session(self, server_id: str) -> Any:
        conn = await self.init_client(self.server(server_id))
        conn.last_used_at = self._clock()
        return conn.session

    async def _request(self, server_id: str, operation: str, call: Callable[[Any], Awaitable[Any]]) -> Any:
        session = await self._session(server_id)
        try:
            return await call(session)
        except Exception as exc:
            category = self.error_stats.record(server_id, exc)
            self._errors[server_id] = str(exc) or type(exc).__name__
            logger.error("%s on %s failed [%s]: %s", operation, server_id, category.value, exc)
            raise

    async def list_tools(self, server_id: str) -> list[ToolDescriptor]:
        key = CacheKeys.tools(server_id)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)

        server = self.server(server_id)
        result = await self._request(server_id, "tools/list", lambda s: s.list_tools())
        tools = [
            ToolDescriptor(
                name=t.name,
                description=getattr(t, "description", None) or "",
                input_schema=dict(getattr(t, "inputSchema", None) or {}),
                server_id=server.id,
                server_name=server.name,
            )
            for t in getattr(result, "tools", None) or []
        ]
        self.cache.set(key, tuple(tools), self._ttls.tools)
        return tools

    async def call_tool(self, server_id: str, name: str, arguments: dict[str, Any]) -> ToolExecutionResult:
        """Invoke a tool.  Results are never cached and failures never retried."""
        result = await self._request(
            server_id, f"tools/call {name}", lambda s: s.call_tool(name, arguments)
        )
        return tool_result_from_call(name, server_id, result)

    async def list_resources(self, server_id: str) -> list[ResourceDescriptor]:
        key = CacheKeys.resources(server_id)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)

        result = await self._request(server_id, "resources/list", lambda s: s.list_resources())
        resources = [
            ResourceDescriptor(
                uri=str(r.uri),
                name=getattr(r, "name", None) or str(r.uri),
                description=getattr(r, "description", None) or "",
                mime_type=getattr(r, "mimeType", None),
                server_id=server_id,
            )
            for r in getattr(result, "resources", None) or []
        ]
        self.cache.set(key, tuple(resources), self._ttls.resources)
        return resources

    async def read_resource(self, server_id: str, uri: str) -> list[ResourceContent]:
        key = CacheKeys.resource(server_id, uri)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)

        result = await self._request(server_id, "resources/read", lambda s: s.read_resource(uri))
        contents = [
            ResourceContent(
                uri=str(getattr(c, "uri", uri)),
                text=getattr(c, "text", None),
                blob=getattr(c, "blob", None),
                mime_type=getattr(c, "mimeType", None),
            )
            for c in getattr(result, "contents", None) or []
        ]
        self.cache.set(key, tuple(contents), self._ttls.resource)
        return contents

    async def list_prompts(self, server_id: str) -> list[PromptDescriptor]:
        key = CacheKeys.prompts(server_id)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)

        result = await self._request(server_id, "prompts/list", lambda s: s.list_prompts())
        prompts = [
            PromptDescriptor(
                name=p.name,
                description=getattr(p, "description", None) or "",
                arguments=tuple(a.name for a in (getattr(p, "arguments", None) or [])),
                server_id=server_id,
            )
            for p in getattr(result, "prompts", None) or []
        ]
        self.cache.set(key, tuple(prompts), self._ttls.prompts)
        return prompts

    async def get_prompt(
        self,
        server_id: str,
        name: str,
        arguments: dict[str, str] | None = None,
    ) -> PromptResult:
        """Fetch a prompt.  Only argument-less prompts are cached."""
        key = CacheKeys.prompt(server_id, name)
        if not arguments:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        result = await self._request(
            server_id, f"prompts/get {name}", lambda s: s.get_prompt(name, arguments)
        )
        prompt = PromptResult(
            name=name,
            description=getattr(result, "description", None) or "",
            messages=tuple(
                PromptMessage(role=m.role, content=_content_item(m.content))
                for m in getattr(result, "messages", None) or []
            ),
        )
        if not arguments:
            self.cache.set(key, prompt, self._ttls.prompt)
        return prompt

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, server_id: str, kind: str, uri: str | None = None) -> None:
        if kind == "tools":
            self.cache.delete(CacheKeys.tools(server_id))
        elif kind == "resources":
            self.cache.delete(CacheKeys.resources(server_id))
        elif kind == "resource":
            if uri is not None:
                self.cache.delete(CacheKeys.resource(server_id, uri))
        elif kind == "prompts":
            self.cache.delete(CacheKeys.prompts(server_id))
            self.cache.clear_prefix(CacheKeys.prompt_prefix(server_id))
        else:
            raise ValueError(f"Unknown cache kind: {kind!r}")

    async def handle_notification(self, server_id: str, notification: Any) -> None:
        """Apply a server push notification to that server's cache keys."""
        method = getattr(notification, "method", None)
        logger.debug("Notification %s from %s", method, server_id)
        if method == TOOLS_CHANGED:
            self.invalidate(server_id, "tools")
        elif method == RESOURCES_CHANGED:
            self.invalidate(server_id, "resources")
        elif method == RESOURCE_UPDATED:
            params = getattr(notification, "params", None)
            uri = getattr(params, "uri", None)
            if uri is not None:
                self.invalidate(server_id, "resource", str(uri))
        elif method == PROMPTS_CHANGED:
            self.invalidate(server_id, "prompts")

    def _notification_sink(self, server_id: str) -> NotificationCallback:
        async def sink(notification: Any) -> None:
            await self.handle_notification(server_id, notification)

        return sink


def _consume_future_exception(fut: asyncio.Future) -> None:
    """Avoid 'Future exception was never retrieved' for coordination futures."""
    if not fut.cancelled():
        fut.exception()
