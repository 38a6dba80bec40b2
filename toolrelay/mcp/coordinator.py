"""
Tool execution across the active MCP servers.

The coordinator turns a batch of ``ToolUseRequest`` objects into one text
block for the next model turn.  Every request is reported to the caller and
summarised, whatever its outcome; one failing tool never stops the others.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Protocol, Sequence

from toolrelay.callbacks import invoke
from toolrelay.errors import ToolInvocationError, ToolNotFound, ToolServerNotFound
from toolrelay.llm.types import ToolUseRequest
from toolrelay.mcp.classifier import ErrorCategory, classify
from toolrelay.mcp.connection import ServerConfig, ToolServerConnectionManager
from toolrelay.mcp.schema import ToolArgumentValidator, normalize_by_schema
from toolrelay.mcp.security import mask_arguments
from toolrelay.types import ContentItem, ToolDescriptor, ToolExecutionResult

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"
DECLINED = "declined"


class ServerRegistry(Protocol):
    def get_active_servers(self) -> list[ServerConfig]: ...


ConfirmCallback = Callable[[ToolDescriptor, dict], Any]


def _error_result(
    tool_name: str,
    message: str,
    category: str,
    server_id: str | None = None,
) -> ToolExecutionResult:
    return ToolExecutionResult(
        tool_name=tool_name,
        content=(ContentItem(type="text", text=message),),
        is_error=True,
        category=category,
        server_id=server_id,
    )


# ---------------------------------------------------------------------------
# Result formatting
# ---------------------------------------------------------------------------


def render_content(item: ContentItem, vision: bool = False) -> str:
    if item.type == "text":
        return item.text or ""
    if item.type == "image":
        mime = item.mime_type or "image/png"
        if vision and item.data:
            return f"![image](data:{mime};base64,{item.data})"
        return f"[image: {mime}]"
    if item.type == "resource":
        parts = [f"[resource: {item.uri or 'unknown'}]"]
        if item.text:
            parts.append(item.text)
        return "\n".join(parts)
    if item.type == "audio":
        return f"[audio: {item.mime_type or 'unknown'}]"
    return item.text or f"[{item.type}]"


def format_result(result: ToolExecutionResult, vision: bool = False) -> str:
    header = f"Here is the result of tool use `{result.tool_name}`:"
    body = "\n".join(
        rendered for rendered in (render_content(c, vision) for c in result.content) if rendered
    )
    if result.is_error:
        label = f"Error [{result.category}]" if result.category else "Error"
        return f"{header}\n{label}: {body or 'tool reported an error'}"
    return f"{header}\n{body}"


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class ToolExecutionCoordinator:
    """
    Resolve tool names across active servers and run them.

    Parameters
    ----------
    manager:
        Connection manager used for discovery and invocation.
    registry:
        Source of the currently active servers.
    parallel:
        Run a batch concurrently.  Output order still follows request order.
    confirm:
        Called with ``(descriptor, arguments)`` for tools listed in a server's
        ``disabled_auto_approve_tools``.  Returning false declines the call.
        Without it such tools are declined.
    """

    def __init__(
        self,
        manager: ToolServerConnectionManager,
        registry: ServerRegistry,
        *,
        parallel: bool = False,
        confirm: ConfirmCallback | None = None,
    ) -> None:
        self.manager = manager
        self.registry = registry
        self.parallel = parallel
        self.confirm = confirm

    async def list_available_tools(self) -> list[ToolDescriptor]:
        """Tools of every active server, in server order.  Failing servers are skipped."""
        tools: list[ToolDescriptor] = []
        for server in self.registry.get_active_servers():
            if not server.enabled:
                continue
            self.manager.register(server)
            try:
                tools.extend(await self.manager.list_tools(server.id))
            except Exception as exc:
                logger.warning("Skipping MCP server %s: tool listing failed: %s", server.id, exc)
        return tools

    async def find_tool(self, name: str) -> ToolDescriptor | None:
        for tool in await self.list_available_tools():
            if tool.name == name:
                return tool
        return None

    async def execute(
        self,
        requests: Sequence[ToolUseRequest],
        *,
        on_tool_call: Callable[[str, Any], Any] | None = None,
        on_tool_result: Callable[[str, ToolExecutionResult], Any] | None = None,
        vision: bool = False,
    ) -> str:
        """Run *requests* and return the combined summary text."""
        index: dict[str, ToolDescriptor] = {}
        for tool in await self.list_available_tools():
            # First match wins across servers.
            index.setdefault(tool.name, tool)

        async def run(request: ToolUseRequest) -> ToolExecutionResult:
            await invoke(on_tool_call, request.tool_name, request.arguments)
            result = await self._run_one(request, index)
            await invoke(on_tool_result, request.tool_name, result)
            return result

        if self.parallel:
            results = await asyncio.gather(*(run(r) for r in requests))
        else:
            results = [await run(r) for r in requests]

        return "\n\n".join(format_result(r, vision) for r in results)

    async def _run_one(
        self,
        request: ToolUseRequest,
        index: dict[str, ToolDescriptor],
    ) -> ToolExecutionResult:
        name = request.tool_name
        descriptor = index.get(name)
        if descriptor is None:
            missing = ToolNotFound(name)
            logger.warning("Model requested an unavailable tool: %s", missing)
            return _error_result(name, str(missing), NOT_FOUND)

        sid = descriptor.server_id
        if not isinstance(request.arguments, dict):
            return _error_result(
                name,
                f"Arguments must be a JSON object, got: {str(request.arguments)[:200]}",
                ErrorCategory.PARAMETER.value,
                sid,
            )

        arguments = normalize_by_schema(request.arguments, descriptor.input_schema)
        ok, message = ToolArgumentValidator.validate(arguments, descriptor.input_schema)
        if not ok:
            return _error_result(
                name, f"Invalid arguments: {message}", ErrorCategory.PARAMETER.value, sid
            )

        if not await self._approved(descriptor, arguments):
            return ToolExecutionResult(
                tool_name=name,
                content=(ContentItem(type="text", text="The user declined this tool call."),),
                category=DECLINED,
                server_id=sid,
            )

        logger.info("Calling %s on %s args=%s", name, sid, mask_arguments(arguments))
        try:
            return await self.manager.call_tool(sid, name, arguments)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            category = classify(exc)
            failure = ToolInvocationError(name, str(exc) or type(exc).__name__, category, exc)
            logger.warning("Tool call failed [%s]: %s", category.value, failure)
            return _error_result(name, str(exc) or type(exc).__name__, category.value, sid)

    async def _approved(self, descriptor: ToolDescriptor, arguments: dict) -> bool:
        try:
            server = self.manager.server(descriptor.server_id)
        except ToolServerNotFound:
            return True
        if descriptor.name not in server.disabled_auto_approve_tools:
            return True
        if self.confirm is None:
            return False
        try:
            verdict = self.confirm(descriptor, arguments)
            if inspect.isawaitable(verdict):
                verdict = await verdict
        except Exception:
            logger.exception("Confirmation callback failed for %s", descriptor.name)
            return False
        return bool(verdict)
