"""
Caller-facing callback surface of an exchange.

Every callback is optional and may be a plain function or a coroutine
function.  A callback that raises is logged and otherwise ignored; it never
aborts the exchange.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from toolrelay.orchestrator.state import ExchangeResult
    from toolrelay.types import ToolExecutionResult

logger = logging.getLogger(__name__)


@dataclass
class ExchangeCallbacks:
    on_token: Callable[[str], Any] | None = None
    on_reasoning: Callable[[str], Any] | None = None
    on_reasoning_start: Callable[[], Any] | None = None
    on_reasoning_end: Callable[[], Any] | None = None
    on_tool_call: Callable[[str, Any], Any] | None = None
    on_tool_result: Callable[[str, ToolExecutionResult], Any] | None = None
    on_done: Callable[[ExchangeResult], Any] | None = None
    on_error: Callable[[BaseException], Any] | None = None


async def invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Call *callback* with *args*, awaiting it if it returns an awaitable."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        name = getattr(callback, "__qualname__", repr(callback))
        logger.exception("Callback %s failed", name)
