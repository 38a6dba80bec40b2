"""LLM subsystem -- routing, backends, capability predicates, tool-tag parsing."""

from toolrelay.llm.router import ProviderConfig, ProviderRouter
from toolrelay.llm.tool_tags import parse_tool_use
from toolrelay.llm.types import (
    Message,
    RoutingDecision,
    StreamEvent,
    StreamEventType,
    ToolUseRequest,
    TransportMode,
)

__all__ = [
    "Message",
    "ProviderConfig",
    "ProviderRouter",
    "RoutingDecision",
    "StreamEvent",
    "StreamEventType",
    "ToolUseRequest",
    "TransportMode",
    "parse_tool_use",
]
