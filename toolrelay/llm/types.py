"""Core types for the LLM subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass
class Message:
    """A single message in a conversation."""

    role: str  # "system", "user", "assistant"
    content: str


class StreamEventType(str, Enum):
    TEXT_DELTA = "text-delta"
    REASONING_START = "reasoning-start"
    REASONING_DELTA = "reasoning-delta"
    REASONING_END = "reasoning-end"
    FINISH = "finish"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """
    One event from a model backend stream.

    *text* is set for ``text-delta`` and ``reasoning-delta``; *cause* for
    ``error``.  Backends open at most one reasoning span at a time.
    """

    type: StreamEventType
    text: str = ""
    cause: Any = None

    @classmethod
    def text_delta(cls, text: str) -> StreamEvent:
        return cls(StreamEventType.TEXT_DELTA, text=text)

    @classmethod
    def reasoning_start(cls) -> StreamEvent:
        return cls(StreamEventType.REASONING_START)

    @classmethod
    def reasoning_delta(cls, text: str) -> StreamEvent:
        return cls(StreamEventType.REASONING_DELTA, text=text)

    @classmethod
    def reasoning_end(cls) -> StreamEvent:
        return cls(StreamEventType.REASONING_END)

    @classmethod
    def finish(cls) -> StreamEvent:
        return cls(StreamEventType.FINISH)

    @classmethod
    def error(cls, cause: Any) -> StreamEvent:
        return cls(StreamEventType.ERROR, cause=cause)


class TransportMode(str, Enum):
    NATIVE = "native"
    GENERIC_COMPATIBLE = "generic-compatible"


@dataclass(frozen=True)
class RoutingDecision:
    """
    Where an exchange is sent.  Computed once and fixed for every pass.

    *diagnostics* holds human-readable notes such as a provider substitution
    or an unresolved provider/model mismatch.
    """

    provider: str
    model_id: str
    transport: TransportMode
    api_key: str = field(repr=False)
    base_url: str | None = None
    diagnostics: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolUseRequest:
    """
    A tool invocation parsed from model text.

    *arguments* is the decoded JSON body, or the raw text when it does not
    parse as JSON.
    """

    tool_name: str
    arguments: Any
    call_id: str = ""
