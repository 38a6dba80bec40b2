"""
Exchange event model.

Everything observable about an exchange (the user turn, streamed text and
reasoning, tool calls and their results, routing notes, fatal errors) is
recorded as an ``ExchangeEvent``.  Events are serialised to/from dicts for
SQLite storage.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from toolrelay.types import ToolExecutionResult


@dataclass
class ExchangeEvent:
    """
    A single event in an exchange.

    Attributes
    ----------
    event_type:
        One of the ``EVENT_*`` constants below.
    payload:
        Event-specific, JSON-compatible data.
    event_id:
        UUID4 of the event.
    exchange_id:
        The exchange (one user turn and every pass it caused) the event
        belongs to.
    timestamp:
        UTC creation time.
    """

    event_type: str
    payload: dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    exchange_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExchangeEvent:
        data = dict(data)
        ts = data.get("timestamp")
        if isinstance(ts, str):
            data["timestamp"] = datetime.fromisoformat(ts)
        return cls(**data)


EVENT_USER_MESSAGE = "user_message"
EVENT_ASSISTANT_MESSAGE = "assistant_message"
EVENT_REASONING = "reasoning"
EVENT_TOOL_CALL_REQUEST = "tool_call_request"
EVENT_TOOL_CALL_RESULT = "tool_call_result"
EVENT_ROUTING_NOTE = "routing_note"
EVENT_EXCHANGE_ERROR = "exchange_error"


def user_message_event(exchange_id: str, content: str) -> ExchangeEvent:
    return ExchangeEvent(
        event_type=EVENT_USER_MESSAGE,
        payload={"content": content},
        exchange_id=exchange_id,
    )


def assistant_message_event(
    exchange_id: str,
    content: str,
    model: str | None = None,
) -> ExchangeEvent:
    payload: dict[str, Any] = {"content": content}
    if model is not None:
        payload["model"] = model
    return ExchangeEvent(
        event_type=EVENT_ASSISTANT_MESSAGE,
        payload=payload,
        exchange_id=exchange_id,
    )


def reasoning_event(exchange_id: str, content: str) -> ExchangeEvent:
    return ExchangeEvent(
        event_type=EVENT_REASONING,
        payload={"content": content},
        exchange_id=exchange_id,
    )


def tool_call_request_event(
    exchange_id: str,
    tool_name: str,
    arguments: Any,
) -> ExchangeEvent:
    """Create a ``tool_call_request`` event.  Secrets in *arguments* should already be masked."""
    return ExchangeEvent(
        event_type=EVENT_TOOL_CALL_REQUEST,
        payload={"tool_name": tool_name, "arguments": arguments},
        exchange_id=exchange_id,
    )


def tool_call_result_event(
    exchange_id: str,
    tool_name: str,
    result: ToolExecutionResult,
) -> ExchangeEvent:
    return ExchangeEvent(
        event_type=EVENT_TOOL_CALL_RESULT,
        payload={
            "tool_name": tool_name,
            "server_id": result.server_id,
            "is_error": result.is_error,
            "category": result.category,
            "content": result.text,
            "metadata": result.metadata,
        },
        exchange_id=exchange_id,
    )


def routing_note_event(exchange_id: str, note: str) -> ExchangeEvent:
    return ExchangeEvent(
        event_type=EVENT_ROUTING_NOTE,
        payload={"note": note},
        exchange_id=exchange_id,
    )


def exchange_error_event(
    exchange_id: str,
    error_message: str,
    error_type: str | None = None,
) -> ExchangeEvent:
    payload: dict[str, Any] = {"error_message": error_message}
    if error_type is not None:
        payload["error_type"] = error_type
    return ExchangeEvent(
        event_type=EVENT_EXCHANGE_ERROR,
        payload=payload,
        exchange_id=exchange_id,
    )
