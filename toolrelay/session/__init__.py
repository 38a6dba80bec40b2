"""Exchange history: events, SQLite persistence, and the callback recorder."""

from toolrelay.session.events import (
    EVENT_ASSISTANT_MESSAGE,
    EVENT_EXCHANGE_ERROR,
    EVENT_REASONING,
    EVENT_ROUTING_NOTE,
    EVENT_TOOL_CALL_REQUEST,
    EVENT_TOOL_CALL_RESULT,
    EVENT_USER_MESSAGE,
    ExchangeEvent,
    assistant_message_event,
    exchange_error_event,
    reasoning_event,
    routing_note_event,
    tool_call_request_event,
    tool_call_result_event,
    user_message_event,
)
from toolrelay.session.recorder import ExchangeRecorder
from toolrelay.session.store import ExchangeStore

__all__ = [
    "ExchangeEvent",
    "ExchangeRecorder",
    "ExchangeStore",
    # Event type constants
    "EVENT_ASSISTANT_MESSAGE",
    "EVENT_EXCHANGE_ERROR",
    "EVENT_REASONING",
    "EVENT_ROUTING_NOTE",
    "EVENT_TOOL_CALL_REQUEST",
    "EVENT_TOOL_CALL_RESULT",
    "EVENT_USER_MESSAGE",
    # Factory functions
    "assistant_message_event",
    "exchange_error_event",
    "reasoning_event",
    "routing_note_event",
    "tool_call_request_event",
    "tool_call_result_event",
    "user_message_event",
]
