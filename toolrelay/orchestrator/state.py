"""Per-pass and per-exchange state for the stream orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from toolrelay.llm.types import Message


class ExchangeOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RECURSION_LIMIT = "recursion_limit"
    TOOL_FAILURE = "tool_failure"


@dataclass
class PassState:
    """
    State of one model pass.  Owned by a single ``run`` invocation.

    Attributes
    ----------
    messages:
        Turns sent to the backend for this pass.
    depth:
        1 for the first pass, incremented on every tool round.
    aggregated_text:
        All text deltas of this pass, trimmed to the most recent characters
        once it grows past the orchestrator's limit.
    tool_detected:
        Set once a complete tool-use block was seen; no further text from the
        pass is forwarded to the caller after that.
    did_finish:
        Set when the backend reported ``finish``.
    """

    messages: list[Message]
    depth: int = 1
    aggregated_text: str = ""
    tool_detected: bool = False
    did_finish: bool = False

    def append(self, text: str, limit: int, keep: int) -> None:
        self.aggregated_text += text
        if len(self.aggregated_text) > limit:
            self.aggregated_text = self.aggregated_text[-keep:]

    def next_pass(self, summary: str) -> PassState:
        """State for the follow-up pass that carries the tool results."""
        return PassState(
            messages=[
                *self.messages,
                Message(role="assistant", content=self.aggregated_text),
                Message(role="user", content=summary),
            ],
            depth=self.depth + 1,
        )


@dataclass
class ExchangeResult:
    """What ``on_done`` receives when an exchange ends without a fatal error."""

    text: str
    reasoning: str = ""
    passes: int = 0
    outcome: ExchangeOutcome = ExchangeOutcome.COMPLETED
    diagnostics: tuple[str, ...] = ()
    tool_calls: list[str] = field(default_factory=list)
