"""
Exception hierarchy for the exchange engine.

Fatal errors (``MissingCredential``, ``StreamError``) end an exchange and
reach the caller's ``on_error`` callback once.  The remaining errors are
isolated to a single tool entry or finalize the exchange with partial output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from toolrelay.mcp.classifier import ErrorCategory


class ToolRelayError(Exception):
    """Base class for every error raised by toolrelay."""


class MissingCredential(ToolRelayError):
    """The routed provider has no API key or no endpoint configured."""

    def __init__(self, provider: str, missing: str = "API key") -> None:
        super().__init__(f"No {missing} configured for provider {provider!r}")
        self.provider = provider
        self.missing = missing


class RoutingAmbiguous(ToolRelayError):
    """
    The requested model does not belong to the declared provider and no
    compatible fallback is configured.  Recorded as a diagnostic, never raised
    out of the router.
    """

    def __init__(self, provider: str, model: str) -> None:
        super().__init__(
            f"Model {model!r} does not look like a {provider} model and no "
            f"compatible provider is configured; keeping {provider!r}"
        )
        self.provider = provider
        self.model = model


class StreamError(ToolRelayError):
    """The model backend reported an error before finishing the stream."""

    def __init__(self, message: str, cause: Any = None) -> None:
        super().__init__(message)
        self.cause = cause


class ToolNotFound(ToolRelayError):
    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolServerNotFound(ToolRelayError):
    def __init__(self, server_id: str) -> None:
        super().__init__(f"Tool server not found: {server_id}")
        self.server_id = server_id


class ToolInvocationError(ToolRelayError):
    """A tool call failed; ``category`` carries the classifier's verdict."""

    def __init__(
        self,
        tool_name: str,
        message: str,
        category: ErrorCategory,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name
        self.category = category
        self.cause = cause


class RecursionLimitReached(ToolRelayError):
    def __init__(self, depth: int) -> None:
        super().__init__(f"Tool recursion limit reached at depth {depth}")
        self.depth = depth


class ExchangeCancelled(ToolRelayError):
    """The caller cancelled the exchange.  Not reported as an error."""
