"""
Failure classification for tool-server calls.

``classify`` maps any failure (exception, JSON-RPC error, HTTP status) onto a
fixed set of categories.  ``is_retryable`` gives the verdict callers use to
decide whether trying again makes sense; the engine itself never retries.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

INVALID_PARAMS_CODE = -32602


class ErrorCategory(str, Enum):
    PARAMETER = "parameter"
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    UNKNOWN = "unknown"


_TIMEOUT_PATTERNS = re.compile(
    r"timeout|timed out|etimedout|deadline exceeded", re.IGNORECASE
)
_NETWORK_PATTERNS = re.compile(
    r"econnrefused|econnreset|enotfound|connection refused|connection reset"
    r"|connection failed|fetch failed|unable to connect|network is unreachable",
    re.IGNORECASE,
)
_SERVER_PATTERNS = re.compile(
    r"internal server error|service unavailable|bad gateway|gateway timeout"
    r"|\b50[0234]\b",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Attribute probes
# ---------------------------------------------------------------------------


def _error_code(error: Any) -> int | None:
    """Find a JSON-RPC code on the error itself or on its ``error`` payload."""
    if isinstance(error, dict):
        code = error.get("code")
        if code is None and isinstance(error.get("error"), dict):
            code = error["error"].get("code")
        return code if isinstance(code, int) else None

    code = getattr(error, "code", None)
    if isinstance(code, int):
        return code
    inner = getattr(error, "error", None)
    if isinstance(inner, dict):
        code = inner.get("code")
    else:
        code = getattr(inner, "code", None)
    return code if isinstance(code, int) else None


def _http_status(error: Any) -> int | None:
    if isinstance(error, dict):
        status = error.get("status") or error.get("status_code")
        return status if isinstance(status, int) else None
    for attr in ("status", "status_code"):
        status = getattr(error, attr, None)
        if isinstance(status, int):
            return status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _message(error: Any) -> str:
    if isinstance(error, dict):
        msg = error.get("message")
        if msg is None and isinstance(error.get("error"), dict):
            msg = error["error"].get("message")
        return str(msg or "")
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error or "")


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify(error: Any) -> ErrorCategory:
    """
    Categorize *error*.

    Order of checks: invalid-params code, exception type, HTTP status,
    message text.  Anything unmatched is ``UNKNOWN``.
    """
    if _error_code(error) == INVALID_PARAMS_CODE:
        return ErrorCategory.PARAMETER

    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (ConnectionError, httpx.TransportError)):
        return ErrorCategory.NETWORK

    status = _http_status(error)
    if status is not None:
        if status == 408:
            return ErrorCategory.TIMEOUT
        if 500 <= status < 600:
            return ErrorCategory.SERVER

    message = _message(error)
    if _TIMEOUT_PATTERNS.search(message):
        return ErrorCategory.TIMEOUT
    if _NETWORK_PATTERNS.search(message):
        return ErrorCategory.NETWORK
    if _SERVER_PATTERNS.search(message):
        return ErrorCategory.SERVER
    return ErrorCategory.UNKNOWN


def is_retryable(category: ErrorCategory) -> bool:
    return category is not ErrorCategory.PARAMETER


def describe(error: Any, category: ErrorCategory | None = None) -> str:
    """One-line summary for logs and tool-result text."""
    category = category or classify(error)
    retry = "retryable" if is_retryable(category) else "not retryable"
    return f"[{category.value}] {_message(error)} ({retry})"


# ---------------------------------------------------------------------------
# Per-server statistics
# ---------------------------------------------------------------------------


@dataclass
class ServerErrorStats:
    total: int = 0
    by_category: dict[ErrorCategory, int] = field(default_factory=dict)
    last_error: str | None = None
    last_category: ErrorCategory | None = None
    last_at: float | None = None


class ErrorStats:
    """Error counters keyed by server id."""

    def __init__(self) -> None:
        self._servers: dict[str, ServerErrorStats] = {}

    def record(self, server_id: str, error: Any) -> ErrorCategory:
        category = classify(error)
        stats = self._servers.setdefault(server_id, ServerErrorStats())
        stats.total += 1
        stats.by_category[category] = stats.by_category.get(category, 0) + 1
        stats.last_error = _message(error)
        stats.last_category = category
        stats.last_at = time.time()
        return category

    def get(self, server_id: str) -> ServerErrorStats | None:
        return self._servers.get(server_id)

    def reset(self, server_id: str | None = None) -> None:
        if server_id is None:
            self._servers.clear()
        else:
            self._servers.pop(server_id, None)

    def summary(self) -> dict[str, dict[str, Any]]:
        return {
            sid: {
                "total": s.total,
                "by_category": {c.value: n for c, n in s.by_category.items()},
                "last_error": s.last_error,
            }
            for sid, s in self._servers.items()
        }
