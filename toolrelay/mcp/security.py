"""Redaction of secrets before headers or arguments reach a log line."""

from __future__ import annotations

import re
from typing import Any

_SENSITIVE_KEY = re.compile(
    r"authorization|token|api[-_ ]?key|secret|password|cookie|session"
    r"|credential|bearer|key$",
    re.IGNORECASE,
)


def is_sensitive_key(key: str) -> bool:
    return bool(_SENSITIVE_KEY.search(key))


def mask_value(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-2:]}"


def mask_headers(headers: dict[str, str] | None) -> dict[str, str]:
    if not headers:
        return {}
    return {
        k: mask_value(str(v)) if is_sensitive_key(k) else v
        for k, v in headers.items()
    }


def mask_arguments(arguments: Any) -> Any:
    """Recursively mask values whose keys look sensitive."""
    if isinstance(arguments, dict):
        return {
            k: mask_value(str(v)) if is_sensitive_key(str(k)) and isinstance(v, (str, int))
            else mask_arguments(v)
            for k, v in arguments.items()
        }
    if isinstance(arguments, list):
        return [mask_arguments(v) for v in arguments]
    return arguments
