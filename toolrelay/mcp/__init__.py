"""MCP tool-server subsystem -- caching, connections, classification, execution."""

from toolrelay.mcp.cache import CacheKeys, CacheStats, TTLCache
from toolrelay.mcp.classifier import ErrorCategory, ErrorStats, classify, is_retryable
from toolrelay.mcp.connection import (
    ConnectionStatus,
    ServerConfig,
    ToolServerConnectionManager,
)
from toolrelay.mcp.coordinator import ToolExecutionCoordinator

__all__ = [
    "CacheKeys",
    "CacheStats",
    "ConnectionStatus",
    "ErrorCategory",
    "ErrorStats",
    "ServerConfig",
    "TTLCache",
    "ToolExecutionCoordinator",
    "ToolServerConnectionManager",
    "classify",
    "is_retryable",
]
