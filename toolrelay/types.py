from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ContentItem:
    type: str  # "text", "image", "audio", "resource"
    text: str | None = None
    data: str | None = None
    mime_type: str | None = None
    uri: str | None = None


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: dict[str, Any]
    server_id: str
    server_name: str


@dataclass(frozen=True)
class ResourceDescriptor:
    uri: str
    name: str
    description: str = ""
    mime_type: str | None = None
    server_id: str = ""


@dataclass(frozen=True)
class ResourceContent:
    uri: str
    text: str | None = None
    blob: str | None = None
    mime_type: str | None = None


@dataclass(frozen=True)
class PromptDescriptor:
    name: str
    description: str = ""
    arguments: tuple[str, ...] = ()
    server_id: str = ""


@dataclass(frozen=True)
class PromptMessage:
    role: str
    content: ContentItem


@dataclass(frozen=True)
class PromptResult:
    name: str
    description: str = ""
    messages: tuple[PromptMessage, ...] = ()


@dataclass(frozen=True)
class ToolExecutionResult:
    tool_name: str
    content: tuple[ContentItem, ...] = ()
    is_error: bool = False
    category: str | None = None
    server_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def text(self) -> str:
        return "\n".join(c.text for c in self.content if c.text)
