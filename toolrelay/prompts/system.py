"""System prompt builder."""

from __future__ import annotations

import json

from toolrelay.prompts.tool_discipline import TOOL_USE_GRAMMAR
from toolrelay.types import ToolDescriptor


def build_system_prompt(
    tools: list[ToolDescriptor] | None = None,
    base_prompt: str | None = None,
    extra_sections: list[str] | None = None,
) -> str:
    """
    Build the system turn prepended to an exchange.

    Assembles the caller's own prompt, the tool-use grammar and one entry per
    available tool (name, owning server, description, input schema).
    """
    sections: list[str] = []

    if base_prompt:
        sections.append(base_prompt.strip())

    if tools:
        sections.append("## Tool Use\n" + TOOL_USE_GRAMMAR.rstrip())
        tool_lines = []
        for t in tools:
            schema = json.dumps(t.input_schema or {"type": "object"}, ensure_ascii=False)
            tool_lines.append(
                f"<tool>\n  <name>{t.name}</name>\n  <server>{t.server_name}</server>\n"
                f"  <description>{t.description}</description>\n"
                f"  <arguments>{schema}</arguments>\n</tool>"
            )
        sections.append("## Available Tools\n\n<tools>\n" + "\n".join(tool_lines) + "\n</tools>")

    if extra_sections:
        sections.extend(extra_sections)

    return "\n\n".join(sections)
