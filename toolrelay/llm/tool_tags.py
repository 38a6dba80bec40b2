"""
In-band tool-use grammar.

Models request tools by writing a block anywhere in their output::

    <tool_use>
      <name>search</name>
      <arguments>{"query": "weather"}</arguments>
    </tool_use>

Whitespace around the name and the argument body is ignored.  Only complete
blocks are ever parsed.
"""

from __future__ import annotations

import json
import logging
import re

from toolrelay.llm.types import ToolUseRequest

logger = logging.getLogger(__name__)

OPEN_TAG = "<tool_use>"
CLOSE_TAG = "</tool_use>"

TOOL_USE_PATTERN = re.compile(
    r"<tool_use>(.*?)<name>(.*?)</name>(.*?)<arguments>(.*?)</arguments>(.*?)</tool_use>",
    re.DOTALL,
)


def parse_tool_use(text: str) -> list[ToolUseRequest]:
    """Return every complete tool-use block in *text*, in document order."""
    requests: list[ToolUseRequest] = []
    if CLOSE_TAG not in text:
        return requests
    for idx, match in enumerate(TOOL_USE_PATTERN.finditer(text)):
        name = match.group(2).strip()
        raw_args = match.group(4).strip()
        try:
            arguments = json.loads(raw_args)
        except json.JSONDecodeError:
            logger.debug("Arguments for %s are not JSON; passing raw text", name)
            arguments = raw_args
        requests.append(ToolUseRequest(tool_name=name, arguments=arguments, call_id=f"{name}-{idx}"))
    return requests


def contains_tool_use(text: str) -> bool:
    return CLOSE_TAG in text and TOOL_USE_PATTERN.search(text) is not None


def closes_block(text: str, appended: int) -> bool:
    """
    Cheap check whether the last *appended* characters of *text* may have
    completed a block.  Only then is the full pattern worth running.
    """
    window = text[-(appended + len(CLOSE_TAG)):]
    return CLOSE_TAG in window


def strip_tool_use(text: str) -> str:
    """Remove complete blocks, leaving the surrounding prose."""
    return TOOL_USE_PATTERN.sub("", text).strip()
