"""Model backends and the factory that picks one for a routing decision."""

from __future__ import annotations

from toolrelay.errors import MissingCredential
from toolrelay.llm.capabilities import ANTHROPIC, GOOGLE
from toolrelay.llm.providers.anthropic import AnthropicBackend
from toolrelay.llm.providers.base import Backend
from toolrelay.llm.providers.openai_compat import OpenAICompatBackend
from toolrelay.llm.types import RoutingDecision, TransportMode

__all__ = ["AnthropicBackend", "Backend", "OpenAICompatBackend", "create_backend"]


def create_backend(
    decision: RoutingDecision,
    *,
    timeout: float = 120.0,
    max_output: int | None = None,
    thinking_budget: int | None = None,
) -> Backend:
    """
    Build the backend a ``RoutingDecision`` calls for.

    Native Anthropic uses the Messages API.  Native Google goes through
    Gemini's OpenAI-compatible surface.  Everything else speaks
    ``/chat/completions`` at the decision's base URL.
    """
    if decision.transport is TransportMode.NATIVE and decision.provider == ANTHROPIC:
        return AnthropicBackend(
            url=decision.base_url or "https://api.anthropic.com",
            model=decision.model_id,
            api_key=decision.api_key,
            max_output=max_output or 4096,
            thinking_budget=thinking_budget,
            timeout=timeout,
        )

    url = decision.base_url
    if not url:
        raise MissingCredential(decision.provider, "base URL")
    if decision.transport is TransportMode.NATIVE and decision.provider == GOOGLE:
        url = f"{url.rstrip('/')}/openai"
    return OpenAICompatBackend(
        url=url,
        model=decision.model_id,
        api_key=decision.api_key,
        max_output=max_output,
        timeout=timeout,
    )
