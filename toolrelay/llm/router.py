"""
Provider router -- decides which backend an exchange actually talks to.

Users frequently pick the OpenAI entry but type a model name served by a
compatible third-party gateway (``deepseek-r1``, ``glm-4``...).  When the
OpenAI entry points at the official endpoint and the model is not an OpenAI
model, the router looks for a configured compatible provider and substitutes
it.  If none is configured the request keeps its provider and the mismatch
is recorded as a diagnostic; the backend call may still fail later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

from toolrelay.errors import MissingCredential, RoutingAmbiguous
from toolrelay.llm.capabilities import (
    ANTHROPIC,
    COMPATIBLE_PROVIDERS,
    DEEPSEEK,
    GOOGLE,
    NATIVE_PROVIDERS,
    OPENAI,
    VOLC,
    ZHIPU,
    is_official_model,
    model_family,
    normalize_provider,
)
from toolrelay.llm.types import RoutingDecision, TransportMode

logger = logging.getLogger(__name__)

OFFICIAL_BASE_URLS: dict[str, str] = {
    OPENAI: "https://api.openai.com/v1",
    ANTHROPIC: "https://api.anthropic.com",
    GOOGLE: "https://generativelanguage.googleapis.com/v1beta",
}

COMPATIBLE_BASE_URLS: dict[str, str] = {
    DEEPSEEK: "https://api.deepseek.com/v1",
    VOLC: "https://ark.cn-beijing.volces.com/api/v3",
    ZHIPU: "https://open.bigmodel.cn/api/paas/v4",
}


@dataclass(frozen=True)
class ProviderConfig:
    enabled: bool = True
    base_url: str | None = None


class CredentialStore(Protocol):
    def get_api_key(self, provider: str) -> str | None: ...

    def get_config(self, provider: str) -> ProviderConfig: ...


def _same_url(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return a.rstrip("/").lower() == b.rstrip("/").lower()


def is_official_endpoint(provider: str, base_url: str | None) -> bool:
    """True when *base_url* is unset or points at *provider*'s own API."""
    if not base_url:
        return True
    official = OFFICIAL_BASE_URLS.get(provider)
    if official is None:
        return False
    # "https://api.openai.com" and ".../v1" are the same surface.
    return _same_url(base_url, official) or _same_url(base_url, official.rsplit("/v", 1)[0])


class ProviderRouter:
    """
    Resolve a requested (provider, model) pair into a ``RoutingDecision``.

    Parameters
    ----------
    default_provider:
        The backend whose misassigned models get rerouted.
    candidates:
        Generic-compatible providers searched for a substitute, in order.
    """

    def __init__(
        self,
        default_provider: str = OPENAI,
        candidates: Sequence[str] = COMPATIBLE_PROVIDERS,
    ) -> None:
        self.default_provider = default_provider
        self.candidates = tuple(candidates)

    def resolve(
        self,
        requested_provider: str,
        model: str,
        credentials: CredentialStore,
    ) -> RoutingDecision:
        provider = normalize_provider(requested_provider)
        diagnostics: list[str] = []

        if self._looks_misassigned(provider, model, credentials):
            substitute = self._find_substitute(model, credentials)
            if substitute is not None:
                note = f"rerouted {provider} -> {substitute} for model {model!r}"
                logger.info("Routing: %s", note)
                diagnostics.append(note)
                provider = substitute
            else:
                ambiguous = RoutingAmbiguous(provider, model)
                logger.warning("Routing: %s", ambiguous)
                diagnostics.append(str(ambiguous))

        api_key = credentials.get_api_key(provider)
        if not api_key:
            raise MissingCredential(provider)

        configured = credentials.get_config(provider).base_url or None
        if provider in NATIVE_PROVIDERS and is_official_endpoint(provider, configured):
            transport = TransportMode.NATIVE
            base_url = OFFICIAL_BASE_URLS[provider]
        else:
            transport = TransportMode.GENERIC_COMPATIBLE
            base_url = configured or COMPATIBLE_BASE_URLS.get(provider)
            if not base_url:
                raise MissingCredential(provider, "base URL")

        return RoutingDecision(
            provider=provider,
            model_id=model,
            transport=transport,
            api_key=api_key,
            base_url=base_url,
            diagnostics=tuple(diagnostics),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _looks_misassigned(self, provider: str, model: str, credentials: CredentialStore) -> bool:
        if provider != self.default_provider:
            return False
        configured = credentials.get_config(provider).base_url
        if not is_official_endpoint(provider, configured):
            # A custom gateway may legitimately serve any model name.
            return False
        return not is_official_model(provider, model)

    def _find_substitute(self, model: str, credentials: CredentialStore) -> str | None:
        family = model_family(model)
        ordered = sorted(self.candidates, key=lambda c: c != family)
        for candidate in ordered:
            cfg = credentials.get_config(candidate)
            if not cfg.enabled:
                continue
            if credentials.get_api_key(candidate) or cfg.base_url:
                return candidate
        return None


def resolve(
    requested_provider: str,
    model: str,
    credentials: CredentialStore,
) -> RoutingDecision:
    """Module-level shortcut using the default router."""
    return ProviderRouter().resolve(requested_provider, model, credentials)
