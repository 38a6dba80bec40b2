"""
Model capability predicates keyed on provider and model-name patterns.

Vendors release models faster than any static registry can follow, so each
capability is a small regex table.  Patterns are matched against the
lower-cased model name; nothing here depends on the orchestrator.
"""

from __future__ import annotations

import re

PROVIDER_ALIASES = {"gemini": "google"}

OPENAI = "openai"
ANTHROPIC = "anthropic"
GOOGLE = "google"
DEEPSEEK = "deepseek"
VOLC = "volc"
ZHIPU = "zhipu"

NATIVE_PROVIDERS = (OPENAI, ANTHROPIC, GOOGLE)
COMPATIBLE_PROVIDERS = (DEEPSEEK, VOLC, ZHIPU)


def normalize_provider(provider: str) -> str:
    p = (provider or "").strip().lower()
    return PROVIDER_ALIASES.get(p, p)


# ---------------------------------------------------------------------------
# Model families
# ---------------------------------------------------------------------------

_OFFICIAL_FAMILY: dict[str, re.Pattern[str]] = {
    OPENAI: re.compile(
        r"^(ft:)?(gpt-|chatgpt-|o\d(-|$)|text-embedding-|dall-e|whisper|tts-"
        r"|omni-moderation|davinci|babbage|codex)"
    ),
    ANTHROPIC: re.compile(r"^claude-"),
    GOOGLE: re.compile(r"^(models/)?(gemini|gemma|learnlm|imagen|text-embedding)"),
    DEEPSEEK: re.compile(r"^deepseek"),
    VOLC: re.compile(r"^(doubao|ep-\d|skylark)"),
    ZHIPU: re.compile(r"^(glm|chatglm|cogview|codegeex|charglm)"),
}


def is_official_model(provider: str, model: str) -> bool:
    """True when *model* reads like one of *provider*'s own model names."""
    pattern = _OFFICIAL_FAMILY.get(normalize_provider(provider))
    return bool(pattern and pattern.search(_norm(model)))


def model_family(model: str) -> str | None:
    """The generic-compatible vendor whose naming *model* follows, if any."""
    m = _norm(model)
    for provider in COMPATIBLE_PROVIDERS:
        if _OFFICIAL_FAMILY[provider].search(m):
            return provider
    return None


# ---------------------------------------------------------------------------
# Reasoning
# ---------------------------------------------------------------------------

_REASONING = re.compile(
    r"(^o\d(-|$)|gpt-5|deepseek-(r1|reasoner)|claude-(3-7|3\.7|sonnet-4|opus-4|haiku-4|[a-z]+-4)"
    r"|gemini-(2\.5|3)|qwq|qwen3|qvq|glm-(4\.5|4\.6|z1)|glm-z1|doubao-seed-1[.-]6"
    r"|thinking|reason|magistral|grok-(3-mini|4))"
)
_REASONING_EXCLUDE = re.compile(r"(gpt-5-chat|non-?thinking|-instruct$)")


def supports_reasoning(provider: str, model: str) -> bool:
    m = _norm(model)
    if not m or _REASONING_EXCLUDE.search(m):
        return False
    return bool(_REASONING.search(m))


# ---------------------------------------------------------------------------
# Vision
# ---------------------------------------------------------------------------

_OPENAI_VISION = re.compile(
    r"\b(gpt-4o(?:-[\w-]+)?|chatgpt-4o(?:-[\w-]+)?|gpt-4\.1(?:-[\w-]+)?|gpt-4\.5(?:-[\w-]+)?"
    r"|gpt-5(?:-[\w-]+)?|o1(?:-[\w-]+)?|o3(?:-[\w-]+)?|o4(?:-[\w-]+)?|omni)\b"
)
_OPENAI_VISION_EXCLUDE = re.compile(r"\b(o1-mini|o3-mini|o1-preview)\b")
_ANTHROPIC_VISION = re.compile(r"\bclaude-(3|4|haiku-4|sonnet-4|opus-4)")
_GEMINI_VISION = re.compile(r"\bgemini\b")
_DEEPSEEK_VISION = re.compile(r"\bdeepseek[\w-]*(vl|vision)\b")
_ZHIPU_VISION = re.compile(r"\bglm-4(?:\.\d+)?v(?:-[\w-]+)?\b")
_VOLC_VISION = re.compile(
    r"\b(doubao[\w-]*(vl|vision|omni|seed-1[.-]6)|step-1v(?:-[\w-]+)?|step-1o[\w-]*vision)\b"
)
_MISC_VISION = re.compile(
    r"(llava|minicpm|internvl2|qwen(?:\d*(?:\.\d+)?)?-?vl|qwen(?:\d*(?:\.\d+)?)?-?omni|qvq|pixtral"
    r"|grok-(?:vision|4(?:-[\w-]+)?)|llama-(?:3\.2-vision|4(?:-[\w-]+)?)|gemma-3(?:-[\w-]+)?"
    r"|kimi-vl|qwen3-omni)"
)


def supports_vision(provider: str, model: str) -> bool:
    m = _norm(model)
    p = normalize_provider(provider)
    if p == OPENAI:
        if _OPENAI_VISION_EXCLUDE.search(m):
            return False
        # OpenAI-compatible gateways often serve other vendors' models.
        return any(
            rx.search(m)
            for rx in (_OPENAI_VISION, _DEEPSEEK_VISION, _ZHIPU_VISION, _VOLC_VISION, _MISC_VISION)
        )
    if p == ANTHROPIC:
        return bool(_ANTHROPIC_VISION.search(m))
    if p == GOOGLE:
        return bool(_GEMINI_VISION.search(m))
    if p == DEEPSEEK:
        return bool(_DEEPSEEK_VISION.search(m))
    if p == ZHIPU:
        return bool(_ZHIPU_VISION.search(m))
    if p == VOLC:
        return bool(_VOLC_VISION.search(m))
    return any(
        rx.search(m)
        for rx in (
            _OPENAI_VISION, _ANTHROPIC_VISION, _GEMINI_VISION, _DEEPSEEK_VISION,
            _ZHIPU_VISION, _VOLC_VISION, _MISC_VISION,
        )
    )


# ---------------------------------------------------------------------------
# Tool use
# ---------------------------------------------------------------------------

_NO_TOOLS = re.compile(
    r"(embedding|embed-|rerank|dall-e|imagen|cogview|tts|whisper|moderation|seedream|seededit"
    r"|o1-mini|o1-preview)"
)


def supports_tool_use(provider: str, model: str) -> bool:
    """Whether the model can follow the in-band tool-use grammar at all."""
    m = _norm(model)
    return bool(m) and not _NO_TOOLS.search(m)


def _norm(model: str) -> str:
    return (model or "").strip().lower()
