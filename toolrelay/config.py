"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < env vars < CLI flags < per-session overrides
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any

import yaml

from toolrelay.llm.router import ProviderConfig
from toolrelay.mcp.cache import DEFAULT_SWEEP_INTERVAL
from toolrelay.mcp.connection import CacheTTLs, ServerConfig


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ProviderEntry:
    api_key: str = ""
    api_key_env: str = ""
    base_url: str = ""
    enabled: bool = True


_DEFAULT_KEY_ENVS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GEMINI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "volc": "ARK_API_KEY",
    "zhipu": "ZHIPU_API_KEY",
}


def _default_providers() -> dict[str, ProviderEntry]:
    return {name: ProviderEntry(api_key_env=env) for name, env in _DEFAULT_KEY_ENVS.items()}


@dataclass
class LLMConfig:
    provider: str = "openai"
    model: str = "gpt-4o"
    timeout_seconds: int = 120
    max_output_tokens: int = 4_096
    thinking_budget: int = 0
    system_prompt: str = ""


@dataclass
class EngineConfig:
    max_depth: int = 3
    aggregate_limit: int = 200_000
    aggregate_keep: int = 100_000
    parallel_tools: bool = False
    probe_timeout: float = 3.0


@dataclass
class MCPConfig:
    servers: list[dict] = field(default_factory=list)
    tools_ttl: float = 5 * 60.0
    resources_ttl: float = 60 * 60.0
    resource_ttl: float = 30 * 60.0
    prompts_ttl: float = 60 * 60.0
    prompt_ttl: float = 30 * 60.0
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    idle_timeout_seconds: int = 600

    def ttls(self) -> CacheTTLs:
        return CacheTTLs(
            tools=self.tools_ttl,
            resources=self.resources_ttl,
            resource=self.resource_ttl,
            prompts=self.prompts_ttl,
            prompt=self.prompt_ttl,
        )


@dataclass
class SessionConfig:
    history_db: str = "~/.toolrelay/history.db"
    record: bool = True


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class ToolRelayConfig:
    providers: dict[str, ProviderEntry] = field(default_factory=_default_providers)
    llm: LLMConfig = field(default_factory=LLMConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    mcp: MCPConfig = field(default_factory=MCPConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    log_level: str = "WARNING"
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    # ----- per-session overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Set a per-session override using dot notation (e.g. 'llm.model')."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def to_dict(self, *, mask_secrets: bool = True) -> dict:
        d = asdict(self)
        d.pop("_overrides", None)
        if mask_secrets:
            for entry in d["providers"].values():
                if entry.get("api_key"):
                    entry["api_key"] = "***"
        return d


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute (or dict key)."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = obj[part] if isinstance(obj, dict) else getattr(obj, part)
    if isinstance(obj, dict):
        obj[parts[-1]] = value
    else:
        setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base, returning a new dict."""
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    if target_type is list:
        return [s.strip() for s in value.split(",") if s.strip()]
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in raw.items() if k in valid_fields}
    return cls(**filtered)


def _build_providers(raw: dict) -> dict[str, ProviderEntry]:
    providers = _default_providers()
    for name, entry in (raw or {}).items():
        base = asdict(providers[name]) if name in providers else {}
        providers[name] = _build_section(ProviderEntry, {**base, **(entry or {})})
    return providers


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "TOOLRELAY_LLM_PROVIDER":         ("llm.provider", str),
    "TOOLRELAY_LLM_MODEL":            ("llm.model", str),
    "TOOLRELAY_LLM_TIMEOUT":          ("llm.timeout_seconds", int),
    "TOOLRELAY_LLM_MAX_OUTPUT":       ("llm.max_output_tokens", int),
    "TOOLRELAY_LLM_THINKING_BUDGET":  ("llm.thinking_budget", int),
    "TOOLRELAY_ENGINE_MAX_DEPTH":     ("engine.max_depth", int),
    "TOOLRELAY_ENGINE_PARALLEL":      ("engine.parallel_tools", bool),
    "TOOLRELAY_ENGINE_PROBE_TIMEOUT": ("engine.probe_timeout", float),
    "TOOLRELAY_MCP_TOOLS_TTL":        ("mcp.tools_ttl", float),
    "TOOLRELAY_MCP_SWEEP_INTERVAL":   ("mcp.sweep_interval", float),
    "TOOLRELAY_MCP_IDLE_TIMEOUT":     ("mcp.idle_timeout_seconds", int),
    "TOOLRELAY_SESSION_HISTORY_DB":   ("session.history_db", str),
    "TOOLRELAY_SESSION_RECORD":       ("session.record", bool),
    "TOOLRELAY_LOG_LEVEL":            ("log_level", str),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ToolRelayConfig:
    """
    Build a ToolRelayConfig by layering sources in precedence order:

        defaults  <  config file  <  env vars  <  CLI flags  <  per-session overrides

    Parameters
    ----------
    config_path : path to YAML config file (optional)
    profile : name of a profile to apply from the config file
    cli_overrides : dict of dotpath -> value CLI flag overrides
    """
    raw: dict[str, Any] = {}

    # --- 1. Config file ---
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile and "profiles" in raw:
        profile_data = raw.get("profiles", {}).get(profile, {})
        if profile_data:
            raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    cfg = ToolRelayConfig(
        providers=_build_providers(raw.get("providers", {})),
        llm=_build_section(LLMConfig, raw.get("llm", {})),
        engine=_build_section(EngineConfig, raw.get("engine", {})),
        mcp=_build_section(MCPConfig, raw.get("mcp", {})),
        session=_build_section(SessionConfig, raw.get("session", {})),
        log_level=raw.get("log_level", "WARNING"),
        profiles=raw.get("profiles", {}),
    )

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 4. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            _apply_dotpath(cfg, dotpath, value)

    return cfg


# ---------------------------------------------------------------------------
# Adapters used by the engine
# ---------------------------------------------------------------------------

class ConfigCredentialStore:
    """Serves API keys and provider settings out of a ``ToolRelayConfig``."""

    def __init__(self, cfg: ToolRelayConfig) -> None:
        self.cfg = cfg

    def get_api_key(self, provider: str) -> str | None:
        entry = self.cfg.providers.get(provider)
        if entry is None:
            return None
        if entry.api_key:
            return entry.api_key
        if entry.api_key_env:
            return os.environ.get(entry.api_key_env) or None
        return None

    def get_config(self, provider: str) -> ProviderConfig:
        entry = self.cfg.providers.get(provider)
        if entry is None:
            return ProviderConfig(enabled=False)
        return ProviderConfig(enabled=entry.enabled, base_url=entry.base_url or None)


class ConfigServerRegistry:
    """Turns the ``mcp.servers`` list into ``ServerConfig`` objects."""

    def __init__(self, cfg: ToolRelayConfig) -> None:
        self.cfg = cfg

    def get_active_servers(self) -> list[ServerConfig]:
        servers = []
        for raw in self.cfg.mcp.servers:
            entry = dict(raw)
            entry.setdefault("id", entry.get("name", ""))
            entry.setdefault("name", entry["id"])
            if "url" in entry and "base_url" not in entry:
                entry["base_url"] = entry.pop("url")
            server = _build_section(ServerConfig, entry)
            if server.enabled:
                servers.append(server)
        return servers
