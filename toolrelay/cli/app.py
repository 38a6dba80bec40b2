"""
Main CLI application for toolrelay.

Usage:
    toolrelay chat [--provider NAME] [--model ID] [--profile NAME]
    toolrelay route MODEL [--provider NAME]
    toolrelay servers list|health
    toolrelay tools list
    toolrelay config show
    toolrelay version
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from toolrelay import __version__
from toolrelay.config import ConfigServerRegistry, ToolRelayConfig, load_config

app = typer.Typer(name="toolrelay", help="toolrelay - tool-augmented LLM chat over MCP")
servers_app = typer.Typer(help="MCP server management")
tools_app = typer.Typer(help="Tool discovery")
config_app = typer.Typer(help="Configuration management")

app.add_typer(servers_app, name="servers")
app.add_typer(tools_app, name="tools")
app.add_typer(config_app, name="config")

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "toolrelay.yaml",
        Path.cwd() / "toolrelay.yml",
        Path.home() / ".config" / "toolrelay" / "config.yaml",
        Path.home() / ".toolrelay" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def _load(profile: str | None = None, cli_overrides: dict | None = None) -> ToolRelayConfig:
    cfg = load_config(_get_config_path(), profile=profile, cli_overrides=cli_overrides)
    logging.getLogger("toolrelay").setLevel(cfg.log_level.upper())
    return cfg


def _build_manager(cfg: ToolRelayConfig):
    from toolrelay.mcp.cache import TTLCache
    from toolrelay.mcp.connection import ToolServerConnectionManager

    cache = TTLCache(sweep_interval=cfg.mcp.sweep_interval)
    return ToolServerConnectionManager(
        cache,
        probe_timeout=cfg.engine.probe_timeout,
        ttls=cfg.mcp.ttls(),
    )


async def _setup_stack(cfg: ToolRelayConfig):
    """Wire up the full stack for chat."""
    from toolrelay.cli.chat import ChatHandler
    from toolrelay.mcp.coordinator import ToolExecutionCoordinator
    from toolrelay.session.store import ExchangeStore

    manager = _build_manager(cfg)
    manager.cache.start_sweeper()
    idle = float(cfg.mcp.idle_timeout_seconds)
    manager.start_idle_reaper(idle, interval=min(60.0, idle))
    coordinator = ToolExecutionCoordinator(
        manager,
        ConfigServerRegistry(cfg),
        parallel=cfg.engine.parallel_tools,
    )

    store = None
    conversation_id = None
    if cfg.session.record:
        store = ExchangeStore(cfg.session.history_db)
        await store.init()
        conversation_id = await store.create_conversation(
            {"provider": cfg.llm.provider, "model": cfg.llm.model}
        )

    handler = ChatHandler(
        cfg,
        manager,
        coordinator,
        store=store,
        conversation_id=conversation_id,
        console=console,
    )
    coordinator.confirm = handler.confirm_tool
    return handler, manager, store


# ---------------------------------------------------------------------------
# Global options
# ---------------------------------------------------------------------------

@app.callback()
def _main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)"
    ),
):
    logging.basicConfig(
        level=(log_level or "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    provider: Optional[str] = typer.Option(None, help="LLM provider name"),
    model: Optional[str] = typer.Option(None, help="Model identifier"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    no_history: bool = typer.Option(False, "--no-history", help="Do not record exchanges"),
):
    """Start an interactive chat session."""
    overrides: dict = {}
    if provider:
        overrides["llm.provider"] = provider
    if model:
        overrides["llm.model"] = model
    if no_history:
        overrides["session.record"] = False
    cfg = _load(profile, overrides)

    async def _run():
        handler, manager, store = await _setup_stack(cfg)
        try:
            await handler.run_loop()
        finally:
            await manager.stop_idle_reaper()
            await manager.cache.stop_sweeper()
            await manager.close_all()
            if store is not None:
                await store.close()

    asyncio.run(_run())


@app.command()
def route(
    model: str = typer.Argument(..., help="Model identifier"),
    provider: Optional[str] = typer.Option(None, help="Requested provider (defaults to llm.provider)"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Show which provider and transport a model would be routed to."""
    from toolrelay.cli.output import OutputFormatter
    from toolrelay.config import ConfigCredentialStore
    from toolrelay.errors import MissingCredential
    from toolrelay.llm.router import ProviderRouter

    cfg = _load(profile)
    requested = provider or cfg.llm.provider
    try:
        decision = ProviderRouter().resolve(requested, model, ConfigCredentialStore(cfg))
    except MissingCredential as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    OutputFormatter(console).format_routing(requested, decision)


@servers_app.command("list")
def servers_list(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """List configured MCP servers."""
    from toolrelay.cli.output import OutputFormatter

    cfg = _load(profile)
    OutputFormatter(console).format_server_list(ConfigServerRegistry(cfg).get_active_servers())


@servers_app.command("health")
def servers_health(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """Connect to every configured server and ping it."""
    from toolrelay.cli.output import OutputFormatter

    cfg = _load(profile)

    async def _run():
        manager = _build_manager(cfg)
        servers = ConfigServerRegistry(cfg).get_active_servers()
        for server in servers:
            manager.register(server)
        try:
            checks = [await manager.check_health(s.id) for s in servers]
        finally:
            await manager.close_all()
        OutputFormatter(console).format_health(checks)

    asyncio.run(_run())


@tools_app.command("list")
def tools_list(
    server: Optional[str] = typer.Option(None, help="Only list tools of this server id"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """List the tools exposed by the configured MCP servers."""
    from toolrelay.cli.output import OutputFormatter
    from toolrelay.mcp.coordinator import ToolExecutionCoordinator

    cfg = _load(profile)

    async def _run():
        manager = _build_manager(cfg)
        coordinator = ToolExecutionCoordinator(manager, ConfigServerRegistry(cfg))
        try:
            tools = await coordinator.list_available_tools()
        finally:
            await manager.close_all()
        if server:
            tools = [t for t in tools if t.server_id == server]
        OutputFormatter(console).format_tool_list(tools)

    asyncio.run(_run())


@config_app.command("show")
def config_show(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """Show effective config (API keys masked)."""
    from toolrelay.cli.output import OutputFormatter

    cfg = _load(profile)
    OutputFormatter(console).format_config(cfg.to_dict())


@app.command()
def version():
    """Show version."""
    console.print(f"toolrelay v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
