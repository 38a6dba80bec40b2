"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from toolrelay.llm.types import RoutingDecision, TransportMode
from toolrelay.mcp.classifier import ErrorCategory
from toolrelay.mcp.connection import ConnectionStatus, HealthCheck, ServerConfig
from toolrelay.mcp.security import mask_arguments, mask_headers
from toolrelay.session.events import ExchangeEvent
from toolrelay.types import ToolDescriptor, ToolExecutionResult

STATUS_COLORS = {
    ConnectionStatus.CONNECTED: "green",
    ConnectionStatus.CONNECTING: "yellow",
    ConnectionStatus.DISCONNECTED: "dim",
}

CATEGORY_COLORS = {
    ErrorCategory.PARAMETER.value: "yellow",
    ErrorCategory.NETWORK.value: "red",
    ErrorCategory.TIMEOUT.value: "red",
    ErrorCategory.SERVER.value: "bold red",
    ErrorCategory.UNKNOWN.value: "red",
}

EVENT_COLORS = {
    "user_message": "blue",
    "assistant_message": "green",
    "reasoning": "magenta",
    "tool_call_request": "yellow",
    "tool_call_result": "cyan",
    "routing_note": "dim",
    "exchange_error": "red",
}


class OutputFormatter:
    """Rich-based output formatting for the toolrelay CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def format_tool_list(self, tools: list[ToolDescriptor]) -> None:
        if not tools:
            self.console.print("[dim]No tools available.[/dim]")
            return

        table = Table(title="Available Tools", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Server", no_wrap=True)
        table.add_column("Description")

        for t in tools:
            table.add_row(t.name, t.server_name, t.description)

        self.console.print(table)

    def format_tool_info(self, tool: ToolDescriptor) -> None:
        self.console.print(Panel(
            f"[bold]{tool.name}[/bold]\n\n"
            f"[dim]Server:[/dim] {tool.server_name} ({tool.server_id})\n\n"
            f"{tool.description}",
            title=f"Tool: {tool.name}",
        ))
        schema_json = json.dumps(tool.input_schema, indent=2)
        self.console.print(Syntax(schema_json, "json", theme="monokai"))

    def format_tool_call(self, tool_name: str, arguments: Any) -> None:
        if isinstance(arguments, dict):
            shown = json.dumps(mask_arguments(arguments), default=str)
        else:
            shown = str(arguments)
        self.console.print(f"\n  [yellow]-> {tool_name}[/yellow] [dim]{shown[:200]}[/dim]")

    def format_tool_result(self, tool_name: str, result: ToolExecutionResult) -> None:
        if result.is_error:
            color = CATEGORY_COLORS.get(result.category or "", "red")
            status = f"[{color}]FAILED ({result.category})[/{color}]"
        elif result.category:
            status = f"[yellow]{result.category.upper()}[/yellow]"
        else:
            status = "[green]OK[/green]"
        self.console.print(f"  [{tool_name}] {status}: {result.text[:200]}")

    def format_confirmation(self, tool: ToolDescriptor, arguments: dict) -> None:
        args_str = json.dumps(mask_arguments(arguments), indent=2, default=str)
        self.console.print(
            "[bold yellow]Tool call requires confirmation[/bold yellow]\n\n"
            f"  [bold]Tool:[/bold]   {tool.name}\n"
            f"  [bold]Server:[/bold] {tool.server_name}\n"
            "  [bold]Args:[/bold]"
        )
        self.console.print(Syntax(args_str, "json", theme="monokai"))

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------

    def format_server_list(
        self,
        servers: Iterable[ServerConfig],
        statuses: dict[str, ConnectionStatus] | None = None,
    ) -> None:
        servers = list(servers)
        if not servers:
            self.console.print("[dim]No MCP servers configured.[/dim]")
            return

        statuses = statuses or {}
        table = Table(title="MCP Servers")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("URL")
        table.add_column("Status", no_wrap=True)
        table.add_column("Headers")

        for s in servers:
            status = statuses.get(s.id, ConnectionStatus.DISCONNECTED)
            headers = ", ".join(f"{k}={v}" for k, v in mask_headers(s.headers).items())
            table.add_row(
                s.id,
                s.name,
                s.base_url,
                Text(status.value, style=STATUS_COLORS[status]),
                headers or "-",
            )

        self.console.print(table)

    def format_health(self, checks: list[HealthCheck]) -> None:
        table = Table(title="MCP Server Health")
        table.add_column("Server", style="cyan", no_wrap=True)
        table.add_column("Healthy", no_wrap=True)
        table.add_column("Response", no_wrap=True)
        table.add_column("Error")

        for c in checks:
            healthy = Text("yes", style="green") if c.healthy else Text("no", style="red")
            rt = f"{c.response_time * 1000:.0f} ms" if c.response_time is not None else "-"
            table.add_row(c.server_id, healthy, rt, c.error or "")

        self.console.print(table)

    # ------------------------------------------------------------------
    # Routing / config
    # ------------------------------------------------------------------

    def format_routing(self, requested: str, decision: RoutingDecision) -> None:
        transport = (
            "[green]native[/green]"
            if decision.transport is TransportMode.NATIVE
            else "[yellow]generic-compatible[/yellow]"
        )
        lines = [
            f"[dim]Requested:[/dim] {requested}",
            f"[dim]Provider:[/dim]  [bold]{decision.provider}[/bold]",
            f"[dim]Model:[/dim]     {decision.model_id}",
            f"[dim]Transport:[/dim] {transport}",
            f"[dim]Base URL:[/dim]  {decision.base_url or '-'}",
        ]
        for note in decision.diagnostics:
            lines.append(f"[yellow]note:[/yellow] {note}")
        self.console.print(Panel("\n".join(lines), title="Routing decision"))

    def format_config(self, config: dict) -> None:
        config_json = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(config_json, "json", theme="monokai"))

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def format_exchange_list(self, exchanges: list[dict]) -> None:
        if not exchanges:
            self.console.print("[dim]No exchanges recorded.[/dim]")
            return

        table = Table(title="Exchanges")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Model", no_wrap=True)
        table.add_column("Outcome", no_wrap=True)
        table.add_column("Passes", justify="right")
        table.add_column("Started", no_wrap=True)

        for x in exchanges:
            table.add_row(
                x.get("exchange_id", "?"),
                f"{x.get('provider', '?')}/{x.get('model', '?')}",
                x.get("outcome") or "running",
                str(x.get("passes", 0)),
                x.get("started_at", "?"),
            )

        self.console.print(table)

    def format_events(self, events: list[ExchangeEvent]) -> None:
        if not events:
            self.console.print("[dim]No events.[/dim]")
            return

        for ev in events:
            ts = ev.timestamp.strftime("%H:%M:%S") if isinstance(ev.timestamp, datetime) else str(ev.timestamp)
            etype = ev.event_type
            color = EVENT_COLORS.get(etype, "white")

            content = ""
            if etype in ("user_message", "assistant_message", "reasoning"):
                content = ev.payload.get("content", "")[:100]
            elif etype == "tool_call_request":
                content = f"{ev.payload.get('tool_name', '?')}({json.dumps(ev.payload.get('arguments', {}), default=str)[:80]})"
            elif etype == "tool_call_result":
                ok = "FAIL" if ev.payload.get("is_error") else "OK"
                content = f"{ev.payload.get('tool_name', '?')} -> {ok}"
            elif etype == "routing_note":
                content = ev.payload.get("note", "")
            elif etype == "exchange_error":
                content = ev.payload.get("error_message", "")[:100]

            self.console.print(f"  [{color}]{ts} {etype:>20s}[/{color}]  {content}")
