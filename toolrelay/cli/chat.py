"""Interactive chat session handler."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

from rich.console import Console

from toolrelay.callbacks import ExchangeCallbacks
from toolrelay.cli.output import OutputFormatter
from toolrelay.config import ConfigCredentialStore, ToolRelayConfig
from toolrelay.errors import MissingCredential
from toolrelay.llm.providers import create_backend
from toolrelay.llm.router import ProviderRouter
from toolrelay.llm.types import Message, RoutingDecision
from toolrelay.mcp.connection import ToolServerConnectionManager
from toolrelay.mcp.coordinator import ToolExecutionCoordinator
from toolrelay.orchestrator.core import StreamOrchestrator
from toolrelay.orchestrator.state import ExchangeOutcome, ExchangeResult
from toolrelay.session.recorder import ExchangeRecorder
from toolrelay.session.store import ExchangeStore
from toolrelay.types import ToolDescriptor, ToolExecutionResult

logger = logging.getLogger(__name__)


class ChatHandler:
    """
    Manages the interactive chat loop.

    Streams tokens and reasoning as they arrive, shows tool activity, asks
    for confirmation on tools that opted out of auto-approval, and lets
    Ctrl-C cancel the running exchange without leaving the loop.
    """

    def __init__(
        self,
        cfg: ToolRelayConfig,
        manager: ToolServerConnectionManager,
        coordinator: ToolExecutionCoordinator,
        store: ExchangeStore | None = None,
        conversation_id: str | None = None,
        console: Console | None = None,
    ) -> None:
        self.cfg = cfg
        self.manager = manager
        self.coordinator = coordinator
        self.store = store
        self.conversation_id = conversation_id
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self.credentials = ConfigCredentialStore(cfg)
        self.router = ProviderRouter()
        self.provider = cfg.llm.provider
        self.model = cfg.llm.model
        self.history: list[Message] = []
        self._cancel: asyncio.Event | None = None
        self._running = True

    # ------------------------------------------------------------------
    # Engine wiring
    # ------------------------------------------------------------------

    def _backend_factory(self, decision: RoutingDecision):
        llm = self.cfg.llm
        return create_backend(
            decision,
            timeout=float(llm.timeout_seconds),
            max_output=llm.max_output_tokens or None,
            thinking_budget=llm.thinking_budget or None,
        )

    def _orchestrator(self) -> StreamOrchestrator:
        engine = self.cfg.engine
        return StreamOrchestrator(
            self.provider,
            self.model,
            self.credentials,
            self.coordinator,
            router=self.router,
            backend_factory=self._backend_factory,
            max_depth=engine.max_depth,
            aggregate_limit=engine.aggregate_limit,
            aggregate_keep=engine.aggregate_keep,
            system_prompt=self.cfg.llm.system_prompt or None,
        )

    async def confirm_tool(self, tool: ToolDescriptor, arguments: dict) -> bool:
        """Rich-formatted confirmation prompt for tools that need approval."""
        self.formatter.format_confirmation(tool, arguments)
        try:
            response = await asyncio.get_event_loop().run_in_executor(
                None, lambda: input("\n  Proceed? [y/N]: ").strip().lower()
            )
            return response in ("y", "yes")
        except (EOFError, KeyboardInterrupt):
            return False

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def handle_command(self, command: str) -> bool:
        """
        Handle inline commands. Returns True if the command was handled.
        """
        parts = command.strip().split(None, 1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/tools":
            if arg:
                tool = await self.coordinator.find_tool(arg)
                if tool is None:
                    self.console.print(f"  [red]Unknown tool:[/red] {arg}")
                else:
                    self.formatter.format_tool_info(tool)
            else:
                self.formatter.format_tool_list(await self.coordinator.list_available_tools())
            return True

        if cmd == "/servers":
            servers = self.coordinator.registry.get_active_servers()
            statuses = {s.id: self.manager.status(s.id) for s in servers}
            self.formatter.format_server_list(servers, statuses)
            return True

        if cmd == "/model":
            if not arg:
                self.console.print(f"  Active: [bold]{self.provider}/{self.model}[/bold]")
            elif "/" in arg:
                self.provider, self.model = arg.split("/", 1)
                self.console.print(f"  Switched to [bold]{self.provider}/{self.model}[/bold]")
            else:
                self.model = arg
                self.console.print(f"  Switched to [bold]{self.provider}/{self.model}[/bold]")
            return True

        if cmd == "/route":
            try:
                decision = self.router.resolve(self.provider, self.model, self.credentials)
            except MissingCredential as e:
                self.console.print(f"  [red]Error:[/red] {e}")
            else:
                self.formatter.format_routing(self.provider, decision)
            return True

        if cmd == "/history":
            if self.store is None or self.conversation_id is None:
                self.console.print("[dim]History recording is off.[/dim]")
            elif arg:
                self.formatter.format_events(await self.store.get_events(arg))
            else:
                self.formatter.format_exchange_list(
                    await self.store.list_exchanges(self.conversation_id)
                )
            return True

        if cmd == "/clear":
            self.history.clear()
            self.console.print("[dim]Context cleared.[/dim]")
            return True

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /quit     - Exit the chat\n"
                "  /tools    - List available tools (/tools NAME for details)\n"
                "  /servers  - List MCP servers and their status\n"
                "  /model    - Show or switch provider/model\n"
                "  /route    - Show how the current model is routed\n"
                "  /history  - Show recorded exchanges (/history ID for its events)\n"
                "  /clear    - Forget the conversation context\n"
                "  /help     - Show this help\n"
                "  [dim]Ctrl-C while a reply streams cancels it.[/dim]\n"
            )
            return True

        return False

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    def _callbacks(self, outcome: dict[str, Any]) -> ExchangeCallbacks:
        def on_token(text: str) -> None:
            self.console.print(text, end="", markup=False, highlight=False)

        def on_reasoning(text: str) -> None:
            self.console.print(text, end="", style="dim italic", markup=False, highlight=False)

        def on_reasoning_start() -> None:
            self.console.print("[dim]thinking...[/dim]")

        def on_reasoning_end() -> None:
            self.console.print()

        def on_tool_call(name: str, arguments: Any) -> None:
            self.formatter.format_tool_call(name, arguments)

        def on_tool_result(name: str, result: ToolExecutionResult) -> None:
            self.formatter.format_tool_result(name, result)

        def on_done(result: ExchangeResult) -> None:
            outcome["result"] = result

        def on_error(error: BaseException) -> None:
            outcome["error"] = error

        return ExchangeCallbacks(
            on_token=on_token,
            on_reasoning=on_reasoning,
            on_reasoning_start=on_reasoning_start,
            on_reasoning_end=on_reasoning_end,
            on_tool_call=on_tool_call,
            on_tool_result=on_tool_result,
            on_done=on_done,
            on_error=on_error,
        )

    def _install_interrupt(self, cancel: asyncio.Event) -> bool:
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel.set)
        except (NotImplementedError, RuntimeError):
            return False
        return True

    async def handle_input(self, user_input: str) -> None:
        """Run one exchange for *user_input* and stream the reply."""
        outcome: dict[str, Any] = {}
        callbacks = self._callbacks(outcome)

        if self.store is not None and self.conversation_id is not None:
            recorder = ExchangeRecorder(self.store, self.conversation_id, self.provider, self.model)
            await recorder.begin(user_input)
            callbacks = recorder.callbacks(callbacks)

        messages = [*self.history, Message(role="user", content=user_input)]
        self._cancel = asyncio.Event()
        interruptible = self._install_interrupt(self._cancel)
        try:
            await self._orchestrator().run(messages, callbacks, cancel=self._cancel)
        finally:
            if interruptible:
                asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
            self._cancel = None

        self.console.print()
        if "error" in outcome:
            self.console.print(f"[red]Error:[/red] {outcome['error']}")
            return

        result: ExchangeResult | None = outcome.get("result")
        if result is None:
            return
        for note in result.diagnostics:
            self.console.print(f"[yellow]note:[/yellow] {note}")
        if result.outcome is ExchangeOutcome.CANCELLED:
            self.console.print("[dim]Cancelled.[/dim]")
        elif result.outcome is ExchangeOutcome.RECURSION_LIMIT:
            self.console.print("[yellow]Stopped: too many tool rounds.[/yellow]")
        elif result.outcome is ExchangeOutcome.TOOL_FAILURE:
            self.console.print("[yellow]Stopped: tool execution failed.[/yellow]")

        if result.text.strip():
            self.history.append(Message(role="user", content=user_input))
            self.history.append(Message(role="assistant", content=result.text))

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            "[bold]toolrelay[/bold] - tool-augmented chat\n"
            f"[dim]{self.provider}/{self.model}. Type /help for commands, /quit to exit.[/dim]\n"
        )

        while self._running:
            try:
                user_input = await asyncio.get_event_loop().run_in_executor(
                    None, lambda: input("you> ").strip()
                )
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                handled = await self.handle_command(user_input)
                if handled:
                    continue

            self.console.print("[dim]assistant>[/dim] ", end="")
            await self.handle_input(user_input)
