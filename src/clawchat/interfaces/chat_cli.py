"""
interfaces/chat_cli.py — Terminal Chat over the Gateway

A thin REPL on top of GatewayClient. It only subscribes to the client's
message/state/chat-event streams and calls its public methods; it has no
knowledge of the wire protocol.

Usage:
    python -m clawchat
    python -m clawchat --gateway-url ws://remote:18789 --session work
"""

from __future__ import annotations

from typing import Optional

from aioconsole import ainput
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from clawchat.exceptions import GatewayError
from clawchat.gateway.gateway_client import GatewayClient, Unsubscribe
from clawchat.gateway.protocol import (
    ChatMessage,
    ChatState,
    ChatStreamEvent,
    ConnectionState,
    Role,
)
from clawchat.observability.logger import get_logger

log = get_logger(__name__)


_HELP_TEXT = """
## Chat Commands

| Command | Description |
|---------|-------------|
| *any text* | Send a message to the agent |
| `/history [n]` | Reload the last *n* messages of this session |
| `/status` | Show the connection state |
| `/reconnect` | Drop and re-open the gateway connection |
| `/help` | Show this help |
| `exit` / `Ctrl+D` | Quit |
"""


class ChatCLI:
    """Terminal chat front-end. Renders whatever the client publishes."""

    def __init__(
        self,
        client: GatewayClient,
        session_key: str = "main",
        history_limit: int = 100,
        console: Optional[Console] = None,
    ):
        self._client = client
        self._session_key = session_key
        self._history_limit = history_limit
        self.console = console or Console()

        # Cumulative text of the run currently streaming
        self._stream_text = ""
        self._streamed_run: Optional[str] = None
        # Set when a FINAL closes a streamed run; the matching reply is skipped once
        self._reply_streamed = False
        self._unsubscribers: list[Unsubscribe] = []

    async def start(self) -> int:
        """Connect, show history, and run the REPL. Returns a process exit code."""
        self.console.print(Panel(
            Text("🦞 clawchat", style="bold cyan"),
            title="OpenClaw",
            subtitle=f"connecting to {self._client.url}",
            box=box.DOUBLE,
            border_style="bright_cyan",
        ))

        self._unsubscribers = [
            self._client.on_state_change(self._on_state),
            self._client.on_chat_event(self._on_chat_event),
            self._client.on_message(self._on_message),
        ]
        try:
            try:
                await self._client.connect()
            except GatewayError as e:
                self.console.print(f"[red]❌ Cannot connect to {self._client.url}: {e}[/]")
                log.error("chat_cli.connect_failed", error=str(e))
                return 1

            await self._show_history(self._history_limit)
            await self._repl_loop()
            return 0
        finally:
            for unsubscribe in self._unsubscribers:
                unsubscribe()
            await self._client.disconnect()

    # ─────────────────────────────────────────────────────────────────────────
    # Subscribers
    # ─────────────────────────────────────────────────────────────────────────

    def _on_state(self, state: ConnectionState) -> None:
        if state.connected:
            self.console.print(f"[green]✓ Connected to {self._client.url}[/]")
        elif state.error:
            self.console.print(f"[red]⚠ {state.error}[/]")
        elif state.connecting:
            self.console.print("[dim]Connecting…[/]")

    def _on_chat_event(self, event: ChatStreamEvent) -> None:
        if event.state is ChatState.DELTA:
            # Deltas may be cumulative or incremental
            text = event.stream_text
            if text.startswith(self._stream_text):
                chunk = text[len(self._stream_text):]
                self._stream_text = text
            else:
                chunk = text
                self._stream_text += text
            self.console.print(chunk, end="", markup=False, highlight=False)
            return

        if event.is_terminal:
            self._reply_streamed = event.state is ChatState.FINAL and bool(self._stream_text)
            self._streamed_run = event.run_id if self._reply_streamed else None
            if self._stream_text:
                self.console.print()
            if event.state is ChatState.ABORTED:
                self.console.print("[yellow](aborted)[/]")
            self._stream_text = ""

    def _on_message(self, message: ChatMessage) -> None:
        if message.role is Role.ASSISTANT and self._reply_streamed and (
            self._streamed_run is None or message.id == self._streamed_run
        ):
            # Already shown token by token
            self._reply_streamed = False
            self._streamed_run = None
            return
        self._render(message)

    def _render(self, message: ChatMessage) -> None:
        if message.role is Role.USER:
            self.console.print(f"[bold cyan]you[/] {escape(message.content)}", highlight=False)
        elif message.role is Role.SYSTEM:
            self.console.print(f"[red]{escape(message.content)}[/]")
        else:
            label = f"assistant · {message.model}" if message.model else "assistant"
            self.console.print(f"[bold magenta]{label}[/]")
            self.console.print(Markdown(message.content))

    # ─────────────────────────────────────────────────────────────────────────
    # REPL
    # ─────────────────────────────────────────────────────────────────────────

    async def _repl_loop(self) -> None:
        while True:
            try:
                raw = await ainput(f"[{self._session_key}]> ")
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye![/]")
                break

            raw = raw.strip()
            if not raw:
                continue
            if raw.lower() in ("exit", "quit"):
                self.console.print("[dim]Goodbye![/]")
                break

            await self._dispatch(raw)

    async def _dispatch(self, raw: str) -> None:
        if not raw.startswith("/"):
            if not self._client.send(raw, self._session_key):
                self.console.print("[red]Not connected, message not sent. Try /reconnect.[/]")
            return

        parts = raw.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1] if len(parts) > 1 else ""

        if cmd == "/help":
            self.console.print(Markdown(_HELP_TEXT))
        elif cmd == "/history":
            limit = int(arg) if arg.isdigit() else self._history_limit
            await self._show_history(limit)
        elif cmd == "/status":
            self._cmd_status()
        elif cmd == "/reconnect":
            await self._cmd_reconnect()
        else:
            self.console.print(f"[dim]Unknown command: {cmd}. Type /help.[/]")

    async def _show_history(self, limit: int) -> None:
        messages = await self._client.load_history(self._session_key, limit)
        if not messages:
            self.console.print("[dim]No history for this session.[/]")
            return
        log.info("chat_cli.history_loaded", count=len(messages), session_key=self._session_key)
        for message in messages:
            self._render(message)
        self.console.print()

    def _cmd_status(self) -> None:
        state = self._client.get_state()
        self.console.print(
            f"🔌 [bold]Gateway[/] {self._client.url}\n"
            f"  Phase: {self._client.phase.value}\n"
            f"  Connected: {state.connected}  ·  Connecting: {state.connecting}\n"
            f"  Error: {state.error or '-'}"
        )

    async def _cmd_reconnect(self) -> None:
        try:
            await self._client.connect()
        except GatewayError as e:
            self.console.print(f"[red]Reconnect failed: {e}[/]")


# ─────────────────────────────────────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────────────────────────────────────

async def run_chat_cli(
    client: GatewayClient,
    session_key: str = "main",
    history_limit: int = 100,
) -> int:
    """Run the chat REPL against an already-configured client."""
    return await ChatCLI(client, session_key=session_key, history_limit=history_limit).start()
