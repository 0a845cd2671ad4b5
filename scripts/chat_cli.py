#!/usr/bin/env python3
"""Interactive chat CLI for the agent service."""

import json
import sys
from collections.abc import Iterator

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt


class ChatCLI:
    """Interactive chat interface streaming from ``/chat/stream``."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.conversation_id: str | None = None
        self.console = Console()
        self.client = httpx.Client(timeout=120.0)

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]🤖 Agent Loop - Interactive Chat[/bold blue]\n"
                "Type your messages to chat with the agent.\n"
                "Commands: /help, /new, /history, /list, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]❌ Cannot connect to the service at {self.base_url}.[/red]")
            return

        self.console.print("[green]✅ Connected to agent service[/green]\n")

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")
                command = user_input.strip().lower()

                if command in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif command == "/help":
                    self._show_help()
                    continue
                elif command == "/new":
                    self.conversation_id = None
                    self.console.print("[yellow]🔄 Started a new conversation[/yellow]")
                    continue
                elif command == "/history":
                    self._show_history()
                    continue
                elif command == "/list":
                    self._show_conversations()
                    continue
                elif command == "":
                    continue

                self._send_message(user_input)

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]👋 Goodbye![/yellow]")
            self.client.close()

    def _test_connection(self) -> bool:
        """Test connection to the service."""
        try:
            response = self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _send_message(self, message: str) -> None:
        """Send a message and render the streamed events."""
        payload = {"message": message}
        if self.conversation_id:
            payload["conversation_id"] = self.conversation_id

        try:
            with self.client.stream("POST", f"{self.base_url}/chat/stream", json=payload) as response:
                if response.status_code != 200:
                    response.read()
                    self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")
                    return

                for event, data in _parse_events(response.iter_lines()):
                    self._handle_event(event, data)

        except httpx.HTTPError as e:
            self.console.print(f"[red]❌ Connection error: {e}[/red]")

    def _handle_event(self, event: str, data: dict) -> None:
        if event == "thinking":
            self.console.print(f"[dim]💭 Thinking (step {data.get('iteration')})...[/dim]")
        elif event == "tool_start":
            self.console.print(f"[dim]🔧 Running {data.get('name')}...[/dim]")
        elif event == "tool_done":
            status = "[green]done[/green]" if data.get("success") else "[red]failed[/red]"
            self.console.print(f"[dim]   {data.get('name')}:[/dim] {status}")
        elif event == "done":
            self.conversation_id = data.get("conversation_id") or self.conversation_id
            self._display_response(data.get("content", ""), data.get("finish_reason"))
        elif event == "error":
            self.console.print(f"[red]❌ {data.get('message')}[/red]")

    def _display_response(self, content: str, finish_reason: str | None) -> None:
        """Display the agent's answer with nice formatting."""
        border = "green" if finish_reason in (None, "stop", "end_turn") else "yellow"
        self.console.print(
            Panel(
                Markdown(content or "No response"),
                title="[bold green]🤖 Assistant[/bold green]",
                subtitle=f"[dim]{finish_reason}[/dim]" if finish_reason else None,
                border_style=border,
                padding=(1, 2),
            )
        )

    def _show_history(self) -> None:
        """Show the stored messages of the current conversation."""
        if not self.conversation_id:
            self.console.print("[yellow]No conversation yet.[/yellow]")
            return

        response = self.client.get(f"{self.base_url}/conversations/{self.conversation_id}/messages")
        if response.status_code != 200:
            self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")
            return

        for message in response.json()["messages"]:
            style = "cyan" if message["role"] == "user" else "green"
            self.console.print(f"[bold {style}]{message['role']}[/bold {style}]: {message['content']}")

    def _show_conversations(self) -> None:
        """List stored conversations."""
        response = self.client.get(f"{self.base_url}/conversations")
        if response.status_code != 200:
            self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")
            return

        conversations = response.json()["conversations"]
        if not conversations:
            self.console.print("[yellow]No stored conversations.[/yellow]")
            return

        listing = "\n".join(f"• [bold]{c['title']}[/bold] [dim]{c['id']}[/dim]" for c in conversations)
        self.console.print(Panel(listing, title="[cyan]💬 Conversations[/cyan]", border_style="cyan"))

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /new - Start a new conversation
• /history - Show the current conversation
• /list - List stored conversations
• /quit or /exit - Exit the chat
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]❓ Help[/cyan]", border_style="cyan"))


def _parse_events(lines: Iterator[str]) -> Iterator[tuple[str, dict]]:
    """Group SSE lines into ``(event, data)`` pairs."""
    event = "message"
    data_lines: list[str] = []

    for line in lines:
        if line.startswith("event:"):
            event = line[len("event:") :].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:") :].strip())
        elif line == "" and data_lines:
            yield event, json.loads("\n".join(data_lines))
            event, data_lines = "message", []

    if data_lines:
        yield event, json.loads("\n".join(data_lines))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"

    chat = ChatCLI(base_url)
    chat.start()


if __name__ == "__main__":
    main()
