#!/usr/bin/env python3
"""Interactive chat CLI for trying out the CAD assistant."""

import json
import sys

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt


class ChatCLI:
    """Interactive chat interface that consumes the streaming chat endpoint."""

    def __init__(self, base_url: str = "http://localhost:3001"):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.history: list[dict] = []
        self.console = Console()
        self.client = httpx.Client(timeout=httpx.Timeout(10.0, read=300.0))

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]🛠️  Shapesmith - Interactive CAD Chat[/bold blue]\n"
                "Describe a part and the assistant will model it in Onshape.\n"
                "Commands: /help, /clear, /quit",
                border_style="blue",
            )
        )

        health = self._health()
        if health is None:
            self.console.print(f"[red]❌ Cannot connect to the service at {self.base_url}.[/red]")
            return

        status = "connected" if health.get("mcpConnected") else "not connected yet"
        self.console.print(f"[green]✅ Connected to the chat service (tool server {status})[/green]\n")

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")

                if user_input.lower() in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif user_input.lower() == "/help":
                    self._show_help()
                    continue
                elif user_input.lower() == "/clear":
                    self.history = []
                    self.console.print("[yellow]🔄 Conversation cleared[/yellow]")
                    continue
                elif user_input.strip() == "":
                    continue

                reply = self._stream_message(user_input)
                if reply is not None:
                    self.history.append({"role": "user", "content": user_input})
                    self.history.append({"role": "assistant", "content": reply})
                    self._display_response(reply)

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]👋 Goodbye![/yellow]")
            self.client.close()

    def _health(self) -> dict | None:
        """Fetch the service health, or None if it is unreachable."""
        try:
            response = self.client.get(f"{self.base_url}/health")
        except httpx.HTTPError:
            return None
        return response.json() if response.status_code == 200 else None

    def _stream_message(self, message: str) -> str | None:
        """Send a message and print progress as server-sent events arrive."""
        payload = {"message": message, "conversationHistory": self.history}
        parts: list[str] = []

        try:
            with self.client.stream("POST", f"{self.base_url}/api/chat/stream", json=payload) as response:
                if response.status_code != 200:
                    response.read()
                    self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")
                    return None

                for line in response.iter_lines():
                    if not line.startswith("data: "):
                        continue
                    event = json.loads(line[len("data: ") :])

                    if event["type"] == "text":
                        parts.append(event["content"])
                        self.console.print(event["content"], end="", markup=False, highlight=False)
                    elif event["type"] == "tool_use":
                        icon = "🔧" if event["status"] == "calling" else "✔️"
                        self.console.print(f"\n[dim]{icon} {event['tool']} {event['status']}[/dim]")
                    elif event["type"] == "error":
                        self.console.print(f"\n[red]❌ {event['error']}[/red]")
                        return None
                    elif event["type"] == "done":
                        break

        except httpx.HTTPError as e:
            self.console.print(f"[red]❌ Connection error: {e}[/red]")
            return None

        self.console.print()
        return "".join(parts)

    def _display_response(self, text: str) -> None:
        """Display the final answer with markdown formatting."""
        self.console.print(
            Panel(
                Markdown(text),
                title="[bold green]🤖 CAD Assistant[/bold green]",
                border_style="green",
                padding=(1, 2),
            )
        )

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /clear - Clear the conversation and start over
• /quit or /exit - Exit the chat

[bold]Example Requests:[/bold]
1. "Create a 20mm cube with a 5mm hole through the middle"
2. "Make a gear with 12 teeth named 'Drive Gear'"
3. "Make it twice as thick"

[bold]Tips:[/bold]
• Quote a name to choose the Onshape document name
• The assistant shows the OpenSCAD code it used, so you can reuse it
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]❓ Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:3001"

    chat = ChatCLI(base_url)
    chat.start()


if __name__ == "__main__":
    main()
