"""Terminal UI for Simple Assistant."""

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from simple_assistant.directives import pending_directives, summarize_directive
from simple_assistant.formatting import format_message
from simple_assistant.history import Message
from simple_assistant.orchestrator import ConversationListener, ConversationState

HELP_TEXT = """Commands:
  /run <n>    run the n-th command offered by the last reply
  /cancel     (or Ctrl-C while busy) cancel the running request or command
  /new        start a new chat
  /history    show the conversation so far
  /help       show this help
  /exit       quit"""

EXAMPLE_PROMPTS = (
    "My bluetooth doesn't turn on",
    "Check why my system's resource usage is high",
    "How to take a screenshot in GNOME?",
)

_STATE_LABELS = {
    ConversationState.REQUESTING_REPLY: "Thinking... (Ctrl-C to cancel)",
    ConversationState.EXECUTING_COMMAND: "Executing... (Ctrl-C to cancel)",
}


class TerminalUI(ConversationListener):
    """Renders conversation events on a rich console."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def print_welcome(self, provider: str, model: str) -> None:
        self.console.print(
            Panel.fit(
                f"Provider: [bold]{provider}[/]  Model: [bold]{model or 'default'}[/]\n"
                "Type a message, /help for commands.",
                title="Simple AI Assistant",
            )
        )

    def print_empty_state(self) -> None:
        self.console.print("[bold]What can I help with today?[/]")
        for example in EXAMPLE_PROMPTS:
            self.console.print(f"  [dim]-[/] {example}")

    def print_help(self) -> None:
        self.console.print(HELP_TEXT, markup=False, highlight=False)

    def print_error(self, text: str) -> None:
        self.console.print(Text(text, style="bold red"))

    def print_success(self, text: str) -> None:
        self.console.print(Text(text, style="green"))

    def print_log(self, line: str) -> None:
        """Log sink: structlog lines rendered dim between conversation output."""
        self.console.print(Text.from_ansi(line, style="dim"))

    def prompt(self) -> str:
        return self.console.input("[bold cyan]You[/]> ")

    def show_transcript(self, messages: list[Message]) -> None:
        for message in messages:
            if message.role == "system":
                continue
            self.render_message(message, offer_directives=False)

    def render_message(self, message: Message, offer_directives: bool = True) -> None:
        if message.role == "user":
            self.console.print(Text("You: ", style="bold cyan") + Text(message.content))
            return
        self.console.print(
            Panel(format_message(message.content), title="Assistant", title_align="left")
        )
        if offer_directives:
            self.render_offers(message)

    def render_offers(self, message: Message) -> None:
        for idx, command in enumerate(pending_directives(message), start=1):
            self.console.print(
                Text(f"  [{idx}] ", style="bold")
                + Text(f"Run: {summarize_directive(command)}", style="underline")
                + Text(f"  (/run {idx})", style="dim")
            )

    # ConversationListener

    def on_message(self, message: Message, transient: bool) -> None:
        if transient:
            self.console.print(Text.from_markup(format_message(message.content), style="dim"))
            return
        self.render_message(message)

    def on_state(self, state: ConversationState) -> None:
        label = _STATE_LABELS.get(state)
        if label:
            self.console.print(Text(label, style="dim italic"))

    def on_command_output(self, stream: str, line: str) -> None:
        style = "red" if stream == "stderr" else "dim"
        self.console.print(Text("  | ", style="dim") + Text(line, style=style))

    def on_notice(self, text: str) -> None:
        self.console.print(Text(text, style="yellow"))
