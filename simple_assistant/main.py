"""Main entry point for Simple Assistant."""

import asyncio
import signal
from collections.abc import Awaitable
from typing import TypeVar

import typer

from simple_assistant.cli import TerminalUI
from simple_assistant.config import Config, set_config
from simple_assistant.device import get_device_info
from simple_assistant.exceptions import AssistantError
from simple_assistant.history import TranscriptStore
from simple_assistant.logging import configure_logging, log, set_system_log_sink
from simple_assistant.orchestrator import Conversation

T = TypeVar("T")

app = typer.Typer(help="Simple AI Assistant - chat with an LLM that can run shell commands")


def _load_config(config_path: str, provider: str, verbose: bool) -> Config:
    config = Config.load(config_path or None)
    if provider:
        config.providers.active = provider.strip().lower()
    set_config(config)
    configure_logging("DEBUG" if verbose else None)
    return config


async def _run_cancellable(conversation: Conversation, ui: TerminalUI, work: Awaitable[T]) -> T | None:
    """Await work; Ctrl-C cancels the outstanding request or command instead of exiting."""
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, conversation.cancel_active)
        installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        pass
    try:
        return await work
    except (AssistantError, ValueError) as e:
        ui.print_error(str(e))
        return None
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _handle_input(conversation: Conversation, ui: TerminalUI, user_input: str) -> bool:
    """Process one line of input; returns False when the session should end."""
    text = user_input.strip()
    if text in ("/exit", "/quit", "exit", "quit"):
        return False
    if text == "/help":
        ui.print_help()
        return True
    if text == "/new":
        conversation.new_chat()
        ui.print_success("Started a new chat")
        ui.print_empty_state()
        return True
    if text == "/history":
        ui.show_transcript(conversation.transcript)
        return True
    if text == "/cancel":
        if not conversation.cancel_active():
            ui.print_error("Nothing to cancel")
        return True
    if text.startswith("/run"):
        arg = text[len("/run"):].strip() or "1"
        pending = conversation.pending_directives()
        message = conversation.last_assistant_message()
        if not arg.isdigit() or not pending or message is None:
            ui.print_error("No such command to run")
            return True
        index = int(arg)
        if index < 1 or index > len(pending):
            ui.print_error(f"Choose a command between 1 and {len(pending)}")
            return True
        await _run_cancellable(conversation, ui, conversation.confirm_directive(pending[index - 1], message))
        return True
    if text.startswith("/"):
        ui.print_error(f"Unknown command: {text}")
        return True

    await _run_cancellable(conversation, ui, conversation.post_user_message(user_input))
    return True


def run_interactive(config: Config, ui: TerminalUI) -> None:
    """Interactive chat loop; prompts are read on the main thread between turns."""
    with asyncio.Runner() as runner:
        conversation = runner.run(_open_conversation(config, ui))
        provider_config = config.provider_config()
        ui.print_welcome(provider_config.provider, provider_config.model)
        if conversation.chat_messages():
            ui.show_transcript(conversation.transcript)
            last = conversation.last_assistant_message()
            if last is not None and last is conversation.transcript[-1]:
                ui.render_offers(last)
        else:
            ui.print_empty_state()
        if not provider_config.api_key:
            ui.print_error("Please add your API key in the config file if you haven't already")

        try:
            while True:
                try:
                    user_input = ui.prompt()
                except (KeyboardInterrupt, EOFError):
                    log.info("input closed")
                    break
                if not user_input.strip():
                    continue
                try:
                    if not runner.run(_handle_input(conversation, ui, user_input)):
                        break
                except Exception as e:
                    ui.print_error(str(e))
                    log.error("Error in interactive loop", error=str(e))
        finally:
            runner.run(conversation.close())


async def _open_conversation(config: Config, ui: TerminalUI) -> Conversation:
    return Conversation(config, listener=ui)


async def _ask_once(config: Config, ui: TerminalUI, prompt: str) -> int:
    async with Conversation(config, listener=ui) as conversation:
        await _run_cancellable(conversation, ui, conversation.post_user_message(prompt))
        answered = bool(conversation.transcript) and conversation.transcript[-1].role == "assistant"
    return 0 if answered else 1


@app.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider (openai, gemini, claude)"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive chat session."""
    ui = TerminalUI()
    set_system_log_sink(ui.print_log)
    try:
        cfg = _load_config(config, provider, verbose)
        run_interactive(cfg, ui)
    finally:
        set_system_log_sink(None)


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Message to send"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider (openai, gemini, claude)"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Send one message, print the reply and exit."""
    cfg = _load_config(config, provider, verbose)
    code = asyncio.run(_ask_once(cfg, TerminalUI(), prompt))
    raise typer.Exit(code)


@app.command()
def history(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Print the persisted conversation."""
    cfg = _load_config(config, "", False)
    ui = TerminalUI()
    messages = TranscriptStore(cfg.resolved_history_path()).load()
    if not [msg for msg in messages if msg.role != "system"]:
        ui.print_success("No saved conversation")
        return
    ui.show_transcript(messages)


@app.command()
def clear(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Delete the persisted conversation."""
    cfg = _load_config(config, "", False)
    TranscriptStore(cfg.resolved_history_path()).clear()
    TerminalUI().print_success("Conversation history cleared")


@app.command("device-info")
def device_info() -> None:
    """Show the system details that can be shared with the model."""
    typer.echo(get_device_info().rstrip("\n"))


@app.command()
def version() -> None:
    """Show version information."""
    from simple_assistant import __version__

    typer.echo(f"Simple Assistant v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
