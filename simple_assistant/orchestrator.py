"""Conversation loop: reply requests, directive confirmation and command results."""

from collections.abc import Callable
from enum import Enum

from simple_assistant.cancellation import CancelToken
from simple_assistant.config import Config
from simple_assistant.device import UNKNOWN_DEVICE_INFO, get_device_info
from simple_assistant.directives import extract_directives, pending_directives
from simple_assistant.exceptions import (
    BusyError,
    CommandTimeoutError,
    ConfigError,
    OperationCancelledError,
)
from simple_assistant.executor import CommandExecutor, requires_privilege
from simple_assistant.history import Message, TranscriptStore
from simple_assistant.llm import ProviderAdapter
from simple_assistant.logging import get_logger
from simple_assistant.prompts import (
    DEVICE_INFO_HEADER,
    MISSING_KEY_TEXT,
    NO_OUTPUT_TEXT,
    REQUEST_CANCELLED_TEXT,
    SYSTEM_PROMPT,
    command_cancelled_message,
    command_error_message,
    command_output_message,
    command_timeout_message,
)

log = get_logger(__name__)


class ConversationState(str, Enum):
    """Where the conversation loop currently is."""

    AWAITING_INPUT = "awaiting_input"
    REQUESTING_REPLY = "requesting_reply"
    DIRECTIVES_PENDING = "directives_pending"
    EXECUTING_COMMAND = "executing_command"


class ConversationListener:
    """Receives conversation events; the UI overrides what it renders."""

    def on_message(self, message: Message, transient: bool) -> None:
        """A message was appended (``transient`` ones never enter the transcript)."""

    def on_state(self, state: ConversationState) -> None:
        pass

    def on_command_output(self, stream: str, line: str) -> None:
        pass

    def on_notice(self, text: str) -> None:
        pass


def _format_command_output(stdout: str, stderr: str) -> str:
    out = stdout.strip()
    err = stderr.strip()
    if out and err:
        return f"{out}\n[stderr]\n{err}"
    return out or err or NO_OUTPUT_TEXT


class Conversation:
    """Owns one chat session's transcript and drives the agentic loop.

    At most one reply request and one command execution are outstanding at a
    time; each is tracked by its cancellation token. ``new_chat`` bumps an
    epoch so that late results of superseded operations are discarded.
    """

    def __init__(
        self,
        config: Config,
        store: TranscriptStore | None = None,
        adapter: ProviderAdapter | None = None,
        executor: CommandExecutor | None = None,
        device_info: Callable[[], str] = get_device_info,
        listener: ConversationListener | None = None,
    ):
        self.config = config
        self.store = store or TranscriptStore(config.resolved_history_path())
        self.adapter = adapter or ProviderAdapter(timeout=config.http.timeout)
        self.executor = executor or CommandExecutor(
            privilege_helper=config.commands.privilege_helper,
            terminate_grace=config.commands.terminate_grace,
        )
        self.device_info = device_info
        self.listener = listener or ConversationListener()

        self.transcript: list[Message] = self.store.load()
        self.state = ConversationState.AWAITING_INPUT
        self._reply_token: CancelToken | None = None
        self._command_token: CancelToken | None = None
        self._epoch = 0
        self._refresh_state()

    async def __aenter__(self) -> "Conversation":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- state ---------------------------------------------------------------

    @property
    def reply_pending(self) -> bool:
        return self._reply_token is not None

    @property
    def command_running(self) -> bool:
        return self._command_token is not None

    @property
    def busy(self) -> bool:
        return self.reply_pending or self.command_running

    def _set_state(self, state: ConversationState) -> None:
        if state == self.state:
            return
        log.debug("conversation state", previous=self.state.value, state=state.value)
        self.state = state
        self.listener.on_state(state)

    def _refresh_state(self) -> None:
        if self._command_token is not None:
            self._set_state(ConversationState.EXECUTING_COMMAND)
        elif self._reply_token is not None:
            self._set_state(ConversationState.REQUESTING_REPLY)
        elif self.pending_directives():
            self._set_state(ConversationState.DIRECTIVES_PENDING)
        else:
            self._set_state(ConversationState.AWAITING_INPUT)

    def chat_messages(self) -> list[Message]:
        """Transcript without the system preamble."""
        return [msg for msg in self.transcript if msg.role != "system"]

    def last_assistant_message(self) -> Message | None:
        for msg in reversed(self.transcript):
            if msg.role == "assistant":
                return msg
        return None

    def pending_directives(self) -> list[str]:
        """Runnable directives offered by the latest assistant reply."""
        if not self.transcript or self.transcript[-1].role != "assistant":
            return []
        return pending_directives(self.transcript[-1])

    def _persist(self) -> None:
        self.store.save(self.transcript, self.config.history.limit)

    def _emit(self, message: Message, transient: bool = False) -> None:
        self.listener.on_message(message, transient)

    def _emit_transient(self, text: str) -> None:
        self._emit(Message(role="assistant", content=text), transient=True)

    # -- user turn -----------------------------------------------------------

    def _ensure_preamble(self) -> None:
        if not self.transcript or self.transcript[0].role != "system":
            self.transcript.insert(0, Message(role="system", content=SYSTEM_PROMPT))

        if not self.config.device_info.share or self.chat_messages():
            return
        system = self.transcript[0]
        if DEVICE_INFO_HEADER in system.content:
            return
        try:
            info = self.device_info()
        except Exception as e:
            log.warning("device info failed", error=str(e))
            info = UNKNOWN_DEVICE_INFO
        system.content += f"\n\n{DEVICE_INFO_HEADER}\n{info}"

    async def post_user_message(self, text: str) -> Message | None:
        """Append a user message and request the assistant's reply.

        Blank input is ignored. Raises ``BusyError`` while another request or
        command is outstanding.
        """
        if not text or not text.strip():
            return None
        if self.busy:
            raise BusyError("Another request is still in progress")

        self._ensure_preamble()
        message = Message(role="user", content=text)
        self.transcript.append(message)
        self._emit(message)
        await self.request_reply()
        return message

    async def request_reply(self) -> Message | None:
        """Send the transcript to the active provider and append the reply.

        Returns the appended assistant message, or None when the request was
        cancelled, failed, or was superseded by ``new_chat``.
        """
        if self._reply_token is not None:
            raise BusyError("A reply request is already in progress")

        provider_config = self.config.provider_config()
        token = CancelToken("reply")
        epoch = self._epoch
        self._reply_token = token
        self._refresh_state()

        try:
            text = await self.adapter.send(provider_config, list(self.transcript), token)
            if token.cancelled:
                raise OperationCancelledError("Request cancelled")
        except OperationCancelledError:
            self._finish_reply(token, epoch)
            if epoch == self._epoch:
                log.info("reply request cancelled")
                self._emit_transient(REQUEST_CANCELLED_TEXT)
            return None
        except ConfigError as e:
            self._finish_reply(token, epoch)
            log.warning("reply request rejected", provider=provider_config.provider, error=str(e))
            if epoch == self._epoch:
                self._emit_transient(MISSING_KEY_TEXT)
            return None
        except Exception as e:
            self._finish_reply(token, epoch)
            log.error("reply request failed", provider=provider_config.provider, error=str(e))
            if epoch == self._epoch:
                self._emit_transient(f"Error: {e}")
            return None

        if epoch != self._epoch:
            log.info("discarding reply from superseded request")
            self._finish_reply(token, epoch)
            return None

        message = Message(role="assistant", content=text)
        self.transcript.append(message)
        self._persist()
        self._emit(message)
        self._finish_reply(token, epoch)
        return message

    def _finish_reply(self, token: CancelToken, epoch: int) -> None:
        if self._reply_token is token:
            self._reply_token = None
        if epoch == self._epoch:
            self._refresh_state()

    # -- directives ----------------------------------------------------------

    async def confirm_directive(self, command: str, message: Message) -> Message | None:
        """Run a directive from ``message`` and continue the conversation.

        The command result is appended as a ``user`` message, the transcript
        is persisted and a follow-up reply is requested. Returns the result
        message, or None when ``new_chat`` superseded the run.

        Raises:
            BusyError: a command is already running
            ValueError: the directive does not belong to ``message`` or already ran
        """
        if self._command_token is not None:
            raise BusyError("A command is already running")
        if not any(msg is message for msg in self.transcript):
            raise ValueError("Message is not part of the current conversation")
        if command not in extract_directives(message.content):
            raise ValueError(f"Not a directive of this message: {command}")
        if command in message.executed_commands:
            raise ValueError(f"Command already executed: {command}")

        if self._reply_token is not None:
            self._reply_token.cancel("superseded by command")
            self._reply_token = None

        message.executed_commands.add(command)
        token = CancelToken("command")
        epoch = self._epoch
        self._command_token = token
        self._refresh_state()

        timeout = self.config.commands.timeout
        if requires_privilege(command):
            self.listener.on_notice("Authentication required...")

        try:
            result = await self.executor.run(
                command,
                timeout,
                token,
                on_output=self.listener.on_command_output,
            )
            output = _format_command_output(result.stdout, result.stderr)
            content = command_output_message(command, result.exit_status, output)
        except CommandTimeoutError:
            log.info("command timed out", command=command, timeout=timeout)
            self.listener.on_notice(f"Timeout: Command exceeded {timeout}s limit")
            content = command_timeout_message(command, timeout)
        except OperationCancelledError:
            log.info("command cancelled", command=command)
            self.listener.on_notice("Command cancelled")
            content = command_cancelled_message(command)
        except Exception as e:
            log.warning("command failed", command=command, error=str(e))
            self.listener.on_notice(f"Error: {e}")
            content = command_error_message(command, str(e))
        finally:
            if self._command_token is token:
                self._command_token = None

        if epoch != self._epoch:
            log.info("discarding result of superseded command", command=command)
            return None

        result_message = Message(role="user", content=content)
        self.transcript.append(result_message)
        self._persist()
        self._emit(result_message)
        await self.request_reply()
        return result_message

    # -- cancellation / reset --------------------------------------------------

    def cancel_reply(self) -> bool:
        if self._reply_token is None:
            return False
        self._reply_token.cancel("cancelled by user")
        return True

    def cancel_command(self) -> bool:
        if self._command_token is None:
            return False
        self._command_token.cancel("cancelled by user")
        return True

    def cancel_active(self) -> bool:
        """Cancel whatever is outstanding; the command first."""
        return self.cancel_command() or self.cancel_reply()

    def _invalidate(self, reason: str) -> None:
        self._epoch += 1
        if self._reply_token is not None:
            self._reply_token.cancel(reason)
            self._reply_token = None
        if self._command_token is not None:
            self._command_token.cancel(reason)
            self._command_token = None

    def new_chat(self) -> None:
        """Drop the current conversation and anything still in flight."""
        self._invalidate("new chat")
        self.transcript = []
        self.store.clear()
        log.info("started new chat")
        self._set_state(ConversationState.AWAITING_INPUT)

    async def close(self) -> None:
        """Cancel outstanding work and release the HTTP client."""
        self._invalidate("session closed")
        await self.adapter.close()
