import asyncio

import pytest

from simple_assistant.cancellation import CancelToken
from simple_assistant.config import Config, ProviderConfig
from simple_assistant.exceptions import (
    BusyError,
    CommandTimeoutError,
    ConfigError,
    OperationCancelledError,
    ProviderError,
    SpawnError,
)
from simple_assistant.executor import CommandResult
from simple_assistant.history import Message, TranscriptStore
from simple_assistant.orchestrator import Conversation, ConversationListener, ConversationState
from simple_assistant.prompts import SYSTEM_PROMPT


class ScriptedAdapter:
    """Returns queued replies (or raises queued exceptions) in order."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: list[tuple[ProviderConfig, list[Message]]] = []
        self.closed = False

    async def send(self, config, messages, cancel_token=None):
        self.calls.append((config, [Message(m.role, m.content, set(m.executed_commands)) for m in messages]))
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def close(self):
        self.closed = True


class BlockingAdapter:
    """Blocks until cancelled; optionally ignores the token to mimic a late reply."""

    def __init__(self, honour_token: bool = True):
        self.honour_token = honour_token
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def send(self, config, messages, cancel_token=None):
        self.calls += 1
        self.started.set()
        if self.honour_token and cancel_token is not None:
            await cancel_token.wait()
            raise OperationCancelledError("Request cancelled")
        await self.release.wait()
        return "late reply [RUN: rm -rf /tmp/x]"

    async def close(self):
        pass


class InterruptibleAdapter(ScriptedAdapter):
    """Scripted replies where BLOCK parks the call until its token is cancelled."""

    BLOCK = object()

    def __init__(self, *replies):
        super().__init__(*replies)
        self.blocked = asyncio.Event()

    async def send(self, config, messages, cancel_token=None):
        if self.replies and self.replies[0] is self.BLOCK:
            self.replies.pop(0)
            self.calls.append((config, list(messages)))
            self.blocked.set()
            await cancel_token.wait()
            raise OperationCancelledError("Request cancelled")
        return await super().send(config, messages, cancel_token)


class FakeExecutor:
    def __init__(self, outcome):
        self.outcome = outcome
        self.runs: list[tuple[str, int]] = []

    async def run(self, command, timeout_seconds, cancel_token=None, on_output=None):
        self.runs.append((command, timeout_seconds))
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        if on_output is not None:
            on_output("stdout", "partial")
        return self.outcome


class BlockingExecutor:
    def __init__(self):
        self.started = asyncio.Event()

    async def run(self, command, timeout_seconds, cancel_token=None, on_output=None):
        self.started.set()
        await cancel_token.wait()
        raise OperationCancelledError("Command cancelled")


class RecordingListener(ConversationListener):
    def __init__(self):
        self.messages: list[tuple[Message, bool]] = []
        self.states: list[ConversationState] = []
        self.notices: list[str] = []
        self.output: list[tuple[str, str]] = []

    def on_message(self, message, transient):
        self.messages.append((message, transient))

    def on_state(self, state):
        self.states.append(state)

    def on_notice(self, text):
        self.notices.append(text)

    def on_command_output(self, stream, line):
        self.output.append((stream, line))


def _config(tmp_path, **overrides) -> Config:
    config = Config()
    config.providers.active = "openai"
    config.providers.openai.api_key = "sk-test"
    config.history.path = str(tmp_path / "history.json")
    config.history.limit = 10
    config.commands.timeout = 7
    for key, value in overrides.items():
        section, field = key.split("__")
        setattr(getattr(config, section), field, value)
    return config


def _conversation(tmp_path, adapter, executor=None, device_info=lambda: "Distro: Test OS\n", **overrides):
    listener = RecordingListener()
    config = _config(tmp_path, **overrides)
    conversation = Conversation(
        config,
        store=TranscriptStore(config.resolved_history_path()),
        adapter=adapter,
        executor=executor or FakeExecutor(CommandResult("", "", 0)),
        device_info=device_info,
        listener=listener,
    )
    return conversation, listener


@pytest.mark.asyncio
async def test_first_message_injects_preamble_and_persists_reply(tmp_path):
    adapter = ScriptedAdapter("Hello!")
    conversation, listener = _conversation(tmp_path, adapter)

    await conversation.post_user_message("hi")

    assert [(m.role, m.content) for m in conversation.transcript] == [
        ("system", SYSTEM_PROMPT),
        ("user", "hi"),
        ("assistant", "Hello!"),
    ]
    sent = adapter.calls[0][1]
    assert [m.role for m in sent] == ["system", "user"]
    assert adapter.calls[0][0] == ProviderConfig("openai", "sk-test", "")
    assert [m.content for m in TranscriptStore(tmp_path / "history.json").load()] == [
        SYSTEM_PROMPT,
        "hi",
        "Hello!",
    ]
    assert conversation.state == ConversationState.AWAITING_INPUT
    assert ConversationState.REQUESTING_REPLY in listener.states


@pytest.mark.asyncio
async def test_device_info_appended_once_on_first_turn_when_enabled(tmp_path):
    calls: list[int] = []

    def device_info() -> str:
        calls.append(1)
        return "Distro: Test OS\n"

    adapter = ScriptedAdapter("one", "two")
    conversation, _ = _conversation(tmp_path, adapter, device_info=device_info, device_info__share=True)

    await conversation.post_user_message("first")
    await conversation.post_user_message("second")

    system = conversation.transcript[0]
    assert system.content.startswith(SYSTEM_PROMPT)
    assert system.content.count("User System Info:") == 1
    assert "Distro: Test OS" in system.content
    assert calls == [1]


@pytest.mark.asyncio
async def test_device_info_failure_degrades_to_unknown(tmp_path):
    def broken() -> str:
        raise OSError("no /proc")

    conversation, _ = _conversation(tmp_path, ScriptedAdapter("ok"), device_info=broken, device_info__share=True)

    await conversation.post_user_message("hi")

    assert "Unknown device info" in conversation.transcript[0].content


@pytest.mark.asyncio
async def test_device_info_not_shared_by_default(tmp_path):
    conversation, _ = _conversation(tmp_path, ScriptedAdapter("ok"))
    await conversation.post_user_message("hi")
    assert "User System Info:" not in conversation.transcript[0].content


@pytest.mark.asyncio
async def test_blank_input_is_ignored(tmp_path):
    adapter = ScriptedAdapter()
    conversation, _ = _conversation(tmp_path, adapter)
    assert await conversation.post_user_message("   ") is None
    assert conversation.transcript == []
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_reply_with_directive_enters_directives_pending(tmp_path):
    conversation, _ = _conversation(tmp_path, ScriptedAdapter("Check with [RUN: ls -la] and [RUN: pwd]"))

    await conversation.post_user_message("what is here?")

    assert conversation.state == ConversationState.DIRECTIVES_PENDING
    assert conversation.pending_directives() == ["ls -la", "pwd"]


@pytest.mark.asyncio
async def test_provider_error_shows_transient_message_without_persisting(tmp_path):
    adapter = ScriptedAdapter(ProviderError("OpenAI Error: 500 - boom", status_code=500, body="boom"))
    conversation, listener = _conversation(tmp_path, adapter)

    await conversation.post_user_message("hi")

    assert [m.role for m in conversation.transcript] == ["system", "user"]
    transient = [m.content for m, is_transient in listener.messages if is_transient]
    assert transient == ["Error: OpenAI Error: 500 - boom"]
    assert not (tmp_path / "history.json").exists()
    assert conversation.state == ConversationState.AWAITING_INPUT


@pytest.mark.asyncio
async def test_missing_key_is_reported_as_notice(tmp_path):
    adapter = ScriptedAdapter(ConfigError("API Key is missing"))
    conversation, listener = _conversation(tmp_path, adapter)

    await conversation.post_user_message("hi")

    transient = [m.content for m, is_transient in listener.messages if is_transient]
    assert transient == ["**API Key missing!** Please go to settings."]


@pytest.mark.asyncio
async def test_cancelled_reply_shows_sentinel_and_is_not_a_turn(tmp_path):
    adapter = BlockingAdapter()
    conversation, listener = _conversation(tmp_path, adapter)

    task = asyncio.create_task(conversation.post_user_message("hi"))
    await asyncio.wait_for(adapter.started.wait(), timeout=2)
    assert conversation.state == ConversationState.REQUESTING_REPLY
    assert conversation.cancel_reply() is True
    await asyncio.wait_for(task, timeout=2)

    assert [m.role for m in conversation.transcript] == ["system", "user"]
    transient = [m.content for m, is_transient in listener.messages if is_transient]
    assert transient == ["_Request cancelled._"]
    assert not conversation.busy


@pytest.mark.asyncio
async def test_second_message_while_reply_pending_is_rejected(tmp_path):
    adapter = BlockingAdapter()
    conversation, _ = _conversation(tmp_path, adapter)

    task = asyncio.create_task(conversation.post_user_message("hi"))
    await asyncio.wait_for(adapter.started.wait(), timeout=2)
    with pytest.raises(BusyError):
        await conversation.post_user_message("again")
    with pytest.raises(BusyError):
        await conversation.request_reply()

    conversation.cancel_reply()
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_new_chat_discards_late_reply(tmp_path):
    adapter = BlockingAdapter(honour_token=False)
    conversation, listener = _conversation(tmp_path, adapter)

    task = asyncio.create_task(conversation.post_user_message("hi"))
    await asyncio.wait_for(adapter.started.wait(), timeout=2)

    conversation.new_chat()
    assert conversation.transcript == []
    assert not conversation.busy

    adapter.release.set()
    await asyncio.wait_for(task, timeout=2)

    assert conversation.transcript == []
    assert conversation.state == ConversationState.AWAITING_INPUT
    assert not (tmp_path / "history.json").exists()
    assert all("late reply" not in m.content for m, _ in listener.messages)


@pytest.mark.asyncio
async def test_new_chat_clears_store_and_transcript(tmp_path):
    conversation, _ = _conversation(tmp_path, ScriptedAdapter("Hello"))
    await conversation.post_user_message("hi")
    assert (tmp_path / "history.json").exists()

    conversation.new_chat()

    assert conversation.transcript == []
    assert not (tmp_path / "history.json").exists()
    assert conversation.state == ConversationState.AWAITING_INPUT


@pytest.mark.asyncio
async def test_confirm_directive_appends_output_and_requests_follow_up(tmp_path):
    adapter = ScriptedAdapter("Run [RUN: echo hi]", "It printed hi.")
    executor = FakeExecutor(CommandResult("hi\n", "", 0))
    conversation, listener = _conversation(tmp_path, adapter, executor=executor)
    await conversation.post_user_message("say hi")
    reply = conversation.last_assistant_message()

    result = await conversation.confirm_directive("echo hi", reply)

    assert result is not None
    assert result.role == "user"
    assert result.content == 'COMMAND OUTPUT for "echo hi" (exit status 0):\nhi'
    assert executor.runs == [("echo hi", 7)]
    assert reply.executed_commands == {"echo hi"}
    assert [m.role for m in conversation.transcript] == ["system", "user", "assistant", "user", "assistant"]
    assert conversation.transcript[-1].content == "It printed hi."
    follow_up_sent = adapter.calls[1][1]
    assert follow_up_sent[-1].content == result.content
    assert listener.output == [("stdout", "partial")]
    assert conversation.state == ConversationState.AWAITING_INPUT

    persisted = TranscriptStore(tmp_path / "history.json").load()
    assert persisted[2].executed_commands == {"echo hi"}
    assert persisted[-1].content == "It printed hi."


@pytest.mark.asyncio
async def test_confirm_directive_with_no_output_uses_sentinel(tmp_path):
    adapter = ScriptedAdapter("[RUN: true]", "ok")
    conversation, _ = _conversation(tmp_path, adapter, executor=FakeExecutor(CommandResult("", "", 0)))
    await conversation.post_user_message("go")

    result = await conversation.confirm_directive("true", conversation.last_assistant_message())

    assert result.content.endswith("Done (no output)")


@pytest.mark.asyncio
async def test_confirm_directive_timeout_is_recorded(tmp_path):
    adapter = ScriptedAdapter("[RUN: sleep 100]", "That took too long.")
    executor = FakeExecutor(CommandTimeoutError("sleep 100", 7))
    conversation, listener = _conversation(tmp_path, adapter, executor=executor)
    await conversation.post_user_message("wait")

    result = await conversation.confirm_directive("sleep 100", conversation.last_assistant_message())

    assert result.content == 'COMMAND TIMEOUT for "sleep 100": Exceeded 7 seconds'
    assert "Timeout: Command exceeded 7s limit" in listener.notices
    assert conversation.transcript[-1].content == "That took too long."


@pytest.mark.asyncio
async def test_confirm_directive_spawn_error_is_recorded(tmp_path):
    adapter = ScriptedAdapter("[RUN: nope]", "Install it first.")
    executor = FakeExecutor(SpawnError("nope", "No such file or directory"))
    conversation, _ = _conversation(tmp_path, adapter, executor=executor)
    await conversation.post_user_message("run it")

    result = await conversation.confirm_directive("nope", conversation.last_assistant_message())

    assert result.content == 'COMMAND ERROR for "nope":\nNo such file or directory'


@pytest.mark.asyncio
async def test_cancel_command_records_cancellation_and_continues(tmp_path):
    adapter = ScriptedAdapter("[RUN: sleep 100]", "Okay, stopped.")
    executor = BlockingExecutor()
    conversation, listener = _conversation(tmp_path, adapter, executor=executor)
    await conversation.post_user_message("wait")

    task = asyncio.create_task(
        conversation.confirm_directive("sleep 100", conversation.last_assistant_message())
    )
    await asyncio.wait_for(executor.started.wait(), timeout=2)
    assert conversation.state == ConversationState.EXECUTING_COMMAND
    with pytest.raises(BusyError):
        await conversation.confirm_directive("sleep 100", conversation.last_assistant_message())

    assert conversation.cancel_command() is True
    result = await asyncio.wait_for(task, timeout=2)

    assert result.content == 'COMMAND CANCELLED for "sleep 100"'
    assert "Command cancelled" in listener.notices
    assert conversation.transcript[-1].content == "Okay, stopped."


@pytest.mark.asyncio
async def test_new_chat_during_command_discards_result(tmp_path):
    adapter = ScriptedAdapter("[RUN: sleep 100]")
    executor = BlockingExecutor()
    conversation, _ = _conversation(tmp_path, adapter, executor=executor)
    await conversation.post_user_message("wait")

    task = asyncio.create_task(
        conversation.confirm_directive("sleep 100", conversation.last_assistant_message())
    )
    await asyncio.wait_for(executor.started.wait(), timeout=2)
    conversation.new_chat()

    assert await asyncio.wait_for(task, timeout=2) is None
    assert conversation.transcript == []
    assert len(adapter.calls) == 1


@pytest.mark.asyncio
async def test_executed_directive_cannot_run_twice(tmp_path):
    adapter = ScriptedAdapter("[RUN: echo hi]", "done")
    conversation, _ = _conversation(tmp_path, adapter, executor=FakeExecutor(CommandResult("hi\n", "", 0)))
    await conversation.post_user_message("go")
    reply = conversation.last_assistant_message()
    await conversation.confirm_directive("echo hi", reply)

    with pytest.raises(ValueError):
        await conversation.confirm_directive("echo hi", reply)
    with pytest.raises(ValueError):
        await conversation.confirm_directive("whoami", reply)


@pytest.mark.asyncio
async def test_pending_directives_restored_from_persisted_transcript(tmp_path):
    store = TranscriptStore(tmp_path / "history.json")
    store.save(
        [
            Message("system", SYSTEM_PROMPT),
            Message("user", "check"),
            Message("assistant", "[RUN: ls] [RUN: df -h]", {"ls"}),
        ],
        limit=10,
    )

    conversation, _ = _conversation(tmp_path, ScriptedAdapter())

    assert conversation.state == ConversationState.DIRECTIVES_PENDING
    assert conversation.pending_directives() == ["df -h"]


@pytest.mark.asyncio
async def test_close_cancels_outstanding_and_closes_adapter(tmp_path):
    adapter = ScriptedAdapter()
    conversation, _ = _conversation(tmp_path, adapter)
    async with conversation:
        pass
    assert adapter.closed is True


def test_cancel_token_is_single_shot():
    token = CancelToken("reply")
    token.cancel("first")
    token.cancel("second")
    assert token.cancelled
    assert token.reason == "first"
    with pytest.raises(OperationCancelledError):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_confirm_directive_cancels_pending_reply_first(tmp_path):
    adapter = InterruptibleAdapter("Try [RUN: echo hi]", InterruptibleAdapter.BLOCK, "It printed hi.")
    executor = FakeExecutor(CommandResult("hi\n", "", 0))
    conversation, listener = _conversation(tmp_path, adapter, executor=executor)
    await conversation.post_user_message("say hi")
    offer = conversation.last_assistant_message()

    pending = asyncio.create_task(conversation.post_user_message("are you there?"))
    await asyncio.wait_for(adapter.blocked.wait(), timeout=2)
    assert conversation.reply_pending

    result = await asyncio.wait_for(conversation.confirm_directive("echo hi", offer), timeout=2)
    await asyncio.wait_for(pending, timeout=2)

    assert result.content == 'COMMAND OUTPUT for "echo hi" (exit status 0):\nhi'
    transient = [m.content for m, is_transient in listener.messages if is_transient]
    assert transient == ["_Request cancelled._"]
    assert [m.content for m in conversation.transcript[-3:]] == [
        "are you there?",
        result.content,
        "It printed hi.",
    ]
    assert len(adapter.calls) == 3
    assert not conversation.busy
