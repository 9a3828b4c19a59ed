"""Supervised execution of confirmed shell commands."""

import asyncio
import os
import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from simple_assistant.cancellation import CancelToken
from simple_assistant.exceptions import (
    CommandError,
    CommandTimeoutError,
    OperationCancelledError,
    SpawnError,
)
from simple_assistant.logging import get_logger

log = get_logger(__name__)

PRIVILEGE_PREFIX = "sudo "
READ_CHUNK_SIZE = 64 * 1024

OutputCallback = Callable[[str, str], None]


class ExecutionState(str, Enum):
    """Lifecycle of one command execution."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class CommandExecution:
    """Bookkeeping for the command currently being supervised."""

    command: str
    argv: list[str]
    cancel_token: CancelToken
    timeout_seconds: int
    pid: int | None = None
    started_at: float = field(default_factory=time.monotonic)
    state: ExecutionState = ExecutionState.IDLE

    def transition(self, state: ExecutionState) -> None:
        log.debug("command state", command=self.command, pid=self.pid, state=state.value)
        self.state = state


@dataclass
class CommandResult:
    """Captured output of a command that exited on its own."""

    stdout: str
    stderr: str
    exit_status: int


def requires_privilege(command: str) -> bool:
    """Whether the command asks for elevation via ``sudo``."""
    return command.strip().startswith(PRIVILEGE_PREFIX)


def wrap_privileged(command: str, helper: str = "pkexec") -> str:
    """Route ``sudo`` commands through a helper that shows a native auth dialog."""
    stripped = command.strip()
    if not stripped.startswith(PRIVILEGE_PREFIX):
        return command
    inner = stripped[len(PRIVILEGE_PREFIX):]
    escaped = inner.replace("'", "'\\''")
    return f"{helper} bash -c '{escaped}'"


def _join_lines(lines: list[bytes]) -> str:
    return b"".join(line + b"\n" for line in lines).decode("utf-8", errors="replace")


class CommandExecutor:
    """Spawns one child process per call and supervises it.

    The executor itself does not serialize calls; callers keep at most one
    execution outstanding.
    """

    def __init__(self, privilege_helper: str = "pkexec", terminate_grace: float = 2.0):
        self.privilege_helper = privilege_helper
        self.terminate_grace = terminate_grace
        self.active: CommandExecution | None = None

    def prepare_argv(self, command: str) -> list[str]:
        """Apply privilege wrapping and split the command into argv.

        Raises:
            SpawnError: if the command cannot be parsed or is empty
        """
        actual = wrap_privileged(command, self.privilege_helper)
        try:
            argv = shlex.split(actual)
        except ValueError as e:
            raise SpawnError(command, f"Cannot parse command: {e}") from e
        if not argv:
            raise SpawnError(command, "Command is empty")
        return argv

    async def run(
        self,
        command: str,
        timeout_seconds: int,
        cancel_token: CancelToken | None = None,
        on_output: OutputCallback | None = None,
    ) -> CommandResult:
        """Run a command and return its output.

        Args:
            command: Command line as proposed by the assistant
            timeout_seconds: Seconds before the process is terminated
            cancel_token: Token that aborts the run when triggered
            on_output: Optional ``(stream, line)`` callback for partial output

        Raises:
            SpawnError: process could not be started
            CommandTimeoutError: process outlived ``timeout_seconds``
            OperationCancelledError: token was triggered
        """
        token = cancel_token or CancelToken("command")
        argv = self.prepare_argv(command)
        token.raise_if_cancelled()

        execution = CommandExecution(
            command=command,
            argv=argv,
            cancel_token=token,
            timeout_seconds=timeout_seconds,
        )

        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            execution.transition(ExecutionState.FAILED)
            log.warning("command spawn failed", command=command, error=str(e))
            raise SpawnError(command, str(e)) from e

        execution.pid = process.pid
        execution.started_at = time.monotonic()
        execution.transition(ExecutionState.RUNNING)
        self.active = execution
        log.info("Executing command", command=command, pid=process.pid, timeout=timeout_seconds)

        stdout_lines: list[bytes] = []
        stderr_lines: list[bytes] = []
        collect_task = asyncio.create_task(
            self._collect(process, stdout_lines, stderr_lines, on_output)
        )
        cancel_task = asyncio.create_task(token.wait())
        try:
            done, _ = await asyncio.wait(
                {collect_task, cancel_task},
                timeout=max(0, timeout_seconds),
                return_when=asyncio.FIRST_COMPLETED,
            )

            if token.cancelled:
                execution.transition(ExecutionState.CANCELLED)
                await self._abort(process, collect_task)
                raise OperationCancelledError("Command cancelled")

            if collect_task not in done:
                execution.transition(ExecutionState.TIMED_OUT)
                await self._abort(process, collect_task)
                raise CommandTimeoutError(command, timeout_seconds)

            try:
                exit_status = collect_task.result()
            except Exception as e:
                execution.transition(ExecutionState.FAILED)
                await self._abort(process, collect_task)
                raise CommandError(command, f"Reading command output failed: {e}") from e

            execution.transition(ExecutionState.COMPLETED)
            log.info(
                "Command finished",
                command=command,
                exit_status=exit_status,
                duration_s=round(time.monotonic() - execution.started_at, 3),
            )
            return CommandResult(
                stdout=_join_lines(stdout_lines),
                stderr=_join_lines(stderr_lines),
                exit_status=exit_status,
            )
        except asyncio.CancelledError:
            execution.transition(ExecutionState.CANCELLED)
            await self._abort(process, collect_task)
            raise
        finally:
            if not cancel_task.done():
                cancel_task.cancel()
                try:
                    await cancel_task
                except asyncio.CancelledError:
                    pass
            if self.active is execution:
                self.active = None

    async def _collect(
        self,
        process: asyncio.subprocess.Process,
        stdout_lines: list[bytes],
        stderr_lines: list[bytes],
        on_output: OutputCallback | None,
    ) -> int:
        readers = [
            asyncio.create_task(self._read_stream(process.stdout, "stdout", stdout_lines, on_output)),
            asyncio.create_task(self._read_stream(process.stderr, "stderr", stderr_lines, on_output)),
        ]
        try:
            await asyncio.gather(*readers)
        finally:
            for reader in readers:
                if not reader.done():
                    reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
        return await process.wait()

    @staticmethod
    async def _read_stream(
        stream: asyncio.StreamReader | None,
        name: str,
        sink: list[bytes],
        on_output: OutputCallback | None,
    ) -> None:
        if stream is None:
            return

        def emit(line: bytes) -> None:
            sink.append(line)
            if on_output is not None:
                try:
                    on_output(name, line.decode("utf-8", errors="replace"))
                except Exception as e:
                    log.debug("output callback failed", stream=name, error=str(e))

        # Lines have no length cap; split chunks ourselves and carry the tail.
        tail: list[bytes] = []
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            parts = chunk.split(b"\n")
            if len(parts) == 1:
                tail.append(chunk)
                continue
            emit(b"".join(tail) + parts[0])
            for line in parts[1:-1]:
                emit(line)
            tail = [parts[-1]] if parts[-1] else []
        if tail:
            emit(b"".join(tail))

    async def _abort(self, process: asyncio.subprocess.Process, collect_task: asyncio.Task[Any]) -> None:
        """Best-effort termination: SIGTERM, then SIGKILL after the grace period."""
        await self._terminate(process)
        if not collect_task.done():
            collect_task.cancel()
        try:
            await collect_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("output collection ended with error", error=str(e))

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except (ProcessLookupError, PermissionError) as e:
            log.debug("terminate failed", pid=process.pid, error=str(e))
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace)
            return
        except asyncio.TimeoutError:
            pass
        try:
            process.kill()
        except (ProcessLookupError, PermissionError) as e:
            log.debug("kill failed", pid=process.pid, error=str(e))
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace)
        except asyncio.TimeoutError:
            log.warning("process did not exit after kill", pid=process.pid)
