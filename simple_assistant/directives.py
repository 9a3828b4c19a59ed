"""Detection of ``[RUN: ...]`` command directives in assistant replies."""

import re
from collections.abc import Iterator

from simple_assistant.history import Message

DIRECTIVE_PATTERN = re.compile(r"\[RUN: (.*?)\]")


class Directives:
    """Lazy view over the directives in a text; each iteration rescans."""

    def __init__(self, text: str):
        self._text = text or ""

    def __iter__(self) -> Iterator[str]:
        for match in DIRECTIVE_PATTERN.finditer(self._text):
            yield match.group(1)

    def __repr__(self) -> str:
        return f"Directives({list(self)!r})"


def extract_directives(text: str) -> Directives:
    """Return the commands embedded in ``text`` in order of appearance."""
    return Directives(text)


def pending_directives(message: Message) -> list[str]:
    """Directives of an assistant message that have not been run yet."""
    if message.role != "assistant":
        return []
    seen: set[str] = set()
    pending: list[str] = []
    for command in extract_directives(message.content):
        if command in message.executed_commands or command in seen:
            continue
        seen.add(command)
        pending.append(command)
    return pending


def summarize_directive(command: str, width: int = 25) -> str:
    """Shorten a command for a run-button label."""
    if len(command) > width:
        return command[:width] + "..."
    return command
