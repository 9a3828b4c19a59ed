"""Transcript model and on-disk persistence."""

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from simple_assistant.logging import get_logger

log = get_logger(__name__)

ROLES = ("system", "user", "assistant")


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant"
    content: str
    executed_commands: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "role": self.role,
            "content": self.content,
            "executed_commands": sorted(self.executed_commands),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create from dictionary."""
        role = str(data["role"])
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        executed = data.get("executed_commands") or []
        return cls(
            role=role,
            content=str(data.get("content", "")),
            executed_commands={str(item) for item in executed},
        )


def truncate(transcript: list[Message], limit: int) -> list[Message]:
    """Keep the leading system message plus the newest ``limit`` others."""
    limit = max(0, int(limit))
    has_system = bool(transcript) and transcript[0].role == "system"
    chat = transcript[1:] if has_system else list(transcript)
    if len(chat) > limit:
        chat = chat[len(chat) - limit:] if limit else []
    return ([transcript[0]] if has_system else []) + chat


class TranscriptStore:
    """Persists the transcript as a single JSON document."""

    def __init__(self, path: Path | str | None = None):
        """Initialize transcript store.

        Args:
            path: Optional snapshot path override
        """
        if path is None:
            from simple_assistant.config import get_config

            self.path = get_config().resolved_history_path()
        else:
            self.path = Path(path).expanduser()

    def load(self) -> list[Message]:
        """Load the persisted transcript.

        Missing or unreadable snapshots yield an empty transcript.
        """
        try:
            if not self.path.exists():
                return []
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError, RecursionError) as e:
            log.debug("history snapshot unreadable", path=str(self.path), error=str(e))
            return []

        if not isinstance(payload, list):
            log.debug("history snapshot not a list", path=str(self.path))
            return []

        messages: list[Message] = []
        for item in payload:
            try:
                messages.append(Message.from_dict(item))
            except (KeyError, TypeError, ValueError):
                continue
        return _normalize_system(messages)

    def save(self, transcript: Iterable[Message], limit: int) -> None:
        """Write a truncated snapshot; failures are logged, never raised."""
        truncated = truncate(list(transcript), limit)
        contents = json.dumps([msg.to_dict() for msg in truncated])

        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".history-", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(contents)
            os.replace(tmp_name, self.path)
            tmp_name = None
            log.debug("history saved", path=str(self.path), messages=len(truncated))
        except OSError as e:
            log.error("Failed to save history", path=str(self.path), error=str(e))
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def clear(self) -> None:
        """Delete the snapshot; a missing file is not an error."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            log.error("Failed to clear history", path=str(self.path), error=str(e))


def _normalize_system(messages: list[Message]) -> list[Message]:
    """Drop system messages that are not at index 0."""
    return [
        msg for idx, msg in enumerate(messages)
        if msg.role != "system" or idx == 0
    ]
