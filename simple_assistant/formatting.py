"""Convert assistant text into rich console markup."""

import re

from rich.markup import escape

_TOKEN = re.compile(
    r"```(?P<block>[\s\S]*?)```"
    r"|\[RUN: (?P<run>.*?)\]"
    r"|\*\*(?P<bold>.*?)\*\*"
    r"|`(?P<code>[^`\n]*)`"
    r"|\*(?P<em>[^*\n]+)\*"
    r"|(?<!\w)_(?P<under>[^_\n]+)_(?!\w)"
)


def format_message(text: str) -> str:
    """Render markdown-ish emphasis, code and run tags as rich markup.

    Everything outside the recognized constructs is escaped, so stray
    square brackets in model output never turn into markup.
    """
    parts: list[str] = []
    pos = 0
    for match in _TOKEN.finditer(text):
        parts.append(escape(text[pos:match.start()]))
        pos = match.end()
        if match.group("block") is not None:
            body = match.group("block").strip("\n")
            parts.append(f"\n[on grey15]{escape(body)}[/]\n")
        elif match.group("run") is not None:
            parts.append(f"[bold underline]Command: {escape(match.group('run'))}[/]")
        elif match.group("bold") is not None:
            parts.append(f"[bold]{escape(match.group('bold'))}[/]")
        elif match.group("code") is not None:
            parts.append(f"[cyan]{escape(match.group('code'))}[/]")
        elif match.group("em") is not None:
            parts.append(f"[italic]{escape(match.group('em'))}[/]")
        else:
            parts.append(f"[italic]{escape(match.group('under'))}[/]")
    parts.append(escape(text[pos:]))
    return "".join(parts)
