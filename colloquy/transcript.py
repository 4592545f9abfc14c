"""Plain-text chat transcripts.

A transcript is an ordinary text file the user can open in any editor. Each
message is introduced by a three-line delimiter block naming its role::

    -------------------------------------------------------------------
                            --- User Input ---
    -------------------------------------------------------------------
    explain foo.txt

Tool results use a ``Tool Call: <name>`` label; the first line of their body
holds the JSON arguments, the rest is the tool output. Text written before
the first delimiter (or a file with no delimiters at all) is treated as user
input, so a hand-written notes file can be used as a history file directly.

System prompts are session settings and are never stored. A content line
that looks like a delimiter rule is written with a leading backslash, which
parse removes again, so quoted delimiter blocks stay inside their message.
"""

import json
import os
import re
from pathlib import Path

from .errors import FileAccessError
from .messages import ASSISTANT, SYSTEM, TOOL, USER, Message

RULE = "-" * 67
ARGUMENTS_PREFIX = "arguments: "

_LABELS = {
    USER: "User Input",
    ASSISTANT: "AI Response",
}
_LABEL_ROLES = {label: role for role, label in _LABELS.items()}

_MARKER_RE = re.compile(
    r"^-{10,}[ \t]*\r?\n"
    r"[ \t]*--- (?:(?P<label>User Input|AI Response)|Tool Call: (?P<tool>[^\n]*?)) ---[ \t]*\r?\n"
    r"-{10,}[ \t]*$",
    re.MULTILINE,
)

# Rule-like content lines, optionally already escaped.
_ESCAPE_RE = re.compile(r"^(?=\\*-{10,}[ \t\r]*$)", re.MULTILINE)
_UNESCAPE_RE = re.compile(r"^\\(?=\\*-{10,}[ \t\r]*$)", re.MULTILINE)


def delimiter(label: str) -> str:
    return f"\n\n{RULE}\n{' ' * 24}--- {label} ---\n{RULE}\n"


def _compact_arguments(raw: str | None) -> str:
    """Return tool arguments as single-line JSON so they fit the header line."""
    if not raw:
        return "{}"
    try:
        return json.dumps(json.loads(raw), ensure_ascii=False)
    except (json.JSONDecodeError, TypeError):
        return " ".join(raw.split())


def normalize(message: Message) -> Message:
    """Return the message as it reads back from disk.

    Content is stripped and in-turn tool-call bookkeeping is dropped.
    """
    if message.role == TOOL:
        return Message(
            TOOL,
            message.content.strip(),
            tool_name=message.tool_name or "unknown",
            tool_arguments=_compact_arguments(message.tool_arguments),
        )
    return Message(message.role, message.content.strip())


def format_message(message: Message) -> str:
    """Serialize one message as a delimiter block.

    Empty messages and system messages produce ''.
    """
    message = normalize(message)
    content = _ESCAPE_RE.sub("\\\\", message.content)
    if message.role == TOOL:
        body = f"{ARGUMENTS_PREFIX}{message.tool_arguments}"
        if content:
            body += f"\n{content}"
        return f"{delimiter(f'Tool Call: {message.tool_name}')}{body}"
    if message.role == SYSTEM or not content:
        return ""
    return f"{delimiter(_LABELS[message.role])}{content}"


def _tool_message(name: str, body: str) -> Message:
    body = body.strip()
    first, _, rest = body.partition("\n")
    if first.startswith(ARGUMENTS_PREFIX):
        return Message(
            TOOL,
            rest.strip(),
            tool_name=name,
            tool_arguments=first[len(ARGUMENTS_PREFIX) :].strip(),
        )
    return Message(TOOL, body, tool_name=name)


def parse(raw: str) -> list[Message]:
    """Split transcript text into ordered messages.

    Never fails: text without any recognized delimiter becomes a single user
    message holding the text verbatim.
    """
    matches = list(_MARKER_RE.finditer(raw))
    if not matches:
        return [Message(USER, raw)] if raw.strip() else []

    messages: list[Message] = []
    leading = raw[: matches[0].start()].strip()
    if leading:
        messages.append(Message(USER, leading))

    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(raw)
        body = _UNESCAPE_RE.sub("", raw[match.end() : end])
        if not body.strip():
            continue
        if match.group("tool") is not None:
            messages.append(_tool_message(match.group("tool").strip(), body))
        else:
            role = _LABEL_ROLES[match.group("label")]
            messages.append(Message(role, body.strip()))
    return messages


class Transcript:
    """An append-only conversation history backed 1:1 by a text file."""

    def __init__(self, path: Path, messages: list[Message] | None = None):
        self.path = Path(path)
        self.messages: list[Message] = list(messages or [])

    @classmethod
    def load(cls, path: str | Path) -> "Transcript":
        """Read a transcript, creating an empty file if it does not exist yet."""
        path = Path(path).expanduser()
        if not path.exists():
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.touch()
            except OSError as e:
                raise FileAccessError(f"cannot create history file {path}: {e}") from e
            return cls(path)
        return cls(path, parse(_read_text(path)))

    def reload(self) -> None:
        """Re-read the file, e.g. after it was edited outside the REPL."""
        self.messages = parse(_read_text(self.path)) if self.path.exists() else []

    def raw_text(self) -> str:
        return _read_text(self.path) if self.path.exists() else ""

    def append(self, message: Message) -> None:
        self.extend([message])

    def extend(self, messages: list[Message]) -> None:
        """Durably append a batch of messages with a single write."""
        blocks = [format_message(m) for m in messages]
        text = "".join(blocks)
        if text:
            try:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(text)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise FileAccessError(
                    f"cannot write history file {self.path}: {e}"
                ) from e
        self.messages.extend(
            normalize(m) for m, block in zip(messages, blocks) if block
        )

    def clear(self) -> None:
        """Truncate the backing file and forget every message."""
        try:
            with open(self.path, "w", encoding="utf-8"):
                pass
        except OSError as e:
            raise FileAccessError(f"cannot clear history file {self.path}: {e}") from e
        self.messages = []

    def __len__(self) -> int:
        return len(self.messages)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise FileAccessError(f"cannot read {path}: {e}") from e
