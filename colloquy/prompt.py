"""Turn prompt assembly and token estimation."""

from pathlib import Path

from .config import prompts_dir
from .errors import FileAccessError
from .messages import SYSTEM, USER, Message, total_chars
from .session import SessionState

USER_PROMPT_PLACEHOLDER = "${{user_prompt}}"
CHARS_PER_TOKEN = 4


def resolve_prompt_path(name: str | Path) -> Path:
    """Relative prompt file names live in the prompts directory."""
    path = Path(name).expanduser()
    if path.is_absolute() or path.exists():
        return path
    return prompts_dir() / path


def _read(path: Path, what: str) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise FileAccessError(f"cannot read {what} {path}: {e}") from e


def apply_prompt_template(template: str, user_input: str) -> str:
    """Substitute the user's input into a prompt file.

    Without a placeholder the input is appended after the template.
    """
    if USER_PROMPT_PLACEHOLDER in template:
        return template.replace(USER_PROMPT_PLACEHOLDER, user_input)
    if template and not template[-1].isspace():
        template += "\n"
    return template + user_input


def context_message(path: Path) -> Message:
    content = _read(path, "context file")
    return Message(USER, f'<context file="{path.name}">\n{content.strip()}\n</context>')


def current_turn_message(session: SessionState, user_input: str) -> Message:
    if session.prompt_file is None:
        return Message(USER, user_input)
    template = _read(session.prompt_file, "prompt file")
    return Message(USER, apply_prompt_template(template, user_input))


def assemble(
    session: SessionState, user_input: str, history: list[Message]
) -> list[Message]:
    """Build the ordered message list for one turn.

    The shape is always: one system message, the context file (if any),
    the prior history unchanged, then the current user turn. The context
    file is re-read on every call so edits show up on the next turn.
    """
    messages = [Message(SYSTEM, session.effective_system_prompt())]
    if session.context_file is not None:
        messages.append(context_message(session.context_file))
    messages.extend(history)
    messages.append(current_turn_message(session, user_input))
    return messages


def estimate_tokens(messages: list[Message]) -> int:
    """Rough token count: total characters divided by four, rounded down."""
    return total_chars(messages) // CHARS_PER_TOKEN
