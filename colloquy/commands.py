"""REPL commands: lines starting with ':' that change the session between turns."""

import fnmatch
import os
import shlex
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from . import fmt
from .config import Cache, Config, chats_dir
from .errors import ColloquyError, NetworkError
from .prompt import resolve_prompt_path
from .providers import Provider, make_provider
from .session import SessionState, resolve_history_path
from .tools import ToolRegistry
from .transcript import Transcript

COMMAND_PREFIX = ":"


@dataclass
class ReplState:
    """Everything a command may replace: the transcript, provider, and session."""

    config: Config
    cache: Cache
    session: SessionState
    transcript: Transcript
    provider: Provider
    registry: ToolRegistry
    verbose: bool = True


@dataclass
class PendingTurn:
    """A command that also asks a question, e.g. ``:prompt review.md diff this``."""

    text: str
    prompt_file: Path | None = None


QUIT = object()


@dataclass
class Command:
    name: str
    usage: str
    help: str
    handler: Callable[[ReplState, str], object]
    aliases: tuple[str, ...] = ()


def preload_model(state: ReplState) -> None:
    """Load the active model on the backend, warning when that fails."""
    try:
        state.provider.preload(state.session.model.model)
    except NetworkError as e:
        fmt.warning(str(e))


def _cmd_quit(state: ReplState, arg: str):
    return QUIT


def _cmd_help(state: ReplState, arg: str):
    rows = [(f"{COMMAND_PREFIX}{c.usage}", c.help) for c in COMMANDS]
    fmt.listing("Available commands:", rows)


def _cmd_list(state: ReplState, arg: str):
    pattern = f"*{arg.strip()}*" if arg.strip() else "*"
    directory = chats_dir()
    try:
        names = sorted(
            p.name
            for p in directory.iterdir()
            if p.is_file() and fnmatch.fnmatch(p.name, pattern)
        )
    except OSError:
        names = []
    active = state.session.history_file.name
    fmt.listing(f"History files in {directory}:", [(n, "") for n in names], active)


def _cmd_switch(state: ReplState, arg: str):
    if not arg.strip():
        fmt.warning(f"{COMMAND_PREFIX}switch requires a file name")
        return None
    path = resolve_history_path(arg.strip())
    state.transcript = Transcript.load(path)
    state.session.history_file = path
    state.session.remember(state.cache)
    text = state.transcript.raw_text()
    if text.strip():
        print(text)
    fmt.info(f"switched to {path} ({len(state.transcript)} messages)")
    return None


def _editor_command(config: Config) -> list[str]:
    editor = config.editor or os.environ.get("VISUAL") or os.environ.get("EDITOR") or "vi"
    return shlex.split(editor)


def _cmd_edit(state: ReplState, arg: str):
    path = state.session.history_file
    try:
        subprocess.run(_editor_command(state.config) + [str(path)], check=False)
    except OSError as e:
        fmt.error(f"cannot launch editor: {e}")
        return None
    state.transcript.reload()
    fmt.info(f"reloaded {path} ({len(state.transcript)} messages)")
    return None


def _cmd_clear(state: ReplState, arg: str):
    dropped = len(state.transcript)
    state.transcript.clear()
    fmt.info(f"history cleared ({dropped} messages removed)")


def _cmd_sysprompt(state: ReplState, arg: str):
    text = arg.strip()
    if text:
        state.session.system_prompt = text
        fmt.info("system prompt set for this session")
    else:
        state.session.system_prompt = None
        fmt.info("system prompt reset to the profile default:")
        fmt.info(state.session.effective_system_prompt())


def _cmd_context(state: ReplState, arg: str):
    if not arg.strip():
        state.session.context_file = None
        fmt.info("context file cleared")
        return None
    path = Path(arg.strip()).expanduser().resolve()
    if not path.is_file():
        fmt.warning(f"not a file: {arg.strip()}")
        return None
    state.session.context_file = path
    fmt.info(f"context file set: {path} (re-read every turn)")
    return None


def _cmd_prompt(state: ReplState, arg: str):
    parts = arg.strip().split(None, 1)
    if not parts:
        state.session.prompt_file = None
        fmt.info("prompt file cleared")
        return None
    path = resolve_prompt_path(parts[0])
    if len(parts) == 2:
        if not path.is_file():
            fmt.warning(f"prompt file not found: {path}")
            return None
        return PendingTurn(parts[1], path)
    # No question: open the template for editing, creating it if needed.
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)
        subprocess.run(_editor_command(state.config) + [str(path)], check=False)
    except OSError as e:
        fmt.error(f"cannot edit prompt file {path}: {e}")
    return None


def _cmd_model(state: ReplState, arg: str):
    session = state.session
    if not arg.strip():
        rows = [
            (m.model_type, f"{m.model}  {m.description or ''}".rstrip())
            for m in session.profile.models
        ]
        fmt.listing(f"Models in profile {session.profile.name}:", rows, session.model_type)
        return None
    session.switch_model(arg.strip())
    session.remember(state.cache)
    fmt.info(f"model switched to {session.model.model} ({session.model_type})")
    preload_model(state)
    return None


def _cmd_profile(state: ReplState, arg: str):
    session = state.session
    config = state.config
    if not arg.strip():
        rows = [
            (p.name, f"{p.provider}: " + ", ".join(m.model for m in p.models))
            for p in config.profiles
        ]
        fmt.listing("Profiles:", rows, session.profile.name)
        return None
    profile = config.get_profile(arg.strip())
    if profile is None:
        fmt.warning(f"unknown profile {arg.strip()!r}")
        return None
    # Build the provider first so a missing credential leaves the session as is.
    provider = make_provider(
        profile.provider, ollama_url=config.ollama_url, verbose=state.verbose
    )
    state.provider = provider
    session.switch_profile(profile, state.cache)
    session.remember(state.cache)
    fmt.info(
        f"profile switched to {profile.name} "
        f"({session.model.model}, {session.model_type})"
    )
    preload_model(state)
    return None


def _cmd_tools(state: ReplState, arg: str):
    rows = [(t.name, t.description) for t in state.registry.tools()]
    fmt.listing("Tools available to the model:", rows)


COMMANDS = [
    Command("help", "help", "Show this help message", _cmd_help),
    Command("quit", "q", "Quit", _cmd_quit, aliases=("q", "exit")),
    Command("list", "list [pattern]", "List history files", _cmd_list),
    Command("switch", "switch <file>", "Switch to another history file", _cmd_switch),
    Command("edit", "edit", "Open the history file in $EDITOR", _cmd_edit),
    Command("clear", "clear", "Empty the current history file", _cmd_clear),
    Command(
        "sysprompt",
        "sysprompt [text]",
        "Override the system prompt (no text resets it)",
        _cmd_sysprompt,
    ),
    Command(
        "context",
        "context [file]",
        "Attach a file to every prompt (no file detaches it)",
        _cmd_context,
    ),
    Command(
        "prompt",
        "prompt [file [text]]",
        "Edit a prompt file, or ask one question through it (no file clears it)",
        _cmd_prompt,
    ),
    Command("model", "model [type]", "List or switch model type", _cmd_model),
    Command("profile", "profile [name]", "List or switch profile", _cmd_profile),
    Command("tools", "tools", "List available tools", _cmd_tools),
]

_BY_NAME = {name: c for c in COMMANDS for name in (c.name, *c.aliases)}


def command_words() -> list[str]:
    """Every spelling of every command, for tab completion."""
    return [f"{COMMAND_PREFIX}{name}" for name in _BY_NAME]


def parse_command(line: str) -> tuple[Command, str] | None:
    """Split a REPL line into a known command and its argument.

    Returns None for anything that is not a known command, so that a
    message which merely starts with ':' is sent to the model unchanged.
    """
    if not line.startswith(COMMAND_PREFIX):
        return None
    parts = line[len(COMMAND_PREFIX) :].split(None, 1)
    if not parts:
        return None
    command = _BY_NAME.get(parts[0].lower())
    if command is None:
        return None
    return command, parts[1] if len(parts) > 1 else ""


def run_command(state: ReplState, command: Command, arg: str):
    """Run a command. Returns QUIT, a PendingTurn, or None."""
    try:
        return command.handler(state, arg)
    except ColloquyError as e:
        fmt.error(str(e))
        return None
    except KeyboardInterrupt:
        print(file=sys.stderr)
        return None
