"""Conversation turn engine and the interactive command-line client."""

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path

from . import fmt
from .commands import (
    QUIT,
    PendingTurn,
    ReplState,
    command_words,
    parse_command,
    preload_model,
    run_command,
)
from .config import MODEL_TYPES, Cache, Config, data_dir, generate_config, load_config
from .errors import (
    ColloquyError,
    ConfigError,
    FileAccessError,
    NetworkError,
    ToolLoopExceeded,
)
from .messages import ASSISTANT, Message, ToolCall
from .prompt import assemble, estimate_tokens, resolve_prompt_path
from .providers import Provider, Response, SendOptions, make_provider
from .session import SessionState, resolve_history_path
from .tools import ToolRegistry, build_registry
from .transcript import Transcript

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 1000
MAX_RESULT_PREVIEW = 500
DEFAULT_HISTORY_FILE = "chat.txt"


@dataclass
class TurnOptions:
    max_tool_rounds: int = 5
    max_tokens: int = 1024
    request_timeout: float = 300
    token_estimation: bool = True
    verbose: bool = False

    @classmethod
    def from_config(cls, config: Config, verbose: bool) -> "TurnOptions":
        return cls(
            max_tool_rounds=config.max_tool_rounds,
            max_tokens=config.max_tokens,
            request_timeout=config.request_timeout,
            token_estimation=config.token_estimation,
            verbose=verbose,
        )


@dataclass
class TurnResult:
    answer: str
    user_message: Message
    tool_messages: list[Message]
    rounds: int
    token_estimate: int
    context_window: int | None = None


def handle_tool_call(call: ToolCall, registry: ToolRegistry, verbose: bool) -> Message:
    """Execute a single tool call and return the tool-role message for it."""
    if verbose:
        try:
            pretty = json.dumps(json.loads(call.arguments or "{}"), indent=2)
        except (json.JSONDecodeError, TypeError):
            pretty = call.arguments
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(call.name, pretty)

    t0 = time.monotonic()
    result = registry.execute(call)
    elapsed = time.monotonic() - t0

    if verbose:
        if result.startswith("error:"):
            fmt.tool_error(call.name, result)
        else:
            fmt.tool_result(call.name, elapsed, result[:MAX_RESULT_PREVIEW])
    return Message.tool_result(call, result)


def _send(
    provider: Provider,
    messages: list[Message],
    model: str,
    options: SendOptions,
    verbose: bool,
) -> Response:
    t0 = time.monotonic()
    if verbose:
        with fmt.llm_spinner(f"Waiting for {model}"):
            response = provider.send(messages, model, options)
        fmt.llm_timing(time.monotonic() - t0, response.finish_reason)
    else:
        response = provider.send(messages, model, options)
    return response


def run_turn(
    user_input: str,
    *,
    session: SessionState,
    transcript: Transcript,
    provider: Provider,
    registry: ToolRegistry,
    options: TurnOptions | None = None,
    cache: Cache | None = None,
) -> TurnResult:
    """Run one user turn to completion and persist it.

    Assembles the prompt, sends it, executes requested tools in order and
    re-sends until the model answers without tool calls. Only a finished
    turn is written: the user message, every tool result, then the answer.
    NetworkError, FileAccessError and ToolLoopExceeded leave the transcript
    untouched.
    """
    options = options or TurnOptions()
    model = session.model.model

    messages = assemble(session, user_input, transcript.messages)
    user_message = messages[-1]
    token_estimate = estimate_tokens(messages)
    context_window = provider.capabilities(model).context_window

    if options.verbose:
        fmt.turn_header(session.profile.name, model, session.model_type)
        if options.token_estimation:
            fmt.token_usage(token_estimate, context_window)

    send_options = SendOptions(
        tools=registry.definitions() or None,
        max_tokens=options.max_tokens,
        timeout=options.request_timeout,
    )
    response = _send(provider, messages, model, send_options, options.verbose)

    tool_messages: list[Message] = []
    rounds = 0
    while response.tool_calls:
        if rounds >= options.max_tool_rounds:
            raise ToolLoopExceeded(rounds)
        rounds += 1
        messages.append(
            Message(ASSISTANT, response.content, tool_calls=response.tool_calls)
        )
        for call in response.tool_calls:
            result = handle_tool_call(call, registry, options.verbose)
            messages.append(result)
            tool_messages.append(result)
        response = _send(provider, messages, model, send_options, options.verbose)

    answer = response.content
    transcript.extend([user_message, *tool_messages, Message(ASSISTANT, answer)])
    if cache is not None:
        session.remember(cache)

    return TurnResult(
        answer=answer,
        user_message=user_message,
        tool_messages=tool_messages,
        rounds=rounds,
        token_estimate=token_estimate,
        context_window=response.context_window,
    )


def answer_turn(
    state: ReplState, text: str, prompt_file: Path | None = None
) -> TurnResult | None:
    """Run a turn from the REPL, reporting failures instead of raising."""
    session = state.session
    saved_prompt_file = session.prompt_file
    if prompt_file is not None:
        session.prompt_file = prompt_file
    try:
        result = run_turn(
            text,
            session=session,
            transcript=state.transcript,
            provider=state.provider,
            registry=state.registry,
            options=TurnOptions.from_config(state.config, state.verbose),
            cache=state.cache,
        )
    except (NetworkError, FileAccessError, ToolLoopExceeded) as e:
        fmt.error(str(e))
        return None
    except KeyboardInterrupt:
        fmt.warning("interrupted, question aborted.")
        return None
    finally:
        session.prompt_file = saved_prompt_file

    print(result.answer)
    return result


def repl_loop(state: ReplState) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.completion import WordCompleter
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = data_dir() / "input_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(str(history_path)),
        completer=WordCompleter(command_words(), WORD=True),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", ">> ")])

    if state.verbose:
        fmt.repl_banner(str(state.session.history_file))

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        prompt_file = None
        parsed = parse_command(line)
        if parsed is not None:
            outcome = run_command(state, *parsed)
            if outcome is QUIT:
                break
            if not isinstance(outcome, PendingTurn):
                continue
            line, prompt_file = outcome.text, outcome.prompt_file

        answer_turn(state, line, prompt_file)


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="colloquy",
        description=(
            "An interactive terminal chat client with plain-text history files, "
            "switchable model profiles, and local tools."
        ),
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "history_file",
        nargs="?",
        default=None,
        help=(
            "History file to continue. Relative names live in the chats "
            "directory (default: the last one used)."
        ),
    )
    parser.add_argument(
        "-c",
        "--context",
        metavar="FILE",
        default=None,
        help="Attach FILE to every prompt; it is re-read each turn.",
    )
    parser.add_argument(
        "-p",
        "--prompt-file",
        metavar="FILE",
        default=None,
        help="Wrap every question in a prompt file (${{user_prompt}} marks the spot).",
    )
    parser.add_argument(
        "--profile",
        default=None,
        help="Profile to start with (default: the last one used).",
    )
    parser.add_argument(
        "--model-type",
        choices=MODEL_TYPES,
        default=None,
        help="Model type within the profile.",
    )
    parser.add_argument(
        "--system-prompt",
        default=None,
        help="Override the system prompt for this session.",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        default=None,
        help="Config file (default: ~/.config/colloquy/config.toml).",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress diagnostics; only print answers.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log debug messages to stderr.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        help="Disable ANSI color even when stderr is a TTY.",
    )
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("colloquy")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config())
        sys.exit(0)

    try:
        _run_main(args)
    except ColloquyError as e:
        fmt.error(str(e))
        sys.exit(1)


def _startup_provider(
    args, config: Config, cache: Cache, session: SessionState, verbose: bool
) -> Provider:
    """Build the session's provider.

    A profile restored from the cache may no longer be usable (say, its API
    key is gone); then the first configured profile that works is used
    instead. An explicit --profile is never replaced.
    """
    try:
        return make_provider(
            session.profile.provider, ollama_url=config.ollama_url, verbose=verbose
        )
    except ConfigError as e:
        if args.profile is not None:
            raise
        failure = e

    for profile in config.profiles:
        if profile.name == session.profile.name:
            continue
        try:
            provider = make_provider(
                profile.provider, ollama_url=config.ollama_url, verbose=verbose
            )
        except ConfigError as e:
            logger.debug("profile %s unusable: %s", profile.name, e)
            continue
        fmt.warning(f"{failure}; falling back to profile {profile.name!r}")
        session.switch_profile(profile, cache)
        if args.model_type is not None:
            session.switch_model(args.model_type)
        return provider
    raise failure


def _run_main(args) -> None:
    config = load_config(Path(args.config).expanduser() if args.config else None)

    verbose = not (args.quiet or config.quiet)
    color, no_color = args.color, args.no_color
    if not (color or no_color) and config.color is not None:
        color, no_color = config.color, not config.color
    fmt.init(color=color, no_color=no_color)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(name)s: %(levelname)s: %(message)s",
    )

    cache = Cache.load()
    history_path = resolve_history_path(
        args.history_file or cache.last_history_file or DEFAULT_HISTORY_FILE
    )
    transcript = Transcript.load(history_path)

    session = SessionState.from_config(
        config,
        cache,
        history_path,
        profile_name=args.profile,
        model_type=args.model_type,
    )
    session.system_prompt = args.system_prompt
    if args.context:
        context = Path(args.context).expanduser().resolve()
        if not context.is_file():
            raise FileAccessError(f"context file not found: {args.context}")
        session.context_file = context
    if args.prompt_file:
        prompt_file = resolve_prompt_path(args.prompt_file)
        if not prompt_file.is_file():
            raise FileAccessError(f"prompt file not found: {prompt_file}")
        session.prompt_file = prompt_file

    provider = _startup_provider(args, config, cache, session, verbose)
    registry = build_registry(
        config.knowledge_dir, config.tools_dir, config.tool_timeout, verbose=verbose
    )
    session.remember(cache)
    logger.debug(
        "profile=%s model=%s tools=%s",
        session.profile.name,
        session.model.model,
        ",".join(registry.names()),
    )

    text = transcript.raw_text()
    if text.strip():
        print(text)

    state = ReplState(
        config=config,
        cache=cache,
        session=session,
        transcript=transcript,
        provider=provider,
        registry=registry,
        verbose=verbose,
    )
    preload_model(state)
    repl_loop(state)


if __name__ == "__main__":
    main()
