"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

USAGE_BAR_WIDTH = 50


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Turn structure ----------------------------------------------------------


def turn_header(profile: str, model: str, model_type: str) -> None:
    title = f"{profile} \u00b7 {model} ({model_type})"
    _console.print(Rule(escape(title), style="cyan"))


def usage_bar(tokens: int, context_window: int | None) -> str:
    if not context_window:
        return f"~{tokens} tokens (context window unknown)"
    percentage = min(tokens * 100.0 / context_window, 100.0)
    filled = int(percentage / 100.0 * USAGE_BAR_WIDTH)
    return (
        f"[{'=' * filled}{' ' * (USAGE_BAR_WIDTH - filled)}] "
        f"{percentage:.1f}% ({tokens} / {context_window} tokens)"
    )


def token_usage(tokens: int, context_window: int | None) -> None:
    line = Text()
    line.append("  Estimated prompt usage: ", style="dim")
    line.append(usage_bar(tokens, context_window), style="dim cyan")
    _console.print(line)


def llm_timing(elapsed: float, finish_reason: str | None) -> None:
    style = "green" if finish_reason in (None, "stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    if finish_reason:
        text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Waiting for LLM"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def empty_retry(attempt: int, max_attempts: int) -> None:
    _console.print(
        Text(
            f"  \u21bb empty response, retrying ({attempt}/{max_attempts})",
            style="yellow",
        )
    )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Listings ----------------------------------------------------------------


def listing(title: str, rows: list[tuple[str, str]], active: str | None = None) -> None:
    """Print a titled two-column list, marking the active entry."""
    _console.print(Text(f"  {title}", style="bold"))
    if not rows:
        _console.print(Text("    (none)", style="dim"))
        return
    width = max(len(key) for key, _ in rows)
    for key, detail in rows:
        line = Text()
        if key == active:
            line.append(f"  * {key.ljust(width)}", style="bold green")
        else:
            line.append(f"    {key.ljust(width)}")
        if detail:
            line.append(f"  {detail}", style="dim")
        _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(history_file: str) -> None:
    _console.print(Text(f"History file: {history_file}", style="dim"))
    _console.print(
        Text("Type :help for commands, :q or Ctrl-D to quit.", style="dim")
    )
