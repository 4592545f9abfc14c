"""Tool catalog and execution for model-requested tool calls.

Built-in tools cover searching the knowledge directory and inspecting the
working tree. External tools are declared as TOML manifests in the tools
directory and run as child processes that receive their JSON arguments on
stdin. Every tool call runs synchronously, one at a time, under a wall-clock
timeout.
"""

import json
import logging
import os
import re
import subprocess
import sys
import threading
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import jsonschema

from . import fmt
from .errors import ConfigError, ToolExecutionError
from .messages import ToolCall

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 1024 * 1024  # 1 MiB
GREP_MAX_COUNT = 1000
GREP_ALLOWED_PUNCTUATION = "-_."
MAX_TOOL_NAME_CHARS = 64

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


@dataclass
class ToolContext:
    """Where and how long tools may run."""

    knowledge_dir: Path | None = None
    cwd: Path | None = None  # None means the process working directory
    timeout: float = 3


@dataclass
class Tool:
    name: str
    description: str
    parameters: dict
    run: Callable[[dict, ToolContext], str]
    source: str = "builtin"

    def definition(self) -> dict:
        """Return the tool in OpenAI function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


# --- Process execution ---


@dataclass
class ProcessResult:
    returncode: int | None
    output: str
    timed_out: bool = False
    truncated: bool = False


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def run_process(
    argv: list[str],
    *,
    cwd: Path | None,
    timeout: float,
    stdin_data: str | None = None,
    max_bytes: int = MAX_OUTPUT_BYTES,
) -> ProcessResult:
    """Run a child process to completion, capturing stdout and stderr together.

    Output beyond max_bytes is drained and dropped. On timeout the whole
    process group is killed. Raises ToolExecutionError if it cannot start.
    """
    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
        cwd=str(cwd) if cwd is not None else None,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(argv, **popen_kwargs)
    except FileNotFoundError:
        raise ToolExecutionError(f"command not found: {argv[0]!r}")
    except PermissionError:
        raise ToolExecutionError(f"permission denied executing: {argv[0]!r}")
    except OSError as e:
        raise ToolExecutionError(f"failed to start {argv[0]!r}: {e}")

    chunks: list[bytes] = []
    total = 0
    truncated = False

    def _reader():
        nonlocal total, truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if truncated:
                    continue  # keep draining to prevent pipe backpressure
                remaining = max_bytes - total
                if len(chunk) > remaining:
                    chunk = chunk[:remaining]
                    truncated = True
                chunks.append(chunk)
                total += len(chunk)
        except (OSError, ValueError):
            pass  # pipe closed after kill

    def _writer():
        try:
            proc.stdin.write(stdin_data.encode("utf-8"))
            proc.stdin.close()
        except (OSError, ValueError):
            pass  # child exited without reading its input

    threads = [threading.Thread(target=_reader, daemon=True)]
    if stdin_data is not None:
        threads.append(threading.Thread(target=_writer, daemon=True))
    for t in threads:
        t.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    for t in threads:
        t.join(timeout=2)
    proc.stdout.close()

    return ProcessResult(
        returncode=None if timed_out else proc.returncode,
        output=b"".join(chunks).decode("utf-8", errors="replace"),
        timed_out=timed_out,
        truncated=truncated,
    )


def _run_checked(argv: list[str], ctx: ToolContext) -> str:
    timeout = ctx.timeout
    result = run_process(argv, cwd=ctx.cwd, timeout=timeout)
    if result.timed_out:
        raise ToolExecutionError(f"{argv[0]} timed out after {timeout}s")
    if result.returncode != 0:
        detail = result.output.strip() or "(no output)"
        raise ToolExecutionError(f"{argv[0]} exited with code {result.returncode}: {detail}")
    if result.truncated:
        return result.output + "\n[output truncated at 1 MiB]"
    return result.output


# --- Built-in tools ---


def check_grep_pattern(pattern) -> str:
    """Return the pattern if it only uses safe characters, else raise."""
    if not isinstance(pattern, str) or not pattern.strip():
        raise ToolExecutionError("pattern must be a non-empty string")
    for ch in pattern:
        if not (ch.isalnum() or ch.isspace() or ch in GREP_ALLOWED_PUNCTUATION):
            raise ToolExecutionError(
                f"pattern contains disallowed character {ch!r}; only letters, "
                f"digits, whitespace and {GREP_ALLOWED_PUNCTUATION!r} are allowed"
            )
    return pattern


def _grep(args: dict, ctx: ToolContext) -> str:
    pattern = check_grep_pattern(args.get("pattern"))
    if ctx.knowledge_dir is None:
        raise ToolExecutionError("no knowledge_dir is configured")
    if not ctx.knowledge_dir.is_dir():
        raise ToolExecutionError(f"knowledge_dir is not a directory: {ctx.knowledge_dir}")

    result = run_process(
        [
            "grep",
            "-F",
            "-I",
            "-r",
            "-n",
            f"--max-count={GREP_MAX_COUNT}",
            "--",
            pattern,
            ".",
        ],
        cwd=ctx.knowledge_dir,
        timeout=ctx.timeout,
    )
    if result.timed_out:
        raise ToolExecutionError(f"grep timed out after {ctx.timeout}s")
    if result.truncated:
        raise ToolExecutionError(
            "grep output exceeds 1 MiB, use a more specific pattern"
        )
    if result.returncode == 1 and not result.output.strip():
        return "No matches found"
    if result.returncode != 0:
        raise ToolExecutionError(
            f"grep exited with code {result.returncode}: {result.output.strip()}"
        )
    return result.output


def _pwd(args: dict, ctx: ToolContext) -> str:
    return str(ctx.cwd or Path.cwd())


def _git_status(args: dict, ctx: ToolContext) -> str:
    return _run_checked(["git", "status"], ctx)


def _git_diff(args: dict, ctx: ToolContext) -> str:
    argv = ["git", "diff"]
    if args.get("staged"):
        argv.append("--cached")
    return _run_checked(argv, ctx) or "No changes"


_NO_PARAMETERS = {"type": "object", "properties": {}}

GREP_TOOL = Tool(
    name="grep",
    description=(
        "Search the user's knowledge directory for a fixed string (not a regex). "
        "Returns matching lines prefixed with file path and line number. "
        "The pattern may only contain letters, digits, whitespace, '-', '_' and '.'."
    ),
    parameters={
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Literal text to search for.",
            },
        },
        "required": ["pattern"],
    },
    run=_grep,
)

PWD_TOOL = Tool(
    name="pwd",
    description="Return the current working directory of the chat session.",
    parameters=_NO_PARAMETERS,
    run=_pwd,
)

GIT_STATUS_TOOL = Tool(
    name="git_status",
    description="Show `git status` for the repository in the working directory.",
    parameters=_NO_PARAMETERS,
    run=_git_status,
)

GIT_DIFF_TOOL = Tool(
    name="git_diff",
    description=(
        "Show uncommitted changes (`git diff`) in the working directory's repository."
    ),
    parameters={
        "type": "object",
        "properties": {
            "staged": {
                "type": "boolean",
                "description": "Show staged changes instead of unstaged ones.",
                "default": False,
            },
        },
    },
    run=_git_diff,
)


def builtin_tools(knowledge_dir: Path | None) -> list[Tool]:
    """grep is only offered when there is a knowledge directory to search."""
    tools = [PWD_TOOL, GIT_STATUS_TOOL, GIT_DIFF_TOOL]
    if knowledge_dir is not None:
        tools.insert(0, GREP_TOOL)
    return tools


# --- External tools ---


def validate_tool(tool: Tool) -> None:
    """Check a tool's name and parameter schema. Raises ConfigError."""
    if not tool.name or len(tool.name) > MAX_TOOL_NAME_CHARS:
        raise ConfigError(
            f"tool name must be 1-{MAX_TOOL_NAME_CHARS} characters: {tool.name!r}"
        )
    if not _NAME_RE.match(tool.name):
        raise ConfigError(
            f"tool name {tool.name!r} may only contain letters, digits, '_' and '-'"
        )
    if not tool.description or not tool.description.strip():
        raise ConfigError(f"tool {tool.name!r} has no description")
    if not isinstance(tool.parameters, dict):
        raise ConfigError(f"tool {tool.name!r}: parameters must be a table")
    if tool.parameters.get("type") != "object":
        raise ConfigError(f"tool {tool.name!r}: parameters must have type = \"object\"")
    try:
        jsonschema.validators.validator_for(tool.parameters).check_schema(
            tool.parameters
        )
    except jsonschema.SchemaError as e:
        raise ConfigError(
            f"tool {tool.name!r}: invalid parameters schema: {e.message}"
        ) from e


def _external_runner(command: list[str], timeout: float | None):
    def run(args: dict, ctx: ToolContext) -> str:
        limit = timeout or ctx.timeout
        result = run_process(
            command,
            cwd=ctx.cwd,
            timeout=limit,
            stdin_data=json.dumps(args, ensure_ascii=False),
        )
        if result.timed_out:
            raise ToolExecutionError(f"{command[0]} timed out after {limit}s")
        output = result.output
        if result.truncated:
            output += "\n[output truncated at 1 MiB]"
        if result.returncode != 0:
            raise ToolExecutionError(
                f"{command[0]} exited with code {result.returncode}: "
                f"{output.strip() or '(no output)'}"
            )
        return output or "(no output)"

    return run


def load_tool_manifest(path: Path) -> Tool:
    """Build an external Tool from a TOML manifest. Raises ConfigError."""
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{path}: cannot read file: {e}") from e

    name = raw.get("name", path.stem)
    if not isinstance(name, str):
        raise ConfigError(f"{path}: 'name' must be a string")
    description = raw.get("description")
    if not isinstance(description, str):
        raise ConfigError(f"{path}: 'description' must be a string")

    command = raw.get("command")
    if (
        not isinstance(command, list)
        or not command
        or not all(isinstance(part, str) and part for part in command)
    ):
        raise ConfigError(f"{path}: 'command' must be a non-empty list of strings")
    # Path-like executables are relative to the manifest, bare names use PATH.
    if "/" in command[0] or command[0].startswith("~"):
        exe = Path(command[0]).expanduser()
        if not exe.is_absolute():
            exe = path.parent / exe
        command = [str(exe)] + command[1:]

    timeout = raw.get("timeout")
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
    ):
        raise ConfigError(f"{path}: 'timeout' must be a positive number")

    parameters = raw.get("parameters", {"type": "object", "properties": {}})
    tool = Tool(
        name=name,
        description=description,
        parameters=parameters,
        run=_external_runner(command, timeout),
        source=str(path),
    )
    try:
        validate_tool(tool)
    except ConfigError as e:
        raise ConfigError(f"{path}: {e}") from e
    return tool


def discover_tools(
    tools_dir: Path | None, reserved: set[str], verbose: bool = False
) -> list[Tool]:
    """Load every ``*.toml`` manifest in tools_dir, skipping invalid ones."""
    if tools_dir is None or not tools_dir.is_dir():
        return []
    try:
        entries = sorted(tools_dir.glob("*.toml"))
    except OSError:
        entries = []

    found: list[Tool] = []
    seen = set(reserved)
    for entry in entries:
        try:
            tool = load_tool_manifest(entry)
        except ConfigError as e:
            logger.debug("rejected tool manifest: %s", e)
            if verbose:
                fmt.warning(f"skipping tool manifest: {e}")
            continue
        if tool.name in seen:
            logger.debug("duplicate tool name %r in %s", tool.name, entry)
            if verbose:
                fmt.warning(f"skipping {entry}: tool {tool.name!r} already exists")
            continue
        seen.add(tool.name)
        found.append(tool)

    if verbose and found:
        names = ", ".join(t.name for t in found)
        fmt.info(f"Discovered {len(found)} external tool(s): {names}")
    return found


# --- Registry ---


class ToolRegistry:
    """Name-indexed tool catalog. Tools are validated as they are registered."""

    def __init__(self, tools: list[Tool] = (), context: ToolContext | None = None):
        self.context = context or ToolContext()
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        validate_tool(tool)
        if tool.name in self._tools:
            raise ConfigError(f"duplicate tool name {tool.name!r}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def definitions(self) -> list[dict]:
        return [t.definition() for t in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def execute(self, call: ToolCall) -> str:
        """Run one tool call and return its output.

        Never raises: every failure is returned as an ``error: ...`` string so
        it can be fed back to the model.
        """
        tool = self._tools.get(call.name)
        if tool is None:
            known = ", ".join(self._tools) or "(none)"
            return f"error: unknown tool {call.name!r}. Available tools: {known}"

        try:
            args = json.loads(call.arguments) if call.arguments else {}
        except (json.JSONDecodeError, TypeError) as e:
            return f"error: invalid JSON in tool arguments: {e}"
        if not isinstance(args, dict):
            return "error: tool arguments must be a JSON object"

        try:
            jsonschema.validate(args, tool.parameters)
        except jsonschema.ValidationError as e:
            return f"error: invalid arguments for {tool.name}: {e.message}"

        try:
            return tool.run(args, self.context)
        except ToolExecutionError as e:
            return f"error: {e}"
        except Exception as e:
            logger.exception("tool %s crashed", tool.name)
            return f"error: {e}"


def build_registry(
    knowledge_dir: Path | None,
    tools_dir: Path | None,
    timeout: float,
    verbose: bool = False,
) -> ToolRegistry:
    """Assemble built-in and discovered external tools."""
    context = ToolContext(knowledge_dir=knowledge_dir, timeout=timeout)
    builtins = builtin_tools(knowledge_dir)
    reserved = {t.name for t in builtins} | {GREP_TOOL.name}
    external = discover_tools(tools_dir, reserved, verbose=verbose)
    return ToolRegistry(builtins + external, context)
