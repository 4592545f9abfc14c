"""LLM backends behind one request/response shape.

Each provider turns the provider-agnostic message list into the wire shape
its backend expects and sends it through LiteLLM. The set of providers is
closed: profiles name one of PROVIDERS and make_provider picks the class.
"""

import json
import logging
import os
import re
import subprocess
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field

from . import fmt
from .errors import ConfigError, NetworkError
from .messages import ASSISTANT, SYSTEM, TOOL, USER, Message, ToolCall

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"
ANTHROPIC_API_KEY_ENV = "ANTHROPIC_API_KEY"
MAX_EMPTY_RETRIES = 3
EMPTY_RETRY_DELAY = 1.0  # seconds
OLLAMA_SHOW_TIMEOUT = 10
OLLAMA_PRELOAD_TIMEOUT = 120

_CONTEXT_LENGTH_RE = re.compile(r"^\s*context length\s+(\d+)\s*$", re.MULTILINE)


@dataclass
class Capabilities:
    supports_tools: bool = True
    context_window: int | None = None  # None when the backend does not say


@dataclass
class SendOptions:
    tools: list[dict] | None = None
    max_tokens: int = 1024
    timeout: float = 300


@dataclass
class Response:
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    supports_tools: bool | None = None
    context_window: int | None = None


def _wire_tool_call(call: ToolCall) -> dict:
    return {
        "id": call.id,
        "type": "function",
        "function": {"name": call.name, "arguments": call.arguments or "{}"},
    }


def wire_message(message: Message) -> dict:
    """Convert a message to OpenAI chat format, as LiteLLM expects."""
    if message.tool_calls:
        return {
            "role": ASSISTANT,
            "content": message.content or None,
            "tool_calls": [_wire_tool_call(c) for c in message.tool_calls],
        }
    if message.role == TOOL and message.tool_call_id:
        return {
            "role": TOOL,
            "tool_call_id": message.tool_call_id,
            "content": message.content,
        }
    return {"role": message.role, "content": message.content}


def render_tool_record(message: Message) -> str:
    """Describe a persisted tool result in plain text."""
    args = message.tool_arguments or "{}"
    return f"[tool {message.tool_name} called with {args}]\n{message.content}"


def parse_completion(response, provider: str) -> Response:
    """Normalize a LiteLLM ModelResponse. Raises NetworkError if malformed."""
    try:
        choice = response.choices[0]
        message = choice.message
    except (AttributeError, IndexError, TypeError) as e:
        raise NetworkError(f"malformed reply from {provider}: {e}") from e

    calls: list[ToolCall] = []
    for i, tc in enumerate(getattr(message, "tool_calls", None) or []):
        arguments = tc.function.arguments
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments or {})
        calls.append(ToolCall(id=tc.id or f"call_{i}", name=tc.function.name, arguments=arguments))

    return Response(
        content=message.content or "",
        tool_calls=calls,
        finish_reason=getattr(choice, "finish_reason", None),
    )


class Provider:
    """Base class. Subclasses define the wire shape and request parameters."""

    name = ""

    def __init__(self, *, verbose: bool = False):
        self.verbose = verbose

    def capabilities(self, model: str) -> Capabilities:
        return Capabilities()

    def serialize(self, messages: list[Message]) -> list[dict]:
        raise NotImplementedError

    def completion_kwargs(
        self, messages: list[Message], model: str, options: SendOptions
    ) -> dict:
        raise NotImplementedError

    def _complete(self, kwargs: dict) -> Response:
        import litellm

        litellm.suppress_debug_info = True
        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            raise NetworkError(f"{self.name} request failed: {e}") from e
        return parse_completion(response, self.name)

    def _send(self, kwargs: dict, model: str) -> Response:
        return self._complete(kwargs)

    def preload(self, model: str) -> None:
        """Warm the model up before the first turn. No-op for hosted backends."""

    def send(
        self, messages: list[Message], model: str, options: SendOptions
    ) -> Response:
        """Send one request and return the normalized response.

        Raises NetworkError on transport failures and malformed replies.
        """
        caps = self.capabilities(model)
        if not caps.supports_tools:
            options = SendOptions(
                tools=None, max_tokens=options.max_tokens, timeout=options.timeout
            )
        response = self._send(self.completion_kwargs(messages, model, options), model)
        response.supports_tools = caps.supports_tools
        response.context_window = caps.context_window
        return response


# --- Ollama ---


def parse_ollama_show(text: str) -> Capabilities:
    """Extract context length and tool support from `ollama show` output."""
    match = _CONTEXT_LENGTH_RE.search(text)
    context_window = int(match.group(1)) if match else None

    capabilities: list[str] | None = None
    header_indent = 0
    for line in text.splitlines():
        stripped = line.strip()
        indent = len(line) - len(line.lstrip())
        if capabilities is None:
            if stripped == "Capabilities":
                capabilities = []
                header_indent = indent
            continue
        if not stripped or indent <= header_indent:
            break
        capabilities.append(stripped)

    # Older Ollama versions do not list capabilities at all.
    supports_tools = True if capabilities is None else "tools" in capabilities
    return Capabilities(supports_tools=supports_tools, context_window=context_window)


class OllamaProvider(Provider):
    name = "ollama"

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_OLLAMA_URL,
        retry_delay: float = EMPTY_RETRY_DELAY,
        verbose: bool = False,
    ):
        super().__init__(verbose=verbose)
        self.base_url = base_url.rstrip("/")
        self.retry_delay = retry_delay
        self._capabilities: dict[str, Capabilities] = {}

    def _show_model(self, model: str) -> str | None:
        try:
            result = subprocess.run(
                ["ollama", "show", model],
                capture_output=True,
                text=True,
                timeout=OLLAMA_SHOW_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("ollama show %s failed: %s", model, e)
            return None
        if result.returncode != 0:
            logger.debug("ollama show %s: %s", model, result.stderr.strip())
            return None
        return result.stdout

    def capabilities(self, model: str) -> Capabilities:
        """Query the model once; unknown models keep tools enabled."""
        if model not in self._capabilities:
            text = self._show_model(model)
            if text is None:
                if self.verbose:
                    fmt.warning(f"could not query model info for {model}")
                self._capabilities[model] = Capabilities()
            else:
                self._capabilities[model] = parse_ollama_show(text)
        return self._capabilities[model]

    def preload(self, model: str) -> None:
        """Ask the server to load a model, so the first turn does not wait for it.

        A chat request without messages loads the model and returns at once.
        Raises NetworkError when the server is unreachable.
        """
        url = f"{self.base_url}/api/chat"
        payload = json.dumps({"model": model}).encode()
        logger.debug("preloading %s via %s", model, url)
        try:
            req = urllib.request.Request(
                url,
                data=payload,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            with urllib.request.urlopen(req, timeout=OLLAMA_PRELOAD_TIMEOUT) as resp:
                resp.read()
        except urllib.error.URLError as e:
            raise NetworkError(f"could not load {model} on {self.base_url}: {e}") from e

    def serialize(self, messages: list[Message]) -> list[dict]:
        wire = []
        for m in messages:
            if m.role == TOOL and not m.tool_call_id:
                wire.append({"role": TOOL, "content": m.content, "name": m.tool_name})
            else:
                wire.append(wire_message(m))
        return wire

    def completion_kwargs(
        self, messages: list[Message], model: str, options: SendOptions
    ) -> dict:
        kwargs = dict(
            model=f"ollama_chat/{model}",
            messages=self.serialize(messages),
            api_base=self.base_url,
            stream=False,
            timeout=options.timeout,
        )
        if options.tools:
            kwargs["tools"] = options.tools
        return kwargs

    def _send(self, kwargs: dict, model: str) -> Response:
        """Resend while the model replies with nothing, up to a fixed cap.

        Ollama answers with an empty message while a model is still loading.
        Whitespace-only content counts as a reply.
        """
        for attempt in range(MAX_EMPTY_RETRIES + 1):
            response = self._complete(kwargs)
            if response.content != "" or response.tool_calls:
                return response
            if attempt < MAX_EMPTY_RETRIES:
                logger.info("empty response from %s, retrying", model)
                if self.verbose:
                    fmt.empty_retry(attempt + 1, MAX_EMPTY_RETRIES)
                time.sleep(self.retry_delay)
        raise NetworkError(
            f"{model} returned an empty response {MAX_EMPTY_RETRIES + 1} times"
        )


# --- Anthropic ---


def _mergeable(previous: dict, current: dict) -> bool:
    return (
        previous["role"] == current["role"]
        and previous["role"] in (USER, ASSISTANT)
        and "tool_calls" not in previous
        and "tool_calls" not in current
        and isinstance(previous.get("content"), str)
        and isinstance(current.get("content"), str)
    )


class AnthropicProvider(Provider):
    name = "anthropic"

    def __init__(self, *, api_key: str | None = None, verbose: bool = False):
        super().__init__(verbose=verbose)
        self.api_key = api_key or os.environ.get(ANTHROPIC_API_KEY_ENV)
        if not self.api_key:
            raise ConfigError(
                f"{ANTHROPIC_API_KEY_ENV} is not set; the anthropic provider is unavailable"
            )

    def serialize(self, messages: list[Message]) -> list[dict]:
        """Lift system text into one leading entry and merge same-role runs.

        LiteLLM sends the leading system entry as the top-level ``system``
        field. Persisted tool results have no call id the API could match,
        so they are rendered as user text.
        """
        system_parts = [m.content for m in messages if m.role == SYSTEM and m.content]
        wire: list[dict] = []
        for m in messages:
            if m.role == SYSTEM:
                continue
            if m.role == TOOL and not m.tool_call_id:
                entry = {"role": USER, "content": render_tool_record(m)}
            else:
                entry = wire_message(m)
            if wire and _mergeable(wire[-1], entry):
                wire[-1]["content"] += "\n\n" + entry["content"]
            else:
                wire.append(entry)
        if system_parts:
            wire.insert(0, {"role": SYSTEM, "content": "\n\n".join(system_parts)})
        return wire

    def completion_kwargs(
        self, messages: list[Message], model: str, options: SendOptions
    ) -> dict:
        kwargs = dict(
            model=f"anthropic/{model}",
            messages=self.serialize(messages),
            api_key=self.api_key,
            max_tokens=options.max_tokens,
            timeout=options.timeout,
        )
        if options.tools:
            kwargs["tools"] = options.tools
            kwargs["tool_choice"] = "auto"
        return kwargs


def make_provider(
    name: str,
    *,
    ollama_url: str = DEFAULT_OLLAMA_URL,
    verbose: bool = False,
) -> Provider:
    """Instantiate the provider a profile names. Raises ConfigError."""
    if name == "ollama":
        return OllamaProvider(base_url=ollama_url, verbose=verbose)
    elif name == "anthropic":
        return AnthropicProvider(verbose=verbose)
    raise ConfigError(f"unknown provider {name!r}")
