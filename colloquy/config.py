"""Configuration, profile, and cache loading for colloquy.

Reads TOML config from ~/.config/colloquy/config.toml (respecting
XDG_CONFIG_HOME). Remembered state (last history file, last profile, the
model type picked for each profile) lives in a small JSON cache under
~/.cache/colloquy/. Precedence: CLI > config file > defaults.
"""

import json
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigError

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"

PROVIDERS = ("ollama", "anthropic")
MODEL_TYPES = ("fast", "balanced", "deep")
DEFAULT_MODEL_TYPE = "balanced"
MAX_MODELS_PER_PROFILE = 3


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "system_prompt": str,
    "knowledge_dir": str,
    "token_estimation": bool,
    "max_tokens": int,
    "ollama_url": str,
    "request_timeout": (int, float),
    "max_tool_rounds": int,
    "tool_timeout": (int, float),
    "tools_dir": str,
    "editor": str,
    "color": bool,
    "quiet": bool,
}

_POSITIVE_KEYS = ("max_tokens", "request_timeout", "max_tool_rounds", "tool_timeout")


# --- Directories ---


def _xdg_dir(env_var: str, fallback: str) -> Path:
    xdg = os.environ.get(env_var)
    if xdg:
        return Path(xdg) / "colloquy"
    return Path.home() / fallback / "colloquy"


def global_config_dir() -> Path:
    """Return the config directory, respecting XDG_CONFIG_HOME."""
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def cache_dir() -> Path:
    return _xdg_dir("XDG_CACHE_HOME", ".cache")


def data_dir() -> Path:
    return _xdg_dir("XDG_DATA_HOME", ".local/share")


def chats_dir() -> Path:
    return data_dir() / "chats"


def prompts_dir() -> Path:
    return data_dir() / "prompts"


# --- Profiles ---


@dataclass
class Model:
    model: str
    model_type: str = DEFAULT_MODEL_TYPE
    description: str | None = None


@dataclass
class Profile:
    name: str
    provider: str
    models: list[Model]
    system_prompt: str | None = None

    def get_model(self, model_type: str) -> Model | None:
        for m in self.models:
            if m.model_type == model_type:
                return m
        return None

    def model_types(self) -> list[str]:
        return [m.model_type for m in self.models]


def default_profiles() -> list[Profile]:
    return [Profile("local", "ollama", [Model("qwen3:4b", "fast")])]


def _parse_model(raw, prefix: str) -> Model:
    if not isinstance(raw, dict):
        raise ConfigError(f"{prefix}: expected a table")
    model = raw.get("model")
    if not isinstance(model, str) or not model:
        raise ConfigError(f"{prefix}: 'model' must be a non-empty string")
    model_type = raw.get("model_type", DEFAULT_MODEL_TYPE)
    if model_type not in MODEL_TYPES:
        raise ConfigError(
            f"{prefix}: 'model_type' must be one of {', '.join(MODEL_TYPES)}, "
            f"got {model_type!r}"
        )
    description = raw.get("description")
    if description is not None and not isinstance(description, str):
        raise ConfigError(f"{prefix}: 'description' must be a string")
    return Model(model, model_type, description)


def parse_profiles(raw, source: str) -> list[Profile]:
    """Validate the ``[[profiles]]`` array and build Profile objects.

    Raises ConfigError for structural problems, unknown providers, duplicate
    profile names, and duplicate model types within one profile.
    """
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"{source}: No profiles defined")

    profiles: list[Profile] = []
    seen: set[str] = set()
    for i, entry in enumerate(raw):
        prefix = f"{source}: profiles[{i}]"
        if not isinstance(entry, dict):
            raise ConfigError(f"{prefix}: expected a table")
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            raise ConfigError(f"{prefix}: 'name' must be a non-empty string")
        if name in seen:
            raise ConfigError(f"{source}: Profile name {name} is not unique")
        seen.add(name)

        provider = entry.get("provider")
        if provider not in PROVIDERS:
            raise ConfigError(
                f"{source}: Profile {name} has unknown provider {provider!r} "
                f"(expected one of {', '.join(PROVIDERS)})"
            )

        system_prompt = entry.get("system_prompt")
        if system_prompt is not None and not isinstance(system_prompt, str):
            raise ConfigError(f"{prefix}: 'system_prompt' must be a string")

        raw_models = entry.get("models")
        if not isinstance(raw_models, list) or not raw_models:
            raise ConfigError(f"{source}: Profile {name} has no models")
        if len(raw_models) > MAX_MODELS_PER_PROFILE:
            raise ConfigError(
                f"{source}: Profile {name} has more than "
                f"{MAX_MODELS_PER_PROFILE} models"
            )

        models = [
            _parse_model(m, f"{prefix}.models[{j}]") for j, m in enumerate(raw_models)
        ]
        types: set[str] = set()
        for m in models:
            if m.model_type in types:
                raise ConfigError(
                    f"{source}: Profile {name} has a duplicate model type: "
                    f"{m.model_type}"
                )
            types.add(m.model_type)

        profiles.append(Profile(name, provider, models, system_prompt))
    return profiles


# --- Config ---


def _default_system_prompt() -> str:
    try:
        return DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()
    except OSError:
        return "You are a helpful assistant."


@dataclass
class Config:
    system_prompt: str = field(default_factory=_default_system_prompt)
    knowledge_dir: Path | None = None
    token_estimation: bool = True
    max_tokens: int = 1024
    ollama_url: str = "http://localhost:11434"
    request_timeout: float = 300
    max_tool_rounds: int = 5
    tool_timeout: float = 3
    tools_dir: Path = field(default_factory=lambda: global_config_dir() / "tools")
    editor: str | None = None
    color: bool | None = None
    quiet: bool = False
    profiles: list[Profile] = field(default_factory=default_profiles)
    config_dir: Path = field(default_factory=global_config_dir)

    def get_profile(self, name: str) -> Profile | None:
        for p in self.profiles:
            if p.name == name:
                return p
        return None


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types of the flat keys in a parsed config dict.

    Raises ConfigError for type mismatches and non-positive limits.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int, reject it explicitly for numeric keys.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, "
                f"got {type(value).__name__}"
            )

    for key in _POSITIVE_KEYS:
        if key in config and config[key] <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive")


def _resolve_path(value: str, config_dir: Path) -> Path:
    expanded = Path(value).expanduser()
    if expanded.is_absolute():
        return expanded
    return config_dir / expanded


def load_config(path: Path | None = None) -> Config:
    """Load and validate the config file. A missing file yields defaults."""
    config_dir = global_config_dir()
    path = Path(path) if path is not None else config_dir / "config.toml"
    source = str(path)

    if not path.is_file():
        return Config(config_dir=config_dir)
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{source}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{source}: cannot read file: {e}") from e

    # Nested tables are validated separately from the flat keys.
    raw_profiles = raw.pop("profiles", None)
    _validate_config(raw, source)
    known = {k: v for k, v in raw.items() if k in CONFIG_KEYS}

    base = path.parent
    if "knowledge_dir" in known:
        known["knowledge_dir"] = _resolve_path(known["knowledge_dir"], base)
    if "tools_dir" in known:
        known["tools_dir"] = _resolve_path(known["tools_dir"], base)
    if raw_profiles is not None:
        known["profiles"] = parse_profiles(raw_profiles, source)

    return Config(config_dir=config_dir, **known)


def generate_config() -> str:
    """Return a commented template config string."""
    lines = [
        "# colloquy configuration file",
        "# ~/.config/colloquy/config.toml",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Prompting ---",
        '# system_prompt = "You are a helpful assistant."',
        "# token_estimation = true    # show a context usage bar before each turn",
        "# max_tokens = 1024          # reply budget, required by anthropic",
        "",
        "# --- Backends ---",
        '# ollama_url = "http://localhost:11434"',
        "# request_timeout = 300",
        "",
        "# --- Tools ---",
        '# knowledge_dir = "~/notes"  # directory searched by the grep tool',
        '# tools_dir = "tools"        # *.toml external tool manifests',
        "# tool_timeout = 3",
        "# max_tool_rounds = 5",
        "",
        "# --- UI ---",
        '# editor = "vim"             # defaults to $VISUAL / $EDITOR',
        "# color = true",
        "# quiet = false",
        "",
        "# --- Profiles ---",
        "# Each profile has one to three models, one per model_type",
        "# (fast, balanced, deep). model_type defaults to balanced.",
        "",
        "[[profiles]]",
        'name = "local"',
        'provider = "ollama"',
        "",
        "[[profiles.models]]",
        'model = "qwen3:4b"',
        'model_type = "fast"',
        "",
        "# [[profiles]]",
        '# name = "claude"',
        '# provider = "anthropic"        # reads ANTHROPIC_API_KEY',
        "#",
        "# [[profiles.models]]",
        '# model = "claude-sonnet-4-5"',
        '# description = "Default Sonnet"',
        "",
    ]
    return "\n".join(lines)


# --- Cache ---


@dataclass
class Cache:
    """Remembered state between runs, stored as JSON."""

    path: Path | None = None
    last_history_file: str | None = None
    last_profile: str | None = None
    profile_models: dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path | None = None) -> "Cache":
        """Load the cache. A missing or corrupt file yields an empty cache."""
        path = Path(path) if path is not None else cache_dir() / "cache.json"
        if not path.is_file():
            return cls(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            print(f"warning: {path}: ignoring unreadable cache: {e}", file=sys.stderr)
            return cls(path)
        if not isinstance(data, dict):
            return cls(path)

        profile_models = data.get("profile_models")
        if not isinstance(profile_models, dict):
            profile_models = {}
        return cls(
            path,
            last_history_file=_str_or_none(data.get("last_history_file")),
            last_profile=_str_or_none(data.get("last_profile")),
            profile_models={
                k: v for k, v in profile_models.items() if isinstance(v, str)
            },
        )

    def save(self) -> None:
        if self.path is None:
            return
        data = {
            "last_history_file": self.last_history_file,
            "last_profile": self.last_profile,
            "profile_models": self.profile_models,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            print(f"warning: {self.path}: cannot write cache: {e}", file=sys.stderr)


def _str_or_none(value) -> str | None:
    return value if isinstance(value, str) and value else None
