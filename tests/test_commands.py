"""Tests for REPL commands."""

from unittest.mock import patch

import pytest

from colloquy import fmt
from colloquy.commands import (
    QUIT,
    PendingTurn,
    ReplState,
    command_words,
    parse_command,
    run_command,
)
from colloquy.config import Cache, Config, Model, Profile
from colloquy.errors import NetworkError
from colloquy.messages import ASSISTANT, USER, Message
from colloquy.providers import AnthropicProvider, OllamaProvider
from colloquy.session import SessionState
from colloquy.tools import ToolRegistry, builtin_tools
from colloquy.transcript import Transcript


@pytest.fixture(autouse=True)
def _init_fmt(tmp_path, monkeypatch):
    fmt.init(no_color=True)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))


@pytest.fixture(autouse=True)
def preloads(monkeypatch):
    """Record model preloads instead of contacting a server."""
    loaded = []
    monkeypatch.setattr(OllamaProvider, "preload", lambda self, model: loaded.append(model))
    return loaded


@pytest.fixture
def state(tmp_path):
    config = Config(
        system_prompt="default prompt",
        profiles=[
            Profile("local", "ollama", [Model("small", "fast"), Model("big", "deep")]),
            Profile("claude", "anthropic", [Model("claude-sonnet", "balanced")]),
        ],
    )
    cache = Cache(tmp_path / "cache.json")
    history = tmp_path / "data" / "colloquy" / "chats" / "chat.txt"
    session = SessionState.from_config(config, cache, history)
    return ReplState(
        config=config,
        cache=cache,
        session=session,
        transcript=Transcript.load(history),
        provider=OllamaProvider(),
        registry=ToolRegistry(builtin_tools(None)),
        verbose=False,
    )


def _run(state, line):
    parsed = parse_command(line)
    assert parsed is not None, line
    return run_command(state, *parsed)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseCommand:
    def test_known_command_with_argument(self):
        command, arg = parse_command(":model deep")
        assert command.name == "model"
        assert arg == "deep"

    @pytest.mark.parametrize("line", [":q", ":quit", ":exit", ":Q"])
    def test_quit_aliases(self, line):
        command, _ = parse_command(line)
        assert command.name == "quit"

    @pytest.mark.parametrize("line", ["hello", ":-)", ": ", ":unknown thing", "q"])
    def test_not_a_command(self, line):
        assert parse_command(line) is None

    def test_argument_keeps_inner_spacing(self):
        _, arg = parse_command(":sysprompt  Be  terse.")
        assert arg == "Be  terse."

    def test_completion_words(self):
        words = command_words()
        assert ":help" in words
        assert ":q" in words
        assert all(w.startswith(":") for w in words)


# ---------------------------------------------------------------------------
# Session commands
# ---------------------------------------------------------------------------


class TestSessionCommands:
    def test_quit(self, state):
        assert _run(state, ":q") is QUIT

    def test_sysprompt_set_and_reset(self, state):
        _run(state, ":sysprompt Answer in French.")
        assert state.session.effective_system_prompt() == "Answer in French."
        _run(state, ":sysprompt")
        assert state.session.effective_system_prompt() == "default prompt"

    def test_context_set_and_clear(self, state, tmp_path):
        notes = tmp_path / "notes.txt"
        notes.write_text("bar")
        _run(state, f":context {notes}")
        assert state.session.context_file == notes.resolve()
        _run(state, ":context")
        assert state.session.context_file is None

    def test_context_missing_file_ignored(self, state, tmp_path, capsys):
        _run(state, f":context {tmp_path / 'nope.txt'}")
        assert state.session.context_file is None
        assert "not a file" in capsys.readouterr().err

    def test_prompt_file_clear(self, state, tmp_path):
        state.session.prompt_file = tmp_path / "review.md"
        assert _run(state, ":prompt") is None
        assert state.session.prompt_file is None

    def test_prompt_file_opens_editor(self, state, tmp_path):
        state.config.editor = "my-editor --wait"
        template = tmp_path / "review.md"
        template.write_text("Review: ${{user_prompt}}")
        with patch("subprocess.run") as mock_run:
            assert _run(state, f":prompt {template}") is None
        mock_run.assert_called_once_with(["my-editor", "--wait", str(template)], check=False)
        assert state.session.prompt_file is None

    def test_prompt_file_created_in_prompts_dir(self, state, tmp_path):
        state.config.editor = "true"
        _run(state, ":prompt tldr.md")
        assert (tmp_path / "data" / "colloquy" / "prompts" / "tldr.md").is_file()

    def test_prompt_file_missing_editor(self, state, tmp_path, capsys):
        state.config.editor = "definitely-not-an-editor-xyz"
        _run(state, f":prompt {tmp_path / 'review.md'}")
        assert "cannot edit prompt file" in capsys.readouterr().err

    def test_prompt_file_one_shot(self, state, tmp_path):
        template = tmp_path / "review.md"
        template.write_text("Review: ${{user_prompt}}")
        outcome = _run(state, f":prompt {template} is this ok?")
        assert outcome == PendingTurn("is this ok?", template)
        assert state.session.prompt_file is None

    def test_prompt_file_one_shot_from_prompts_dir(self, state, tmp_path):
        prompts = tmp_path / "data" / "colloquy" / "prompts"
        prompts.mkdir(parents=True)
        (prompts / "tldr.md").write_text("Summarize:")
        outcome = _run(state, ":prompt tldr.md this thread")
        assert outcome == PendingTurn("this thread", prompts / "tldr.md")

    def test_prompt_file_one_shot_missing(self, state, tmp_path, capsys):
        assert _run(state, f":prompt {tmp_path / 'nope.md'} hi") is None
        assert "prompt file not found" in capsys.readouterr().err

    def test_model_switch(self, state, preloads):
        _run(state, ":model deep")
        assert state.session.model.model == "big"
        assert Cache.load(state.cache.path).profile_models["local"] == "deep"
        assert preloads == ["big"]

    def test_preload_failure_warns(self, state, monkeypatch, capsys):
        def refuse(self, model):
            raise NetworkError(f"could not load {model} on {self.base_url}: refused")

        monkeypatch.setattr(OllamaProvider, "preload", refuse)
        _run(state, ":model deep")
        assert state.session.model.model == "big"
        assert "could not load big" in capsys.readouterr().err

    def test_model_switch_rejects_unknown_type(self, state, capsys):
        _run(state, ":model balanced")
        assert state.session.model_type == "fast"
        assert "no 'balanced' model" in capsys.readouterr().err

    def test_profile_switch_without_key_keeps_session(self, state, monkeypatch, capsys):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        provider = state.provider
        _run(state, ":profile claude")
        assert state.session.profile.name == "local"
        assert state.provider is provider
        assert "ANTHROPIC_API_KEY" in capsys.readouterr().err

    def test_profile_switch(self, state, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "k")
        _run(state, ":profile claude")
        assert state.session.profile.name == "claude"
        assert state.session.model.model == "claude-sonnet"
        assert isinstance(state.provider, AnthropicProvider)
        assert Cache.load(state.cache.path).last_profile == "claude"

    def test_unknown_profile(self, state, capsys):
        _run(state, ":profile nope")
        assert state.session.profile.name == "local"
        assert "unknown profile" in capsys.readouterr().err

    @pytest.mark.parametrize("line", [":help", ":model", ":profile", ":tools", ":list"])
    def test_listings_print(self, state, line, capsys):
        assert _run(state, line) is None
        assert capsys.readouterr().err.strip()


# ---------------------------------------------------------------------------
# History commands
# ---------------------------------------------------------------------------


class TestHistoryCommands:
    def test_clear(self, state):
        state.transcript.extend([Message(USER, "a"), Message(ASSISTANT, "b")])
        _run(state, ":clear")
        assert len(state.transcript) == 0
        assert state.transcript.path.read_text() == ""

    def test_switch_creates_and_remembers(self, state, tmp_path):
        _run(state, ":switch other.txt")
        chats = tmp_path / "data" / "colloquy" / "chats"
        assert state.transcript.path == chats / "other.txt"
        assert (chats / "other.txt").exists()
        assert state.session.history_file == chats / "other.txt"
        assert Cache.load(state.cache.path).last_history_file == str(chats / "other.txt")

    def test_switch_requires_name(self, state, capsys):
        before = state.transcript
        _run(state, ":switch")
        assert state.transcript is before
        assert "requires a file name" in capsys.readouterr().err

    def test_list_marks_active(self, state, tmp_path, capsys):
        chats = tmp_path / "data" / "colloquy" / "chats"
        (chats / "work.txt").write_text("")
        _run(state, ":list")
        err = capsys.readouterr().err
        assert "* chat.txt" in err
        assert "work.txt" in err

    def test_list_filters(self, state, tmp_path, capsys):
        chats = tmp_path / "data" / "colloquy" / "chats"
        (chats / "work.txt").write_text("")
        _run(state, ":list wor")
        err = capsys.readouterr().err
        assert "work.txt" in err
        assert "chat.txt" not in err

    def test_edit_reloads(self, state, monkeypatch):
        state.config.editor = "true"
        state.transcript.path.write_text("edited by hand")
        _run(state, ":edit")
        assert [m.content for m in state.transcript.messages] == ["edited by hand"]

    def test_edit_missing_editor(self, state, capsys):
        state.config.editor = "definitely-not-an-editor-xyz"
        _run(state, ":edit")
        assert "cannot launch editor" in capsys.readouterr().err
