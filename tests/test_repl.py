"""Tests for the REPL loop and the command-line entry point."""

import sys
from unittest.mock import MagicMock, patch

import pytest

from colloquy import fmt
from colloquy.agent import build_parser, main, repl_loop
from colloquy.commands import ReplState
from colloquy.config import Cache, Config, Model, Profile
from colloquy.messages import ASSISTANT, USER, Message
from colloquy.providers import OllamaProvider
from colloquy.session import SessionState
from colloquy.tools import ToolRegistry
from colloquy.transcript import Transcript


@pytest.fixture(autouse=True)
def _isolate(tmp_path, monkeypatch):
    fmt.init(no_color=True)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setattr(OllamaProvider, "preload", lambda self, model: None)


def _state(tmp_path):
    config = Config(
        system_prompt="sys",
        profiles=[Profile("local", "ollama", [Model("m", "fast")])],
    )
    cache = Cache(tmp_path / "cache.json")
    history = tmp_path / "chat.txt"
    return ReplState(
        config=config,
        cache=cache,
        session=SessionState.from_config(config, cache, history),
        transcript=Transcript.load(history),
        provider=OllamaProvider(),
        registry=ToolRegistry(),
        verbose=False,
    )


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestArgumentParsing:
    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.history_file is None
        assert args.context is None
        assert args.prompt_file is None
        assert args.profile is None
        assert args.model_type is None
        assert args.quiet is False

    def test_all_flags(self):
        args = build_parser().parse_args(
            [
                "work.txt",
                "-c",
                "notes.md",
                "-p",
                "review.md",
                "--profile",
                "claude",
                "--model-type",
                "deep",
                "--system-prompt",
                "Be brief.",
                "-q",
                "--no-color",
            ]
        )
        assert args.history_file == "work.txt"
        assert args.context == "notes.md"
        assert args.prompt_file == "review.md"
        assert args.profile == "claude"
        assert args.model_type == "deep"
        assert args.system_prompt == "Be brief."
        assert args.quiet is True
        assert args.no_color is True

    def test_bad_model_type(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--model-type", "huge"])

    def test_color_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--color", "--no-color"])


# ---------------------------------------------------------------------------
# repl_loop
# ---------------------------------------------------------------------------


class TestReplLoop:
    def _patch_session(self, inputs):
        """Return a patch context that replaces PromptSession with a mock."""
        mock_session = MagicMock()
        mock_session.prompt.side_effect = [
            v() if v in (EOFError, KeyboardInterrupt) else v for v in inputs
        ]
        return patch("prompt_toolkit.PromptSession", return_value=mock_session)

    def test_quit_command(self, tmp_path):
        with (
            self._patch_session([":q"]),
            patch("colloquy.agent.answer_turn") as mock_answer,
        ):
            repl_loop(_state(tmp_path))
        mock_answer.assert_not_called()

    @pytest.mark.parametrize("signal", [EOFError, KeyboardInterrupt])
    def test_eof_and_ctrl_c_exit(self, tmp_path, signal):
        with self._patch_session([signal]):
            repl_loop(_state(tmp_path))

    def test_empty_lines_ignored(self, tmp_path):
        inputs = ["", "   ", "hello", ":quit"]
        with (
            self._patch_session(inputs),
            patch("colloquy.agent.answer_turn") as mock_answer,
        ):
            repl_loop(_state(tmp_path))
        assert mock_answer.call_count == 1
        assert mock_answer.call_args[0][1:] == ("hello", None)

    def test_unknown_command_sent_as_question(self, tmp_path):
        with (
            self._patch_session([":-) hi", EOFError]),
            patch("colloquy.agent.answer_turn") as mock_answer,
        ):
            repl_loop(_state(tmp_path))
        assert mock_answer.call_args[0][1] == ":-) hi"

    def test_prompt_command_asks_question(self, tmp_path):
        template = tmp_path / "t.md"
        template.write_text("${{user_prompt}}")
        with (
            self._patch_session([f":prompt {template} why?", EOFError]),
            patch("colloquy.agent.answer_turn") as mock_answer,
        ):
            repl_loop(_state(tmp_path))
        assert mock_answer.call_args[0][1:] == ("why?", template)

    def test_commands_do_not_ask(self, tmp_path):
        state = _state(tmp_path)
        with (
            self._patch_session([":sysprompt be brief", ":help", EOFError]),
            patch("colloquy.agent.answer_turn") as mock_answer,
        ):
            repl_loop(state)
        mock_answer.assert_not_called()
        assert state.session.system_prompt == "be brief"


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------


class TestMain:
    def _main(self, monkeypatch, *argv):
        monkeypatch.setattr(sys, "argv", ["colloquy", *argv])
        with pytest.raises(SystemExit) as exc:
            main()
        return exc.value.code

    def test_init_config(self, monkeypatch, capsys):
        assert self._main(monkeypatch, "--init-config") == 0
        assert "[[profiles]]" in capsys.readouterr().out

    def test_version(self, monkeypatch, capsys):
        assert self._main(monkeypatch, "--version") == 0
        assert capsys.readouterr().out.strip()

    def test_config_error_exits_1(self, tmp_path, monkeypatch, capsys):
        config = tmp_path / "bad.toml"
        config.write_text("max_tokens = -1\n")
        assert self._main(monkeypatch, "--config", str(config)) == 1
        assert "must be positive" in capsys.readouterr().err

    def test_missing_context_file_exits_1(self, tmp_path, monkeypatch, capsys):
        code = self._main(monkeypatch, "-c", str(tmp_path / "gone.md"), "-q")
        assert code == 1
        assert "context file not found" in capsys.readouterr().err

    def test_starts_repl_with_existing_history(self, tmp_path, monkeypatch, capsys):
        history = tmp_path / "old.txt"
        Transcript.load(history).extend([Message(USER, "q1"), Message(ASSISTANT, "a1")])
        monkeypatch.setattr(sys, "argv", ["colloquy", str(history), "-q"])

        with patch("colloquy.agent.repl_loop") as mock_loop:
            main()

        out = capsys.readouterr().out
        assert "--- User Input ---" in out
        assert "a1" in out
        state = mock_loop.call_args[0][0]
        assert state.session.history_file == history
        assert [m.content for m in state.transcript.messages] == ["q1", "a1"]
        assert Cache.load().last_history_file == str(history)

    def test_default_history_in_chats_dir(self, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["colloquy", "-q"])
        with patch("colloquy.agent.repl_loop") as mock_loop:
            main()
        state = mock_loop.call_args[0][0]
        expected = tmp_path / "data" / "colloquy" / "chats" / "chat.txt"
        assert state.session.history_file == expected
        assert expected.exists()

    def test_preloads_model_at_startup(self, monkeypatch):
        loaded = []
        monkeypatch.setattr(OllamaProvider, "preload", lambda self, model: loaded.append(model))
        monkeypatch.setattr(sys, "argv", ["colloquy", "-q"])
        with patch("colloquy.agent.repl_loop"):
            main()
        assert loaded == ["qwen3:4b"]


# ---------------------------------------------------------------------------
# Startup profile fallback
# ---------------------------------------------------------------------------

TWO_PROFILES = """\
[[profiles]]
name = "claude"
provider = "anthropic"

[[profiles.models]]
model = "claude-sonnet"

[[profiles]]
name = "local"
provider = "ollama"

[[profiles.models]]
model = "qwen3:4b"
model_type = "fast"
"""


class TestProfileFallback:
    def _main(self, monkeypatch, *argv):
        monkeypatch.setattr(sys, "argv", ["colloquy", *argv])
        with pytest.raises(SystemExit) as exc:
            main()
        return exc.value.code

    @pytest.fixture
    def config_path(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        path = tmp_path / "config.toml"
        path.write_text(TWO_PROFILES)
        return path

    def _remember_profile(self, name):
        cache = Cache.load()
        cache.last_profile = name
        cache.save()

    def test_cached_profile_without_key_falls_back(self, config_path, monkeypatch, capsys):
        self._remember_profile("claude")
        monkeypatch.setattr(sys, "argv", ["colloquy", "--config", str(config_path), "-q"])

        with patch("colloquy.agent.repl_loop") as mock_loop:
            main()

        state = mock_loop.call_args[0][0]
        assert state.session.profile.name == "local"
        assert isinstance(state.provider, OllamaProvider)
        err = " ".join(capsys.readouterr().err.split())
        assert "ANTHROPIC_API_KEY" in err
        assert "falling back to profile 'local'" in err
        assert Cache.load().last_profile == "local"

    def test_explicit_profile_without_key_exits_1(self, config_path, monkeypatch, capsys):
        code = self._main(
            monkeypatch, "--config", str(config_path), "--profile", "claude", "-q"
        )
        assert code == 1
        assert "ANTHROPIC_API_KEY" in capsys.readouterr().err

    def test_no_usable_profile_exits_1(self, tmp_path, monkeypatch, capsys):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        path = tmp_path / "config.toml"
        path.write_text(TWO_PROFILES.split("[[profiles]]\nname = \"local\"")[0])
        self._remember_profile("claude")
        code = self._main(monkeypatch, "--config", str(path), "-q")
        assert code == 1
        assert "ANTHROPIC_API_KEY" in capsys.readouterr().err
