"""Tests for the terminal front end."""

import queue
import threading
import time
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from codi_agent import main as cli
from codi_agent.agent import Agent, ChatOutcome
from codi_agent.confirmation import ConfirmationResult, ToolConfirmation
from codi_agent.config import Config, ModelPreset
from codi_agent.errors import ProviderUnavailableError
from codi_agent.llm import ProviderResponse
from codi_agent.messages import ToolCall
from codi_agent.tools import create_default_registry


@pytest.fixture
def quiet_console(monkeypatch, mock_console):
    monkeypatch.setattr(cli, "console", mock_console)
    return mock_console


class TestConsoleConfirm:
    @pytest.mark.parametrize("answer,expected", [
        ("y", ConfirmationResult.APPROVE),
        ("", ConfirmationResult.APPROVE),
        ("n", ConfirmationResult.DENY),
        ("whatever", ConfirmationResult.DENY),
        ("a", ConfirmationResult.ABORT),
    ])
    def test_answers(self, mock_console, answer, expected):
        mock_console.input.return_value = answer
        confirm = cli.make_console_confirm(mock_console)
        assert confirm(ToolConfirmation("write_file", {"path": "a.py"})) is expected

    def test_eof_aborts(self, mock_console):
        mock_console.input.side_effect = EOFError
        confirm = cli.make_console_confirm(mock_console)
        assert confirm(ToolConfirmation("bash", {"command": "ls"})) is ConfirmationResult.ABORT

    def test_danger_and_diff_shown(self, mock_console):
        confirm = cli.make_console_confirm(mock_console)
        confirm(ToolConfirmation(
            "bash", {"command": "sudo ls"}, is_dangerous=True, danger_reason="runs as superuser",
        ))
        printed = " ".join(str(c.args[0]) for c in mock_console.print.call_args_list if c.args)
        assert "runs as superuser" in printed
        assert "sudo ls" in printed


class TestHelpers:
    def test_resolve_known_preset(self):
        cfg = Config(models={"fast": ModelPreset("fast", "openai", "openai/gpt-4o-mini")})
        cli._resolve_preset(cfg, "fast")
        assert cfg.active_model == "fast"

    def test_resolve_raw_model_string(self):
        cfg = Config(models={})
        cli._resolve_preset(cfg, "anthropic/claude-sonnet-4-20250514")
        preset = cfg.get_active_preset()
        assert preset.provider == "anthropic"
        assert preset.model == "anthropic/claude-sonnet-4-20250514"

    def test_slash_commands(self, quiet_console):
        agent = MagicMock()
        agent.force_compact.return_value = {"before": 100, "after": 10, "summary": "s"}
        assert cli._handle_command(agent, "/clear")
        agent.clear_history.assert_called_once()
        assert cli._handle_command(agent, "/compact now")
        agent.force_compact.assert_called_once()
        assert not cli._handle_command(agent, "/unknown")

    def test_run_turn_prints_trailer(self, quiet_console):
        agent = MagicMock()
        agent.chat.return_value = "partial\n\n(Stopping due to repeated errors)"
        agent.last_outcome = ChatOutcome.ERROR_LIMIT
        assert cli._run_turn(agent, "go", verbose=False)
        printed = " ".join(str(c.args[0]) for c in quiet_console.print.call_args_list if c.args)
        assert "(Stopping due to repeated errors)" in printed

    def test_run_turn_provider_down(self, quiet_console):
        agent = MagicMock()
        agent.chat.side_effect = ProviderUnavailableError("Cannot connect")
        assert cli._run_turn(agent, "go", verbose=False) is False


class TestCommand:
    def test_invalid_project_dir(self, tmp_path, quiet_console):
        result = CliRunner().invoke(cli.main, ["--project-dir", str(tmp_path / "missing")])
        assert result.exit_code == 1
        assert "not a valid directory" in str(quiet_console.print.call_args[0][0])

    def test_version(self):
        result = CliRunner().invoke(cli.main, ["--version"])
        assert result.exit_code == 0
        assert "codi-agent" in result.output


class TestTerminalConfirmation:
    def test_interrupted_prompt_leaves_next_line_for_repl(self, tmp_path):
        lines = queue.Queue()
        prompt_threads = []

        class QueueConsole:
            def print(self, *args, **kwargs):
                pass

            def input(self, prompt=""):
                prompt_threads.append(threading.current_thread())
                if lines.empty():
                    raise KeyboardInterrupt
                return lines.get()

        provider = MagicMock()
        provider.context_window = 128000
        provider.supports_tool_use.return_value = True
        provider.stream_chat.side_effect = [
            ProviderResponse(
                tool_calls=[ToolCall("c1", "write_file", {"path": "a.py", "content": "x = 1\n"})],
                stop_reason="tool_use",
            ),
            ProviderResponse(content="unused"),
        ]
        agent = Agent(
            provider=provider,
            registry=create_default_registry(project_root=str(tmp_path)),
            on_confirm=cli.make_console_confirm(QueueConsole()),
            confirm_timeout=0.05,
            project_root=str(tmp_path),
        )

        agent.chat("write a.py")
        lines.put("next question")
        time.sleep(0.1)

        assert agent.last_outcome is ChatOutcome.ABORTED
        assert not (tmp_path / "a.py").exists()
        assert prompt_threads == [threading.current_thread()]
        assert lines.get_nowait() == "next question"
