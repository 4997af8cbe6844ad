"""Tests for the shell executor and bash tool."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from codi_agent.approvals import compile_patterns
from codi_agent.errors import ShellBlockedError, ShellTimeoutError
from codi_agent.tools.shell import MAX_STDOUT_CHARS, BashTool, ShellExecutor


def _completed(stdout="", stderr="", returncode=0):
    return MagicMock(stdout=stdout, stderr=stderr, returncode=returncode)


@pytest.fixture
def executor(tmp_path):
    return ShellExecutor(str(tmp_path), timeout=5)


class TestShellExecutor:
    def test_runs_in_project_root(self, executor, tmp_path):
        with patch("codi_agent.tools.shell.subprocess.run", return_value=_completed("hi\n")) as run:
            assert executor.execute("echo hi") == "hi"
        args, kwargs = run.call_args
        assert args[0] == ["bash", "-c", "echo hi"]
        assert kwargs["cwd"] == str(tmp_path.resolve())
        assert kwargs["timeout"] == 5
        assert kwargs["env"]["TERM"] == "dumb"

    def test_failure_reports_stderr_and_exit_code(self, executor):
        with patch("codi_agent.tools.shell.subprocess.run",
                   return_value=_completed("", "boom\n", 2)):
            out = executor.execute("false")
        assert "[stderr]\nboom" in out
        assert out.endswith("[exit code: 2]")

    def test_no_output(self, executor):
        with patch("codi_agent.tools.shell.subprocess.run", return_value=_completed()):
            assert executor.execute("true") == "(no output)"

    def test_long_output_clipped(self, executor):
        with patch("codi_agent.tools.shell.subprocess.run",
                   return_value=_completed("a" * (MAX_STDOUT_CHARS * 2))):
            out = executor.execute("yes a")
        assert "...(truncated)..." in out
        assert len(out) < MAX_STDOUT_CHARS * 2

    def test_timeout(self, executor):
        with patch("codi_agent.tools.shell.subprocess.run",
                   side_effect=subprocess.TimeoutExpired("sleep", 5)):
            with pytest.raises(ShellTimeoutError) as exc:
                executor.execute("sleep 100")
        assert exc.value.timeout == 5

    @pytest.mark.parametrize("command", ["rm -rf /", "mkfs.ext4 /dev/sda1", ":(){ :|:& };:"])
    def test_catastrophic_commands_blocked(self, executor, command):
        with patch("codi_agent.tools.shell.subprocess.run") as run:
            with pytest.raises(ShellBlockedError):
                executor.execute(command)
        run.assert_not_called()

    def test_confirmable_commands_not_blocked(self, executor):
        assert executor.get_block_reason("sudo ls") is None
        assert executor.get_block_reason("rm -rf build") is None

    def test_blocked_command_list(self, tmp_path):
        executor = ShellExecutor(str(tmp_path), blocked_commands=["shutdown", "  "])
        assert executor.get_block_reason("sudo shutdown -h now") == "matches blocked command 'shutdown'"
        assert executor.get_block_reason("shut'down' now") == "matches blocked command 'shutdown'"

    def test_custom_block_patterns(self, tmp_path):
        patterns = compile_patterns([
            {"pattern": r"\bdrop\s+database\b", "description": "drops a database", "block": True},
            {"pattern": r"\bnpm\s+publish\b", "description": "publishes a package"},
        ])
        executor = ShellExecutor(str(tmp_path), block_patterns=patterns)
        assert executor.get_block_reason("psql -c 'drop database prod'") == "drops a database"
        assert executor.get_block_reason("npm publish") is None


class TestBashTool:
    def test_definition(self, executor):
        definition = BashTool(executor).get_definition()
        assert definition.name == "bash"
        assert definition.required == ["command"]

    def test_run_success(self, executor):
        with patch("codi_agent.tools.shell.subprocess.run", return_value=_completed("ok\n")):
            result = BashTool(executor).run("c1", {"command": "echo ok"})
        assert result.content == "ok"
        assert not result.is_error

    def test_blocked_becomes_error_result(self, executor):
        result = BashTool(executor).run("c1", {"command": "rm -rf /"})
        assert result.is_error
        assert result.content == "Error: Blocked: removes root filesystem"

    def test_timeout_becomes_error_result(self, executor):
        with patch("codi_agent.tools.shell.subprocess.run",
                   side_effect=subprocess.TimeoutExpired("sleep", 5)):
            result = BashTool(executor).run("c1", {"command": "sleep 100"})
        assert result.is_error
        assert result.content == "Error: Timed out after 5s"

    def test_empty_command(self, executor):
        result = BashTool(executor).run("c1", {"command": "  "})
        assert result.is_error
        assert "Command is required" in result.content

    def test_missing_command(self, executor):
        result = BashTool(executor).run("c1", {})
        assert result.content.startswith('Error: Missing required parameter "command" for tool "bash"')
