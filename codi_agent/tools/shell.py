"""Shell command execution with safety guards."""

import os
import re
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..approvals import DANGEROUS_BASH_PATTERNS, DangerousPattern, canonicalize_command, command_fragments
from ..errors import ShellBlockedError, ShellTimeoutError, ToolError
from ..logger import get_logger
from ..messages import ToolDefinition
from .base import BaseTool

_log = get_logger(__name__)

MAX_STDOUT_CHARS = 8000
MAX_STDERR_CHARS = 4000


class ShellExecutor:
    """Run bash commands in the project root, refusing catastrophic ones."""

    def __init__(self, project_root: str, blocked_commands: Optional[List[str]] = None,
                 timeout: int = 120,
                 block_patterns: Sequence[DangerousPattern] = ()):
        self.project_root = Path(project_root).resolve()
        self.timeout = timeout
        self.blocked = [b for b in (blocked_commands or []) if b.strip()]
        self._block_patterns = [p for p in DANGEROUS_BASH_PATTERNS if p.block] + [
            p for p in block_patterns if p.block
        ]

    def get_block_reason(self, command: str) -> Optional[str]:
        for fragment in command_fragments(command):
            lowered = fragment.lower()
            compact = re.sub(r"\s+", "", canonicalize_command(lowered))
            for blocked in self.blocked:
                needle = blocked.lower().strip()
                if needle in lowered or re.sub(r"\s+", "", needle) in compact:
                    return f"matches blocked command '{blocked}'"
            for entry in self._block_patterns:
                if entry.pattern.search(fragment):
                    return entry.description
        return None

    def execute(self, command: str) -> str:
        reason = self.get_block_reason(command)
        if reason:
            _log.warning("Command blocked: %s", reason)
            raise ShellBlockedError(reason)

        _log.debug("Executing command: %s", command[:100])
        try:
            result = subprocess.run(
                ["bash", "-c", command],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                cwd=str(self.project_root),
                env={**os.environ, "TERM": "dumb"},
            )
        except subprocess.TimeoutExpired:
            raise ShellTimeoutError(self.timeout)

        parts = []
        if result.stdout:
            parts.append(_clip(result.stdout, MAX_STDOUT_CHARS))
        if result.stderr:
            parts.append(f"[stderr]\n{_clip(result.stderr, MAX_STDERR_CHARS)}")
        if result.returncode != 0:
            parts.append(f"[exit code: {result.returncode}]")

        output = "\n".join(parts).strip()
        return output if output else "(no output)"


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    half = limit // 2
    return text[:half] + "\n...(truncated)...\n" + text[-half:]


class BashTool(BaseTool):
    def __init__(self, executor: ShellExecutor):
        self.executor = executor

    def get_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="bash",
            description=(
                "Execute a bash command in the project root. Output includes stderr "
                "and a non-zero exit code when the command fails."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Bash command to run"},
                },
                "required": ["command"],
            },
        )

    def execute(self, arguments: Dict[str, Any]) -> str:
        command = arguments.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ToolError("bash", "Command is required")
        return self.executor.execute(command)
