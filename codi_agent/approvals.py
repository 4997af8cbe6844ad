"""Tool categories, auto-approval and dangerous-command detection."""

import base64
import binascii
import re
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Union

from .logger import get_logger

_log = get_logger(__name__)

SAFE_TOOLS = frozenset({"read_file", "glob", "grep", "list_directory", "analyze_image"})
DESTRUCTIVE_TOOLS = frozenset({"write_file", "edit_file", "insert_line", "patch_file", "bash"})
FILE_MUTATING_TOOLS = frozenset({"write_file", "edit_file"})


class DangerousPattern(NamedTuple):
    pattern: "re.Pattern[str]"
    description: str
    block: bool = False


def _p(regex: str, description: str, block: bool = False) -> DangerousPattern:
    return DangerousPattern(re.compile(regex, re.IGNORECASE), description, block)


# Patterns flagged with block=True are refused by the shell tool outright;
# the rest only force a confirmation prompt.
DANGEROUS_BASH_PATTERNS: List[DangerousPattern] = [
    _p(r"rm\s+-rf\s+/(?!\w)", "removes root filesystem", block=True),
    _p(r"\bmkfs\.", "formats filesystem", block=True),
    _p(r"\bdd\s+.*of=/dev", "direct disk write", block=True),
    _p(r">\s*/dev/sd[a-z]", "overwrites disk device", block=True),
    _p(r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:", "fork bomb", block=True),
    _p(r"\brm\s+(-[rf]+\s+)*[/~]", "removes files/directories"),
    _p(r"\brm\s+-[rf]*\s", "force/recursive delete"),
    _p(r"\bsudo\b", "runs as superuser"),
    _p(r"\bchmod\s+(-\w+\s+)?0?777\b", "sets insecure permissions"),
    _p(r"\b(mkfs|dd\s+if=)", "disk/filesystem operation"),
    _p(r">\s*/dev/(?!null\b)", "writes to device"),
    _p(r"\bcurl\b.*\|\s*(ba|z)?sh\b", "pipes remote script to shell"),
    _p(r"\bwget\b.*\|\s*(ba|z)?sh\b", "pipes remote script to shell"),
    _p(r"\bbase64\b.*-(d|-decode)\b.*\|\s*(ba|z)?sh\b", "runs decoded payload"),
    _p(r"\bgit\s+push\s+.*--force", "force pushes to remote"),
    _p(r"\bgit\s+reset\s+--hard", "hard reset (loses changes)"),
]

PatternSpec = Union[DangerousPattern, Dict[str, Any], Sequence[Any], str]


def compile_patterns(specs: Optional[Iterable[PatternSpec]]) -> List[DangerousPattern]:
    """Accept ``{pattern, description}`` dicts, ``(pattern, description)``
    pairs, bare strings or ready ``DangerousPattern`` values."""
    compiled = []
    for spec in specs or ():
        if isinstance(spec, DangerousPattern):
            compiled.append(spec)
            continue
        if isinstance(spec, str):
            regex, description, block = spec, f"matches '{spec}'", False
        elif isinstance(spec, dict):
            regex = spec.get("pattern", "")
            description = spec.get("description") or f"matches '{regex}'"
            block = bool(spec.get("block", False))
        else:
            regex, description = spec[0], spec[1]
            block = bool(spec[2]) if len(spec) > 2 else False
        if isinstance(regex, re.Pattern):
            compiled.append(DangerousPattern(regex, description, block))
            continue
        try:
            compiled.append(DangerousPattern(re.compile(regex), description, block))
        except re.error as e:
            _log.warning("Ignoring invalid dangerous pattern %r: %s", regex, e)
    return compiled


# ── Command decomposition ──

_SUBSHELL_RE = re.compile(r"\$\(([^()]+)\)")
_BACKTICK_RE = re.compile(r"`([^`]+)`")
_EVAL_RE = re.compile(r"\beval\s+([^\n;]+)", re.IGNORECASE)
_BASE64_DECODE_RE = re.compile(r"\bbase64\b[^\n;|&]*-(?:d|-decode)\b", re.IGNORECASE)
_BASE64_BLOB_RE = re.compile(r"(?<![A-Za-z0-9+/=])([A-Za-z0-9+/]{16,}={0,2})(?![A-Za-z0-9+/=])")
_MAX_DEPTH = 3


def canonicalize_command(command: str) -> str:
    """Strip quoting noise (``r'm' -"rf"``, ``${IFS}``) so obfuscated variants match."""
    text = command.replace("\\\n", " ")
    text = re.sub(r"\$\{?IFS\}?", " ", text)
    text = re.sub(r"['\"\\]", "", text)
    return re.sub(r"\s+", " ", text).strip()


def _decoded_payloads(command: str) -> List[str]:
    if not _BASE64_DECODE_RE.search(command):
        return []
    payloads = []
    for match in _BASE64_BLOB_RE.finditer(command):
        blob = match.group(1)
        if len(blob) % 4:
            continue
        try:
            text = base64.b64decode(blob, validate=True)[:4096].decode("utf-8", errors="ignore").strip()
        except (binascii.Error, ValueError):
            continue
        if text and sum(c.isprintable() or c in "\n\t" for c in text) / len(text) >= 0.75:
            payloads.append(text)
    return payloads


def command_fragments(command: str) -> List[str]:
    """The command plus every nested command hiding inside it.

    Covers ``$(...)``, backticks, ``eval`` arguments and
    ``base64 --decode`` payloads, each also in canonical form.
    """
    queue = deque([(command, 0)])
    seen = set()
    fragments = []
    while queue:
        fragment, depth = queue.popleft()
        for variant in (fragment, canonicalize_command(fragment)):
            key = variant.strip()
            if key and key not in seen:
                seen.add(key)
                fragments.append(key)
        if depth >= _MAX_DEPTH:
            continue
        nested = (
            _SUBSHELL_RE.findall(fragment)
            + _BACKTICK_RE.findall(fragment)
            + _EVAL_RE.findall(fragment)
            + _decoded_payloads(fragment)
        )
        for sub in nested:
            queue.append((sub, depth + 1))
    return fragments


def check_dangerous_bash(
    command: str, additional: Sequence[DangerousPattern] = ()
) -> Optional[DangerousPattern]:
    """First pattern the command matches.

    Built-in patterns take precedence; caller-supplied ones are consulted
    only when no built-in pattern fires.
    """
    fragments = command_fragments(command)
    for group in (DANGEROUS_BASH_PATTERNS, additional):
        for entry in group:
            if any(entry.pattern.search(f) for f in fragments):
                return entry
    return None


@dataclass
class DangerAssessment:
    is_dangerous: bool = False
    reason: Optional[str] = None
    blocked: bool = False


def assess_danger(
    tool_name: str, arguments: Dict[str, Any],
    additional: Sequence[DangerousPattern] = (),
) -> DangerAssessment:
    if tool_name != "bash":
        return DangerAssessment()
    command = arguments.get("command")
    if not isinstance(command, str) or not command.strip():
        return DangerAssessment()
    hit = check_dangerous_bash(command, additional)
    if hit is None:
        return DangerAssessment()
    return DangerAssessment(is_dangerous=True, reason=hit.description, blocked=hit.block)


class ApprovalPolicy:
    """Decides which tool calls skip the confirmation prompt."""

    def __init__(self, auto_approve: Union[bool, Iterable[str], None] = False):
        if isinstance(auto_approve, bool) or auto_approve is None:
            self.approve_all = bool(auto_approve)
            self.approved_tools = set()
        else:
            self.approve_all = False
            self.approved_tools = set(auto_approve)

    def should_auto_approve(self, tool_name: str) -> bool:
        return self.approve_all or tool_name in self.approved_tools

    @staticmethod
    def is_destructive(tool_name: str) -> bool:
        return tool_name in DESTRUCTIVE_TOOLS

    def requires_confirmation(self, tool_name: str, danger: Optional[DangerAssessment] = None) -> bool:
        """Destructive and not auto-approved, or flagged dangerous regardless
        of auto-approval."""
        if danger is not None and danger.is_dangerous:
            return True
        return self.is_destructive(tool_name) and not self.should_auto_approve(tool_name)
