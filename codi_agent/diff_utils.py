"""Diff previews for file-mutating tool calls awaiting confirmation."""

import difflib
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .logger import get_logger

_log = get_logger(__name__)


def generate_unified_diff(
    old_content: str,
    new_content: str,
    filename: str = "file",
    context_lines: int = 3
) -> str:
    """Unified diff between two versions of a file."""
    old_lines = old_content.splitlines(keepends=True)
    new_lines = new_content.splitlines(keepends=True)

    # difflib glues a missing trailing newline onto the next hunk line
    if old_lines and not old_lines[-1].endswith('\n'):
        old_lines[-1] += '\n'
    if new_lines and not new_lines[-1].endswith('\n'):
        new_lines[-1] += '\n'

    diff = difflib.unified_diff(
        old_lines,
        new_lines,
        fromfile=f"a/{filename}",
        tofile=f"b/{filename}",
        n=context_lines
    )
    return "".join(diff)


def compute_diff_stats(diff_text: str) -> Tuple[int, int]:
    """(lines_added, lines_removed) in a unified diff."""
    added = removed = 0
    for line in diff_text.splitlines():
        if line.startswith('+') and not line.startswith('+++'):
            added += 1
        elif line.startswith('-') and not line.startswith('---'):
            removed += 1
    return added, removed


def build_diff_preview(tool_name: str, arguments: Dict[str, Any],
                       project_root: str = ".") -> Optional[str]:
    """Best-effort preview of what ``write_file``/``edit_file`` would change.

    Returns ``None`` whenever a preview cannot be produced; callers treat
    that as "no preview", never as a reason to refuse the call.
    """
    try:
        return _preview(tool_name, arguments, Path(project_root).resolve())
    except (OSError, UnicodeDecodeError, TypeError, ValueError) as e:
        _log.debug("Diff preview for %s failed: %s", tool_name, e)
        return None


def _preview(tool_name: str, arguments: Dict[str, Any], root: Path) -> Optional[str]:
    path = arguments.get("path")
    if not isinstance(path, str) or not path:
        return None
    fp = Path(path)
    if not fp.is_absolute():
        fp = root / fp

    if tool_name == "write_file":
        new_content = arguments.get("content")
        if not isinstance(new_content, str):
            return None
        if not fp.exists():
            return f"New file: {path} ({len(new_content.splitlines())} lines)"
        return generate_unified_diff(fp.read_text(encoding="utf-8"), new_content, path)

    if tool_name == "edit_file":
        old = arguments.get("old_content")
        new = arguments.get("new_content")
        if not isinstance(old, str) or not isinstance(new, str) or not fp.exists():
            return None
        content = fp.read_text(encoding="utf-8")
        if content.count(old) != 1:
            return None
        return generate_unified_diff(content, content.replace(old, new, 1), path)

    return None
