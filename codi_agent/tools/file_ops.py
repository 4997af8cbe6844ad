"""File operations: read, write, edit, list, glob, grep, image loading."""

import base64
import os
import re
from pathlib import Path
from typing import List, Optional

from ..errors import PathOutsideProjectError, ToolError
from ..messages import ImagePayload
from .base import FunctionTool


class FileOps:
    SKIP_DIRS = {
        ".git", ".svn", ".hg", ".venv", "venv", "env",
        "node_modules", "__pycache__", ".mypy_cache",
        ".pytest_cache", ".tox", "dist", "build",
        ".egg-info", ".next", ".cache", "target",
    }
    IMAGE_MEDIA_TYPES = {
        ".png": "image/png",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".gif": "image/gif",
        ".webp": "image/webp",
    }
    MAX_IMAGE_SIZE = 20 * 1024 * 1024  # 20MB
    MAX_GREP_FILE_BYTES = 2 * 1024 * 1024

    def __init__(self, project_root: str):
        self.project_root = Path(project_root).resolve()

    def _resolve(self, path: str) -> Path:
        p = Path(path)
        if not p.is_absolute():
            p = self.project_root / p
        p = p.resolve()
        try:
            p.relative_to(self.project_root)
        except ValueError:
            raise PathOutsideProjectError(path)
        return p

    def _rel(self, p: Path) -> str:
        return str(p.relative_to(self.project_root))

    def read_file(self, path: str, offset: Optional[int] = None,
                  limit: Optional[int] = None) -> str:
        """Read a text file with line numbers.

        path: File path relative to the project root
        offset: First line to show (1-indexed)
        limit: Maximum number of lines to show
        """
        fp = self._resolve(path)
        if not fp.is_file():
            raise ToolError("read_file", f"File not found: {path}")
        try:
            content = fp.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            raise ToolError("read_file", f"Cannot read binary file: {path}")

        lines = content.splitlines()
        start = max((offset or 1) - 1, 0)
        end = len(lines) if limit is None else min(len(lines), start + max(limit, 0))
        return "\n".join(f"{start + i + 1:4d} | {line}" for i, line in enumerate(lines[start:end]))

    def write_file(self, path: str, content: str) -> str:
        """Create or overwrite a file.

        path: File path relative to the project root
        content: Full file content
        """
        fp = self._resolve(path)
        existed = fp.exists()
        fp.parent.mkdir(parents=True, exist_ok=True)
        fp.write_text(content, encoding="utf-8")
        verb = "Overwrote" if existed else "Created"
        return f"{verb} {path} ({len(content.splitlines())} lines)"

    def edit_file(self, path: str, old_content: str, new_content: str) -> str:
        """Replace one exact occurrence of a string in a file.

        path: File path relative to the project root
        old_content: Exact text to replace; must appear exactly once
        new_content: Replacement text (empty to delete)
        """
        fp = self._resolve(path)
        if not fp.is_file():
            raise ToolError("edit_file", f"File not found: {path}")
        content = fp.read_text(encoding="utf-8")
        count = content.count(old_content)
        if count == 0:
            raise ToolError("edit_file", f"Text not found in {path}. Re-read the file and retry with the exact text.")
        if count > 1:
            raise ToolError("edit_file", f"Text appears {count}x in {path}. Add context to make it unique.")
        fp.write_text(content.replace(old_content, new_content, 1), encoding="utf-8")
        return f"Edited {path}"

    def list_directory(self, path: str = ".", show_hidden: bool = False, depth: int = 2) -> str:
        """List a directory as an indented tree.

        path: Directory path (default: project root)
        show_hidden: Include dotfiles
        depth: How many levels to descend
        """
        fp = self._resolve(path)
        if not fp.is_dir():
            raise ToolError("list_directory", f"Not a directory: {path}")
        lines: List[str] = []
        self._tree(fp, lines, "", 0, max(1, int(depth)), bool(show_hidden))
        return "\n".join(lines) if lines else "(empty directory)"

    def _tree(self, d: Path, lines: list, prefix: str, level: int, max_depth: int, show_hidden: bool):
        try:
            entries = sorted(d.iterdir(), key=lambda e: (not e.is_dir(), e.name.lower()))
        except PermissionError:
            return
        for entry in entries:
            if entry.name in self.SKIP_DIRS or (entry.name.startswith(".") and not show_hidden):
                continue
            if entry.is_dir():
                lines.append(f"{prefix}{entry.name}/")
                if level + 1 < max_depth:
                    self._tree(entry, lines, prefix + "  ", level + 1, max_depth, show_hidden)
            else:
                lines.append(f"{prefix}{entry.name}")

    def _walk_files(self, root: Path):
        for dirpath, dirs, files in os.walk(root):
            dirs[:] = sorted(d for d in dirs if d not in self.SKIP_DIRS and not d.startswith("."))
            for name in sorted(files):
                yield Path(dirpath) / name

    def glob(self, pattern: str, path: str = ".") -> str:
        """Find files by glob pattern, newest first, one path per line.

        pattern: Glob such as '**/*.py' or 'test_*.js'
        path: Directory to search from
        """
        fp = self._resolve(path)
        if not fp.is_dir():
            raise ToolError("glob", f"Not a directory: {path}")
        matches = []
        for p in fp.glob(pattern):
            if any(part in self.SKIP_DIRS for part in p.relative_to(fp).parts) or not p.is_file():
                continue
            matches.append((p.stat().st_mtime, self._rel(p)))
        if not matches:
            return f"No files matching '{pattern}'"
        matches.sort(reverse=True)
        return "\n".join(rel for _, rel in matches)

    def grep(self, pattern: str, path: str = ".", file_pattern: Optional[str] = None,
             ignore_case: bool = False, head_limit: int = 100) -> str:
        """Search file contents for a regex; one 'file:line: text' per match.

        pattern: Regular expression to search for
        path: File or directory to search
        file_pattern: Only search files whose name matches this glob, e.g. '*.py'
        ignore_case: Case-insensitive matching
        head_limit: Stop after this many matches
        """
        try:
            regex = re.compile(pattern, re.IGNORECASE if ignore_case else 0)
        except re.error as e:
            raise ToolError("grep", f"Invalid regex {pattern!r}: {e}")

        fp = self._resolve(path)
        files = [fp] if fp.is_file() else self._walk_files(fp)
        limit = max(1, int(head_limit))
        hits: List[str] = []
        for file in files:
            if file_pattern and not file.match(file_pattern):
                continue
            try:
                if file.stat().st_size > self.MAX_GREP_FILE_BYTES:
                    continue
                text = file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            for lineno, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    hits.append(f"{self._rel(file)}:{lineno}: {line.strip()[:200]}")
                    if len(hits) >= limit:
                        return "\n".join(hits)
        return "\n".join(hits) if hits else f"No matches for '{pattern}'"

    def analyze_image(self, path: str, question: str = "") -> ImagePayload:
        """Load an image so the model can look at it.

        path: Image file path relative to the project root
        question: What to look for in the image
        """
        fp = self._resolve(path)
        if not fp.is_file():
            raise ToolError("analyze_image", f"Image not found: {path}")
        media_type = self.IMAGE_MEDIA_TYPES.get(fp.suffix.lower())
        if media_type is None:
            supported = ", ".join(sorted(self.IMAGE_MEDIA_TYPES))
            raise ToolError("analyze_image", f"Unsupported image format: {fp.suffix}. Supported: {supported}")
        size = fp.stat().st_size
        if size > self.MAX_IMAGE_SIZE:
            raise ToolError("analyze_image", f"Image too large: {size / 1024 / 1024:.1f}MB")
        data = base64.b64encode(fp.read_bytes()).decode("ascii")
        return ImagePayload(media_type=media_type, data=data, question=question)


def create_file_tools(file_ops: FileOps) -> List[FunctionTool]:
    f = file_ops
    return [
        FunctionTool(f.read_file, "Read a text file with line numbers. Supports an optional line window."),
        FunctionTool(f.write_file, "Create or overwrite a file with the given content."),
        FunctionTool(f.edit_file, "Replace one exact, unique occurrence of text in a file."),
        FunctionTool(f.list_directory, "List files and directories as a tree."),
        FunctionTool(f.glob, "Find files by glob pattern, newest first."),
        FunctionTool(f.grep, "Search file contents with a regular expression."),
        FunctionTool(f.analyze_image, "Load a PNG/JPEG/GIF/WebP image for visual analysis."),
    ]
