"""Tests for confirmation diff previews."""

from codi_agent.diff_utils import build_diff_preview, compute_diff_stats, generate_unified_diff


class TestUnifiedDiff:
    def test_diff_and_stats(self):
        diff = generate_unified_diff("a\nb\nc\n", "a\nB\nc\nd\n", "f.txt")
        assert diff.startswith("--- a/f.txt\n+++ b/f.txt\n")
        assert "-b\n" in diff
        assert "+B\n" in diff
        assert compute_diff_stats(diff) == (2, 1)

    def test_missing_trailing_newline(self):
        diff = generate_unified_diff("x", "y", "f.txt")
        assert "-x\n+y\n" in diff

    def test_identical(self):
        assert generate_unified_diff("same\n", "same\n") == ""


class TestBuildDiffPreview:
    def test_new_file(self, tmp_path):
        preview = build_diff_preview("write_file", {"path": "new.py", "content": "a\nb\n"}, str(tmp_path))
        assert preview == "New file: new.py (2 lines)"

    def test_overwrite(self, tmp_path):
        (tmp_path / "a.py").write_text("x = 1\n")
        preview = build_diff_preview("write_file", {"path": "a.py", "content": "x = 2\n"}, str(tmp_path))
        assert "-x = 1" in preview
        assert "+x = 2" in preview

    def test_edit(self, tmp_path):
        (tmp_path / "a.py").write_text("def f():\n    return 1\n")
        preview = build_diff_preview(
            "edit_file", {"path": "a.py", "old_content": "return 1", "new_content": "return 2"},
            str(tmp_path),
        )
        assert "+    return 2" in preview

    def test_edit_that_would_fail_has_no_preview(self, tmp_path):
        (tmp_path / "a.py").write_text("x\nx\n")
        args = {"path": "a.py", "old_content": "x", "new_content": "y"}
        assert build_diff_preview("edit_file", args, str(tmp_path)) is None

    def test_other_tools_and_bad_input(self, tmp_path):
        assert build_diff_preview("bash", {"command": "ls"}, str(tmp_path)) is None
        assert build_diff_preview("write_file", {"path": 3}, str(tmp_path)) is None
