import pytest

from tern.errors import DiffParseError
from tern.patch.diff import DiffHunk, looks_like_diff, parse_unified_diff


class TestParseUnifiedDiff:
    def test_single_hunk(self):
        hunks = parse_unified_diff(
            "--- a/src/a.ts\n+++ b/src/a.ts\n@@ -10,3 +10,3 @@\n const a = 1;\n-const b = 2;\n+const b = 3;\n const c = 4;\n"
        )
        assert hunks == [
            DiffHunk(
                file_path="src/a.ts",
                original_range=(10, 3),
                new_content=("const a = 1;", "const b = 3;", "const c = 4;"),
                context_lines=("const a = 1;", "const b = 2;", "const c = 4;"),
            )
        ]

    def test_multiple_files_and_hunks(self):
        text = (
            "diff --git a/one.py b/one.py\n"
            "--- a/one.py\n+++ b/one.py\n"
            "@@ -1,2 +1,2 @@\n a\n-b\n+B\n"
            "@@ -20 +20,2 @@\n z\n+zz\n"
            "diff --git a/two.py b/two.py\n"
            "--- a/two.py\n+++ b/two.py\n"
            "@@ -5,1 +5,1 @@\n-old\n+new\n"
        )
        hunks = parse_unified_diff(text)
        assert [(h.file_path, h.original_range) for h in hunks] == [
            ("one.py", (1, 2)),
            ("one.py", (20, 1)),
            ("two.py", (5, 1)),
        ]

    def test_header_counts_are_not_trusted(self):
        hunks = parse_unified_diff("--- a/x\n+++ b/x\n@@ -1,9 +1,9 @@\n keep\n-drop\n+add\n")
        assert hunks[0].original_range == (1, 2)

    def test_new_file(self):
        hunks = parse_unified_diff("--- /dev/null\n+++ b/new.txt\n@@ -0,0 +1,2 @@\n+hello\n+world\n")
        assert hunks[0].is_new_file
        assert hunks[0].context_lines == ()
        assert hunks[0].new_content == ("hello", "world")

    def test_no_newline_marker_is_ignored(self):
        hunks = parse_unified_diff("--- a/x\n+++ b/x\n@@ -1 +1 @@\n-a\n\\ No newline at end of file\n+b\n")
        assert hunks[0].context_lines == ("a",)
        assert hunks[0].new_content == ("b",)

    def test_blank_context_line_without_leading_space(self):
        hunks = parse_unified_diff("--- a/x\n+++ b/x\n@@ -1,3 +1,3 @@\n a\n\n-b\n+c\n")
        assert hunks[0].context_lines == ("a", "", "b")

    def test_markers_and_fences_are_sanitized(self):
        hunks = parse_unified_diff("*** Begin Patch\n```diff\n--- a/x\n+++ b/x\n@@ -1 +1 @@\n-a\n+b\n```\n*** End Patch")
        assert len(hunks) == 1

    def test_deletion_is_rejected(self):
        with pytest.raises(DiffParseError, match="deletion"):
            parse_unified_diff("--- a/x\n+++ /dev/null\n@@ -1 +0,0 @@\n-a\n")

    def test_hunk_without_file_header(self):
        with pytest.raises(DiffParseError):
            parse_unified_diff("@@ -1 +1 @@\n-a\n+b\n")

    def test_no_hunks(self):
        with pytest.raises(DiffParseError):
            parse_unified_diff("just some prose")

    def test_round_trip_dict(self):
        hunk = parse_unified_diff("--- a/x\n+++ b/x\n@@ -3 +3 @@\n-a\n+b\n")[0]
        assert DiffHunk.from_dict(hunk.to_dict()) == hunk


class TestLooksLikeDiff:
    @pytest.mark.parametrize(
        "text",
        ["--- a/x\n+++ b/x", "diff --git a/x b/x", "@@ -1 +1 @@", "  *** Begin Patch"],
    )
    def test_diff_headers(self, text: str):
        assert looks_like_diff(text)

    def test_prose(self):
        assert not looks_like_diff("def main():\n    pass")
