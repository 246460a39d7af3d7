"""Unified diff parsing.

Turns the text of a diff block into immutable `DiffHunk`s. Parsing is lenient
about hunk-header line counts (models routinely get them wrong): a hunk body
runs until the next hunk header or file header, and the recorded range is
derived from the lines actually present.
"""

import re
from dataclasses import dataclass

from tern.errors import DiffParseError
from tern.logging import get_logger

_logger = get_logger(__name__)

DEV_NULL = "/dev/null"

HUNK_HEADER = re.compile(r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? \+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@")

_PATCH_MARKER = re.compile(r"^\*\*\*\s+(Begin|End) Patch.*$", re.IGNORECASE | re.MULTILINE)
_FENCE_LINE = re.compile(r"^```.*$", re.MULTILINE)


@dataclass(frozen=True)
class DiffHunk:
    file_path: str
    original_range: tuple[int, int]  # (start, length), 1-based, in the pre-image
    new_content: tuple[str, ...]
    context_lines: tuple[str, ...]
    is_new_file: bool = False

    @property
    def start(self) -> int:
        return self.original_range[0]

    @property
    def added(self) -> int:
        return max(len(self.new_content) - len(self.context_lines), 0)

    def to_dict(self) -> dict:
        return {
            "file_path": self.file_path,
            "original_range": list(self.original_range),
            "new_content": list(self.new_content),
            "context_lines": list(self.context_lines),
            "is_new_file": self.is_new_file,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DiffHunk":
        return cls(
            file_path=data["file_path"],
            original_range=tuple(data["original_range"]),
            new_content=tuple(data["new_content"]),
            context_lines=tuple(data["context_lines"]),
            is_new_file=data.get("is_new_file", False),
        )


def sanitize_diff(text: str) -> str:
    text = _PATCH_MARKER.sub("", text)
    text = _FENCE_LINE.sub("", text)
    return text.replace("\r\n", "\n").replace("\r", "\n").strip("\n")


def _strip_path(raw: str) -> str:
    path = raw.split("\t", 1)[0].strip()
    if path == DEV_NULL:
        return path
    if path.startswith(("a/", "b/")):
        path = path[2:]
    return path


def _is_file_header(lines: list[str], i: int) -> bool:
    return lines[i].startswith("--- ") and i + 1 < len(lines) and lines[i + 1].startswith("+++ ")


def looks_like_diff(text: str) -> bool:
    head = text.lstrip()
    return head.startswith(("--- ", "diff --git ", "@@ ", "*** Begin Patch"))


def parse_unified_diff(text: str) -> list[DiffHunk]:
    lines = sanitize_diff(text).split("\n")
    hunks: list[DiffHunk] = []
    old_path: str | None = None
    new_path: str | None = None

    i = 0
    while i < len(lines):
        line = lines[i]
        if line.startswith("diff --git "):
            old_path = new_path = None
            i += 1
            continue
        if _is_file_header(lines, i):
            old_path = _strip_path(lines[i][4:])
            new_path = _strip_path(lines[i + 1][4:])
            i += 2
            continue

        header = HUNK_HEADER.match(line)
        if not header:
            i += 1
            continue

        if new_path is None:
            raise DiffParseError("hunk without a file header", target=line)
        if new_path == DEV_NULL:
            raise DiffParseError("file deletion is not supported", target=old_path)

        i += 1
        old: list[str] = []
        new: list[str] = []
        last_body = _last_body_index(lines, i)
        while i <= last_body:
            body = lines[i]
            if body.startswith("@@") or body.startswith("diff --git ") or _is_file_header(lines, i):
                break
            if body.startswith("\\"):
                i += 1
                continue
            tag, content = (body[0], body[1:]) if body else (" ", "")
            if tag == " ":
                old.append(content)
                new.append(content)
            elif tag == "-":
                old.append(content)
            elif tag == "+":
                new.append(content)
            else:
                break
            i += 1

        if not old and not new:
            raise DiffParseError("empty hunk", target=new_path)

        declared = header["old_count"]
        if declared is not None and int(declared) != len(old):
            _logger.debug("Hunk line count mismatch in %s: header %s, body %d", new_path, declared, len(old))

        is_new_file = old_path == DEV_NULL
        start = int(header["old_start"])
        if is_new_file or not old:
            start = max(start, 0)
        hunks.append(
            DiffHunk(
                file_path=new_path,
                original_range=(start, len(old)),
                new_content=tuple(new),
                context_lines=tuple(old),
                is_new_file=is_new_file,
            )
        )

    if not hunks:
        raise DiffParseError("no hunks found in diff")
    return hunks


def _last_body_index(lines: list[str], start: int) -> int:
    """Index of the last line that may belong to a hunk body (trailing blank lines excluded)."""
    last = len(lines) - 1
    while last >= start and lines[last] == "":
        last -= 1
    return last
