"""Incremental decoder for model output.

Bytes go in, semantic events come out. Prose outside fenced blocks is emitted
as soon as it arrives; the only text ever held back is the start of a line
that could still turn out to be a fence marker. Fenced blocks are buffered
until their closing marker and then emitted as one or more events.

Block grammar (one marker per line, up to three leading spaces):

    ```json            tool-call block, closed by ```
    ```diff / patch    diff block, closed by ```
    *** Begin Patch    diff block, closed by *** End Patch
    ```                untyped block, classified by content when closed
    ```<other>         code block, passed through as prose
"""

import codecs
import re
from dataclasses import dataclass, field
from enum import Enum

from tern.errors import DiffParseError
from tern.logging import get_logger
from tern.patch.diff import looks_like_diff, parse_unified_diff
from tern.stream.events import (
    DecodeError,
    DecoderEvent,
    DiffHunkComplete,
    Done,
    TextDelta,
    ToolCallBlockComplete,
)

_logger = get_logger(__name__)

FENCE = "```"
PATCH_BEGIN = "*** Begin Patch"
PATCH_END = "*** End Patch"

_OPEN_FENCE = re.compile(r"^ {0,3}```(?P<info>.*)$")

TOOL_CALL_INFO = frozenset({"json"})
DIFF_INFO = frozenset({"diff", "patch", "udiff"})


class BlockKind(Enum):
    TOOL_CALL = "tool_call"
    DIFF = "diff"
    UNTYPED = "untyped"
    CODE = "code"


@dataclass
class _Block:
    kind: BlockKind
    opener: str
    opened_at: int
    patch_markers: bool = False
    lines: list[str] = field(default_factory=list)
    current: str = ""

    @property
    def body(self) -> str:
        return "".join(self.lines)

    def closes(self, line: str) -> bool:
        text = line.rstrip("\r\n").strip()
        if self.patch_markers:
            return text.startswith(PATCH_END)
        return text == FENCE


def _marker_candidate(text: str) -> bool:
    """True while a partial line could still become an opening marker."""
    stripped = text.lstrip(" ")
    if len(text) - len(stripped) > 3:
        return False
    if not stripped:
        return True
    for marker in (FENCE, PATCH_BEGIN):
        if stripped.startswith(marker) or marker.startswith(stripped):
            return True
    return False


def _match_opener(line: str) -> _Block | None:
    text = line.rstrip("\r\n")
    if text.lstrip(" ").startswith(PATCH_BEGIN) and len(text) - len(text.lstrip(" ")) <= 3:
        return _Block(kind=BlockKind.DIFF, opener=line, opened_at=0, patch_markers=True)

    match = _OPEN_FENCE.match(text)
    if not match:
        return None
    info = match["info"].strip()
    tag = info.split()[0].lower() if info else ""
    if "`" in tag:
        return None
    if tag in TOOL_CALL_INFO:
        kind = BlockKind.TOOL_CALL
    elif tag in DIFF_INFO:
        kind = BlockKind.DIFF
    elif not tag:
        kind = BlockKind.UNTYPED
    else:
        kind = BlockKind.CODE
    return _Block(kind=kind, opener=line, opened_at=0)


class StreamDecoder:
    """One instance per turn; `reset()` makes it reusable."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._raw: list[str] = []
        self._line = ""
        self._line_is_prose = False
        self._line_no = 1
        self._block: _Block | None = None
        self._closed = False

    @property
    def raw_text(self) -> str:
        return "".join(self._raw)

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, data: bytes) -> list[DecoderEvent]:
        if self._closed:
            raise RuntimeError("Decoder is closed; call reset() to reuse it")
        return self._consume(self._utf8.decode(data))

    def close(self) -> list[DecoderEvent]:
        if self._closed:
            return []
        events = self._consume(self._utf8.decode(b"", final=True))
        block = self._block

        if block is None:
            if self._line:
                events.append(TextDelta(self._line))
        elif block.kind is not BlockKind.CODE:
            if block.current and block.closes(block.current):
                self._finish_block(block, block.current, events)
            else:
                if block.current:
                    block.lines.append(block.current)
                self._unterminated(block, events)

        self._line = ""
        self._block = None
        self._closed = True
        events.append(Done())
        return events

    def _consume(self, text: str) -> list[DecoderEvent]:
        events: list[DecoderEvent] = []
        pos = 0
        while pos < len(text):
            nl = text.find("\n", pos)
            end = len(text) if nl == -1 else nl + 1
            piece = text[pos:end]
            pos = end
            self._raw.append(piece)
            complete = piece.endswith("\n")
            if self._block is None:
                self._feed_prose(piece, complete, events)
            else:
                self._feed_block(self._block, piece, complete, events)
            if complete:
                self._line_no += 1
        return events

    def _feed_prose(self, piece: str, complete: bool, events: list[DecoderEvent]) -> None:
        if self._line_is_prose:
            events.append(TextDelta(piece))
            if complete:
                self._line_is_prose = False
            return

        self._line += piece
        if complete:
            line, self._line = self._line, ""
            block = _match_opener(line)
            if block is None:
                events.append(TextDelta(line))
                return
            block.opened_at = self._line_no
            self._block = block
            if block.kind is BlockKind.CODE:
                events.append(TextDelta(line))
            return

        if not _marker_candidate(self._line.rstrip("\r")):
            events.append(TextDelta(self._line))
            self._line = ""
            self._line_is_prose = True

    def _feed_block(self, block: _Block, piece: str, complete: bool, events: list[DecoderEvent]) -> None:
        if block.kind is BlockKind.CODE:
            events.append(TextDelta(piece))

        block.current += piece
        if not complete:
            return

        line, block.current = block.current, ""
        if block.closes(line):
            self._finish_block(block, line, events)
        elif block.kind is not BlockKind.CODE:
            block.lines.append(line)

    def _finish_block(self, block: _Block, closing: str, events: list[DecoderEvent]) -> None:
        self._block = None
        kind = block.kind
        if kind is BlockKind.CODE:
            return

        body = block.body
        if kind is BlockKind.UNTYPED:
            kind = self._classify(body)
            if kind is BlockKind.UNTYPED:
                events.append(TextDelta(block.opener + body + closing))
                return

        if kind is BlockKind.TOOL_CALL:
            events.append(ToolCallBlockComplete(raw_json=body, line=block.opened_at))
            return

        try:
            hunks = parse_unified_diff(body)
        except DiffParseError as e:
            _logger.debug("Diff block at line %d rejected: %s", block.opened_at, e)
            events.append(DecodeError(reason=f"invalid diff block: {e.message}", line=block.opened_at))
            return
        events.extend(DiffHunkComplete(hunk=h) for h in hunks)

    def _unterminated(self, block: _Block, events: list[DecoderEvent]) -> None:
        kind = block.kind
        if kind is BlockKind.UNTYPED:
            kind = self._classify(block.body)
            if kind is BlockKind.UNTYPED:
                events.append(TextDelta(block.opener + block.body))
                return
        events.append(
            DecodeError(
                reason=f"unterminated {kind.value} block opened at line {block.opened_at}",
                line=block.opened_at,
            )
        )

    @staticmethod
    def _classify(body: str) -> BlockKind:
        head = body.lstrip()
        if head.startswith("{"):
            return BlockKind.TOOL_CALL
        if looks_like_diff(head):
            return BlockKind.DIFF
        return BlockKind.UNTYPED
