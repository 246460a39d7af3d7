from dataclasses import dataclass

from tern.patch.diff import DiffHunk


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallBlockComplete:
    raw_json: str
    line: int = 0


@dataclass(frozen=True)
class DiffHunkComplete:
    hunk: DiffHunk


@dataclass(frozen=True)
class DecodeError:
    """Scoped to one block; the stream itself keeps decoding."""

    reason: str
    line: int = 0


@dataclass(frozen=True)
class Done:
    pass


DecoderEvent = TextDelta | ToolCallBlockComplete | DiffHunkComplete | DecodeError | Done


def coalesce(events: list[DecoderEvent]) -> list[DecoderEvent]:
    """Merge adjacent TextDeltas. TextDelta granularity follows feed() chunking; nothing else does."""
    out: list[DecoderEvent] = []
    for event in events:
        if isinstance(event, TextDelta) and out and isinstance(out[-1], TextDelta):
            out[-1] = TextDelta(out[-1].text + event.text)
        else:
            out.append(event)
    return out
