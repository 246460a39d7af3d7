from tern.stream.decoder import StreamDecoder
from tern.stream.events import (
    DecodeError,
    DecoderEvent,
    DiffHunkComplete,
    Done,
    TextDelta,
    ToolCallBlockComplete,
    coalesce,
)

__all__ = [
    "DecodeError",
    "DecoderEvent",
    "DiffHunkComplete",
    "Done",
    "StreamDecoder",
    "TextDelta",
    "ToolCallBlockComplete",
    "coalesce",
]
