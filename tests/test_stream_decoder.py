import random

import pytest

from tern.stream import (
    DecodeError,
    DiffHunkComplete,
    Done,
    StreamDecoder,
    TextDelta,
    ToolCallBlockComplete,
    coalesce,
)

TOOL_JSON = '{"tool_call": {"server": "fs", "name": "read", "input": {"path": "a.txt"}}}'

STREAM = (
    "Café ✓, reading the file first.\n"
    "```json\n"
    f"{TOOL_JSON}\n"
    "```\n"
    "Here is an example:\n"
    "```python\n"
    "print('```not a fence')\n"
    "```\n"
    "And the fix:\n"
    "```diff\n"
    "--- a/src/app.py\n"
    "+++ b/src/app.py\n"
    "@@ -1,3 +1,3 @@\n"
    " import os\n"
    "-x = 1\n"
    "+x = 2\n"
    " print(x)\n"
    "@@ -10,2 +10,3 @@\n"
    " def main():\n"
    "+    run()\n"
    "     pass\n"
    "```\n"
    "```\n"
    "plain untyped block\n"
    "```\n"
    "Done 🎉"
).encode()


def decode(chunks: list[bytes]) -> list:
    decoder = StreamDecoder()
    events = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.close())
    return events


def split_at(data: bytes, cuts: list[int]) -> list[bytes]:
    bounds = [0, *sorted(cuts), len(data)]
    return [data[a:b] for a, b in zip(bounds, bounds[1:], strict=False)]


class TestChunkIndependence:
    def test_byte_at_a_time_matches_single_feed(self):
        whole = coalesce(decode([STREAM]))
        bytewise = coalesce(decode([STREAM[i : i + 1] for i in range(len(STREAM))]))
        assert bytewise == whole

    @pytest.mark.parametrize("seed", range(20))
    def test_random_chunkings_match_single_feed(self, seed: int):
        rng = random.Random(seed)
        cuts = rng.sample(range(1, len(STREAM)), rng.randint(1, 40))
        assert coalesce(decode(split_at(STREAM, cuts))) == coalesce(decode([STREAM]))

    def test_event_order_follows_closing_fences(self):
        events = coalesce(decode([STREAM]))
        kinds = [type(e) for e in events]
        assert kinds == [
            TextDelta,
            ToolCallBlockComplete,
            TextDelta,
            DiffHunkComplete,
            DiffHunkComplete,
            TextDelta,
            Done,
        ]

    def test_prose_and_passthrough_text_survive(self):
        events = coalesce(decode([STREAM]))
        text = "".join(e.text for e in events if isinstance(e, TextDelta))
        assert text.startswith("Café ✓")
        assert "```python\nprint('```not a fence')\n```\n" in text
        assert "```\nplain untyped block\n```\n" in text
        assert text.endswith("Done 🎉")


class TestProse:
    def test_prose_is_emitted_immediately(self):
        decoder = StreamDecoder()
        assert decoder.feed(b"Hello wor") == [TextDelta("Hello wor")]
        assert decoder.feed(b"ld\n") == [TextDelta("ld\n")]

    def test_possible_fence_prefix_is_held_back(self):
        decoder = StreamDecoder()
        assert decoder.feed(b"`") == []
        assert decoder.feed(b"`x is code\n") == [TextDelta("``x is code\n")]

    def test_multibyte_sequence_split_across_feeds(self):
        decoder = StreamDecoder()
        events = decoder.feed(b"caf\xc3")
        events += decoder.feed(b"\xa9\n")
        assert "".join(e.text for e in events) == "café\n"

    def test_raw_text_records_everything(self):
        decoder = StreamDecoder()
        decoder.feed(STREAM[:50])
        decoder.feed(STREAM[50:])
        decoder.close()
        assert decoder.raw_text == STREAM.decode()

    def test_trailing_partial_line_flushed_on_close(self):
        decoder = StreamDecoder()
        assert decoder.feed(b"``") == []
        assert decoder.close() == [TextDelta("``"), Done()]


class TestBlocks:
    def test_tool_call_block(self):
        events = decode([f"```json\n{TOOL_JSON}\n```\n".encode()])
        assert events == [ToolCallBlockComplete(raw_json=TOOL_JSON + "\n", line=1), Done()]

    def test_no_event_before_closing_fence(self):
        decoder = StreamDecoder()
        assert decoder.feed(f"```json\n{TOOL_JSON}\n".encode()) == []
        assert isinstance(decoder.feed(b"```\n")[0], ToolCallBlockComplete)

    def test_untyped_block_with_json_is_a_tool_call(self):
        events = decode([f"```\n{TOOL_JSON}\n```\n".encode()])
        assert isinstance(events[0], ToolCallBlockComplete)

    def test_untyped_block_with_diff_is_a_diff(self):
        body = "--- a/x.txt\n+++ b/x.txt\n@@ -1 +1 @@\n-a\n+b\n"
        events = decode([f"```\n{body}```\n".encode()])
        assert isinstance(events[0], DiffHunkComplete)
        assert events[0].hunk.file_path == "x.txt"

    def test_begin_end_patch_markers(self):
        body = "*** Begin Patch\n--- a/x.txt\n+++ b/x.txt\n@@ -1 +1 @@\n-a\n+b\n*** End Patch\n"
        events = decode([body.encode()])
        assert [type(e) for e in events] == [DiffHunkComplete, Done]
        assert events[0].hunk.new_content == ("b",)

    def test_crlf_fences(self):
        events = decode([f"```json\r\n{TOOL_JSON}\r\n```\r\n".encode()])
        assert isinstance(events[0], ToolCallBlockComplete)

    def test_indented_fence_up_to_three_spaces(self):
        events = decode([f"   ```json\n{TOOL_JSON}\n   ```\n".encode()])
        assert isinstance(events[0], ToolCallBlockComplete)

    def test_closing_fence_without_newline_at_end_of_stream(self):
        events = decode([f"```json\n{TOOL_JSON}\n```".encode()])
        assert isinstance(events[0], ToolCallBlockComplete)
        assert isinstance(events[-1], Done)


class TestErrors:
    def test_unterminated_block_is_scoped_error(self):
        events = decode([f"intro\n```json\n{TOOL_JSON}\n".encode()])
        assert events[0] == TextDelta("intro\n")
        assert isinstance(events[1], DecodeError)
        assert events[1].reason.startswith("unterminated tool_call block")
        assert events[1].line == 2
        assert events[-1] == Done()

    def test_invalid_diff_block_keeps_decoding(self):
        events = coalesce(decode([b"```diff\nnot a diff\n```\nafter\n"]))
        assert isinstance(events[0], DecodeError)
        assert events[1] == TextDelta("after\n")

    def test_unterminated_code_block_is_just_text(self):
        events = coalesce(decode([b"```python\nx = 1\n"]))
        assert events == [TextDelta("```python\nx = 1\n"), Done()]

    def test_feed_after_close_raises(self):
        decoder = StreamDecoder()
        decoder.close()
        with pytest.raises(RuntimeError):
            decoder.feed(b"x")

    def test_reset_makes_decoder_reusable(self):
        decoder = StreamDecoder()
        decoder.feed(b"```json\n")
        decoder.close()
        decoder.reset()
        assert decoder.feed(b"hello\n") == [TextDelta("hello\n")]
        assert decoder.raw_text == "hello\n"
