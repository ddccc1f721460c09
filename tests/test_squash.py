"""Tests for the response squashing reducer."""

from __future__ import annotations

import itertools

from llmdesk.ai.engine import ResponseChunk, ResponseSegment
from llmdesk.chat.message_model import SegmentBlock, TextBlock
from llmdesk.chat.squash import chunk_to_block, response_to_blocks, squash, squash_all


def test_text_blocks_are_concatenated():
    blocks = squash_all([TextBlock("Hel"), TextBlock("lo")])

    assert blocks == (TextBlock("Hello"),)


def test_squash_does_not_mutate_its_input():
    original = [TextBlock("a")]

    result = squash(original, TextBlock("b"))

    assert original == [TextBlock("a")]
    assert result == (TextBlock("ab"),)


def test_empty_text_is_not_appended_as_a_new_block():
    assert squash((), TextBlock("")) == ()
    thought = SegmentBlock("thought", "hmm", start_time="t0", end_time="t1")
    assert squash((thought,), TextBlock("")) == (thought,)


def test_empty_text_extends_existing_text_harmlessly():
    assert squash((TextBlock("hi"),), TextBlock("")) == (TextBlock("hi"),)


def test_open_segment_absorbs_same_type_and_takes_end_time():
    blocks = squash_all(
        [
            SegmentBlock("thought", "Let me ", start_time="t0"),
            SegmentBlock("thought", "think", start_time="t0"),
            SegmentBlock("thought", "", start_time="t0", end_time="t1"),
        ]
    )

    assert blocks == (SegmentBlock("thought", "Let me think", start_time="t0", end_time="t1"),)


def test_closed_segment_starts_a_new_block():
    closed = SegmentBlock("thought", "one", start_time="t0", end_time="t1")
    second = SegmentBlock("thought", "two", start_time="t2")

    assert squash((closed,), second) == (closed, second)


def test_different_segment_types_are_not_merged():
    first = SegmentBlock("thought", "a", start_time="t0")
    second = SegmentBlock("comment", "b", start_time="t0")

    assert squash((first,), second) == (first, second)


def test_kind_change_appends():
    blocks = squash_all(
        [
            SegmentBlock("thought", "plan", start_time="t0", end_time="t1"),
            TextBlock("Answer"),
        ]
    )

    assert [type(block) for block in blocks] == [SegmentBlock, TextBlock]


def test_no_adjacent_text_or_open_same_type_segments_for_any_order():
    pieces = [
        TextBlock("a"),
        TextBlock(""),
        SegmentBlock("thought", "x", start_time="t0"),
        SegmentBlock("thought", "", start_time="t0", end_time="t1"),
    ]
    for order in itertools.product(pieces, repeat=4):
        blocks = squash_all(order)
        assert all(isinstance(block, (TextBlock, SegmentBlock)) for block in blocks)
        for left, right in zip(blocks, blocks[1:]):
            assert not (isinstance(left, TextBlock) and isinstance(right, TextBlock))
            assert not (
                isinstance(left, SegmentBlock)
                and isinstance(right, SegmentBlock)
                and left.segment_type == right.segment_type
                and left.is_open
            )
        assert TextBlock("") not in blocks


def test_chunk_to_block_maps_segment_fields():
    chunk = ResponseChunk(text="why", segment_type="thought", segment_start_time="t0")

    assert chunk_to_block(chunk) == SegmentBlock("thought", "why", start_time="t0", end_time=None)
    assert chunk_to_block(ResponseChunk(text="plain")) == TextBlock("plain")


def test_response_to_blocks_folds_history():
    response = (
        ResponseSegment("thought", "consider", start_time="t0", end_time="t1"),
        "Hel",
        "lo",
    )

    assert response_to_blocks(response) == (
        SegmentBlock("thought", "consider", start_time="t0", end_time="t1"),
        TextBlock("Hello"),
    )
