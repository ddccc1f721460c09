"""Reducer that folds streamed response chunks into a compact block list."""

from __future__ import annotations

from typing import Iterable, Sequence, Union

from ..ai.engine import ResponseChunk, ResponseSegment
from .message_model import Block, SegmentBlock, TextBlock

__all__ = ["chunk_to_block", "response_to_blocks", "squash", "squash_all"]


def squash(blocks: Sequence[Block], block: Block) -> tuple[Block, ...]:
    """Return ``blocks`` with ``block`` appended or merged into the last entry.

    The input sequence is never modified. Adjacent text blocks are merged, an
    open segment absorbs a following segment of the same type (taking its
    ``end_time``), and an empty text block is dropped instead of starting a
    new entry.
    """

    existing = tuple(blocks)
    last = existing[-1] if existing else None

    if last is None or type(last) is not type(block):
        if isinstance(block, TextBlock) and block.text == "":
            return existing
        return existing + (block,)

    if isinstance(last, TextBlock) and isinstance(block, TextBlock):
        return existing[:-1] + (TextBlock(text=last.text + block.text),)

    if (
        isinstance(last, SegmentBlock)
        and isinstance(block, SegmentBlock)
        and last.segment_type == block.segment_type
        and last.is_open
    ):
        merged = SegmentBlock(
            segment_type=last.segment_type,
            text=last.text + block.text,
            start_time=last.start_time,
            end_time=block.end_time,
        )
        return existing[:-1] + (merged,)

    return existing + (block,)


def squash_all(blocks: Iterable[Block], initial: Sequence[Block] = ()) -> tuple[Block, ...]:
    """Fold every block in ``blocks`` through :func:`squash`."""

    result = tuple(initial)
    for block in blocks:
        result = squash(result, block)
    return result


def chunk_to_block(chunk: ResponseChunk) -> Block:
    if chunk.segment_type is None:
        return TextBlock(text=chunk.text)
    return SegmentBlock(
        segment_type=chunk.segment_type,
        text=chunk.text,
        start_time=chunk.segment_start_time,
        end_time=chunk.segment_end_time,
    )


def response_to_blocks(response: Iterable[Union[str, ResponseSegment]]) -> tuple[Block, ...]:
    """Convert a committed history response into squashed blocks."""

    blocks: list[Block] = []
    for part in response:
        if isinstance(part, str):
            blocks.append(TextBlock(text=part))
        else:
            blocks.append(
                SegmentBlock(
                    segment_type=part.segment_type,
                    text=part.text,
                    start_time=part.start_time,
                    end_time=part.end_time,
                )
            )
    return squash_all(blocks)
