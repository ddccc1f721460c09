"""Splits streamed text into plain chunks and ``thought`` segment chunks.

Reasoning models wrap their chain of thought in ``<think>...</think>``. The
parser turns that markup into :class:`ResponseChunk` objects carrying a
``segment_type`` and ISO-8601 start/end times. Tags may arrive split across
any number of stream chunks.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from .engine import ResponseChunk

__all__ = ["THOUGHT_SEGMENT", "ThoughtSegmentParser"]

THOUGHT_SEGMENT = "thought"
_OPEN_TAG = "<think>"
_CLOSE_TAG = "</think>"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ThoughtSegmentParser:
    def __init__(self, *, clock: Callable[[], str] = _utcnow_iso) -> None:
        self._clock = clock
        self._buffer = ""
        self._segment_start: str | None = None

    @property
    def in_segment(self) -> bool:
        return self._segment_start is not None

    def feed(self, text: str) -> list[ResponseChunk]:
        self._buffer += text
        chunks: list[ResponseChunk] = []
        while self._buffer:
            tag = _CLOSE_TAG if self.in_segment else _OPEN_TAG
            index = self._buffer.find(tag)
            if index >= 0:
                self._emit(self._buffer[:index], chunks)
                self._buffer = self._buffer[index + len(tag) :]
                if self.in_segment:
                    self._close(chunks)
                else:
                    self._segment_start = self._clock()
                continue
            keep = _partial_tag_length(self._buffer, tag)
            self._emit(self._buffer[: len(self._buffer) - keep], chunks)
            self._buffer = self._buffer[len(self._buffer) - keep :]
            break
        return chunks

    def flush(self) -> list[ResponseChunk]:
        """Emit buffered text and close a segment left open by the model."""

        chunks: list[ResponseChunk] = []
        self._emit(self._buffer, chunks)
        self._buffer = ""
        if self.in_segment:
            self._close(chunks)
        return chunks

    def _emit(self, text: str, chunks: list[ResponseChunk]) -> None:
        if not text:
            return
        if self._segment_start is None:
            chunks.append(ResponseChunk(text=text))
        else:
            chunks.append(
                ResponseChunk(
                    text=text,
                    segment_type=THOUGHT_SEGMENT,
                    segment_start_time=self._segment_start,
                )
            )

    def _close(self, chunks: list[ResponseChunk]) -> None:
        chunks.append(
            ResponseChunk(
                text="",
                segment_type=THOUGHT_SEGMENT,
                segment_start_time=self._segment_start,
                segment_end_time=self._clock(),
            )
        )
        self._segment_start = None


def _partial_tag_length(buffer: str, tag: str) -> int:
    """Length of the longest suffix of ``buffer`` that is a proper prefix of ``tag``."""

    for length in range(min(len(tag) - 1, len(buffer)), 0, -1):
        if buffer.endswith(tag[:length]):
            return length
    return 0
