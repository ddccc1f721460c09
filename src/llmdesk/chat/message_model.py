"""Transcript data models shared by the chat engine and the frontend mirror."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union


@dataclass(frozen=True, slots=True)
class TextBlock:
    """Plain model output."""

    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True, slots=True)
class SegmentBlock:
    """Typed span of model output, e.g. a ``thought`` section.

    ``end_time`` stays ``None`` while the segment is still open; consecutive
    chunks of the same open segment are merged by the squash reducer.
    """

    segment_type: str
    text: str
    start_time: str | None = None
    end_time: str | None = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "segment",
            "segment_type": self.segment_type,
            "text": self.text,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }


Block = Union[TextBlock, SegmentBlock]


@dataclass(frozen=True, slots=True)
class UserItem:
    """A user turn as shown in the transcript."""

    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "user", "message": self.message}


@dataclass(frozen=True, slots=True)
class ModelItem:
    """A model turn composed of squashed blocks."""

    blocks: tuple[Block, ...] = ()

    @property
    def text(self) -> str:
        """Concatenated plain text, ignoring segments."""

        return "".join(block.text for block in self.blocks if isinstance(block, TextBlock))

    def to_dict(self) -> dict[str, Any]:
        return {"type": "model", "blocks": [block.to_dict() for block in self.blocks]}


ChatItem = Union[UserItem, ModelItem]


def block_from_dict(payload: Mapping[str, Any]) -> Block:
    kind = payload.get("type")
    if kind == "text":
        return TextBlock(text=str(payload.get("text", "")))
    if kind == "segment":
        return SegmentBlock(
            segment_type=str(payload.get("segment_type", "")),
            text=str(payload.get("text", "")),
            start_time=payload.get("start_time"),
            end_time=payload.get("end_time"),
        )
    raise ValueError(f"Unknown block type: {kind!r}")


def chat_item_from_dict(payload: Mapping[str, Any]) -> ChatItem:
    kind = payload.get("type")
    if kind == "user":
        return UserItem(message=str(payload.get("message", "")))
    if kind == "model":
        blocks = payload.get("blocks") or ()
        return ModelItem(blocks=tuple(block_from_dict(block) for block in blocks))
    raise ValueError(f"Unknown chat item type: {kind!r}")


__all__ = [
    "Block",
    "ChatItem",
    "ModelItem",
    "SegmentBlock",
    "TextBlock",
    "UserItem",
    "block_from_dict",
    "chat_item_from_dict",
]
