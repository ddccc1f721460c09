"""Persistence for the user's library of reusable system prompts."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

from ..utils.file_io import read_json, write_json_atomic

LOGGER = logging.getLogger(__name__)

__all__ = ["DEFAULT_PROMPTS", "PromptItem", "PromptLibrary"]

PROMPTS_FILENAME = "prompts.json"


@dataclass(frozen=True, slots=True)
class PromptItem:
    id: str
    name: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PromptItem:
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            content=str(payload.get("content", "")),
        )


DEFAULT_PROMPTS: tuple[PromptItem, ...] = (
    PromptItem(id="default", name="Default System Prompt", content="You are a helpful assistant."),
    PromptItem(
        id="code",
        name="Code Assistant",
        content="You are an expert programmer. Help with coding tasks, debugging, and best practices.",
    ),
    PromptItem(
        id="creative",
        name="Creative Writer",
        content="You are a creative writing assistant. Help with stories, poems, and creative content.",
    ),
)


class PromptLibrary:
    """Reads and replaces the ordered prompt list stored as ``prompts.json``."""

    def __init__(self, data_dir: Path) -> None:
        self._path = data_dir / PROMPTS_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[PromptItem]:
        """Return the stored prompts, writing the defaults when the file is missing or unreadable."""

        try:
            payload = read_json(self._path)
            if not isinstance(payload, list):
                raise ValueError("prompt library must be a JSON list")
            return [PromptItem.from_dict(item) for item in payload]
        except FileNotFoundError:
            LOGGER.info("No prompt library at %s; writing defaults", self._path)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            LOGGER.warning("Prompt library %s is unreadable (%s); restoring defaults", self._path, exc)
        defaults = list(DEFAULT_PROMPTS)
        self.save(defaults)
        return defaults

    def save(self, prompts: Iterable[PromptItem | Mapping[str, Any]]) -> None:
        """Replace the stored list; write failures are logged and re-raised."""

        items = [item if isinstance(item, PromptItem) else PromptItem.from_dict(item) for item in prompts]
        try:
            write_json_atomic(self._path, [item.to_dict() for item in items])
        except OSError:
            LOGGER.exception("Failed to save prompt library to %s", self._path)
            raise
        LOGGER.debug("Saved %d prompt(s) to %s", len(items), self._path)
