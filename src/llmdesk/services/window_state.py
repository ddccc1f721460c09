"""Main window geometry persisted between launches."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from ..utils.file_io import read_json, write_json_atomic

LOGGER = logging.getLogger(__name__)

__all__ = ["MIN_HEIGHT", "MIN_WIDTH", "WindowGeometry", "WindowStateStore"]

WINDOW_STATE_FILENAME = "window-state.json"
MIN_WIDTH = 1200
MIN_HEIGHT = 800


@dataclass(frozen=True, slots=True)
class WindowGeometry:
    width: int = 1400
    height: int = 900
    x: int | None = None
    y: int | None = None
    is_maximized: bool = False


class WindowStateStore:
    def __init__(self, data_dir: Path) -> None:
        self._path = data_dir / WINDOW_STATE_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> WindowGeometry:
        try:
            payload = read_json(self._path)
        except FileNotFoundError:
            return WindowGeometry()
        except (json.JSONDecodeError, OSError) as exc:
            LOGGER.warning("Window state %s is unreadable: %s", self._path, exc)
            return WindowGeometry()
        if not isinstance(payload, dict):
            return WindowGeometry()
        return _coerce(payload)

    def save(self, geometry: WindowGeometry) -> None:
        try:
            write_json_atomic(self._path, asdict(geometry))
        except OSError as exc:
            LOGGER.warning("Failed to save window state to %s: %s", self._path, exc)


def _coerce(payload: dict[str, Any]) -> WindowGeometry:
    geometry = WindowGeometry()
    try:
        geometry = replace(
            geometry,
            width=max(int(payload.get("width", geometry.width)), MIN_WIDTH),
            height=max(int(payload.get("height", geometry.height)), MIN_HEIGHT),
            x=_optional_int(payload.get("x")),
            y=_optional_int(payload.get("y")),
            is_maximized=bool(payload.get("is_maximized", False)),
        )
    except (TypeError, ValueError) as exc:
        LOGGER.warning("Ignoring malformed window state: %s", exc)
    return geometry


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)
