"""Small JSON persistence helpers."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)

__all__ = ["read_json", "write_json_atomic"]


def write_json_atomic(path: Path, payload: Any, *, indent: int = 2) -> Path:
    """Write ``payload`` as JSON through a temp file so readers never see a torn file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=indent), encoding="utf-8")
    tmp_path.replace(path)
    return path


def read_json(path: Path) -> Any:
    """Return the decoded JSON at ``path``.

    Raises ``FileNotFoundError`` or ``json.JSONDecodeError`` so callers can
    decide how to fall back.
    """

    return json.loads(path.read_text(encoding="utf-8"))
