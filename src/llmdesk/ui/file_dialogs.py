"""Native file pickers used by ``select_model_file_and_load``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)

__all__ = ["QtModelFilePicker"]

MODEL_FILE_FILTER = "GGUF models (*.gguf);;All files (*)"


class QtModelFilePicker:
    """Shows a ``QFileDialog`` parented to the main window."""

    def __init__(self, parent: Any | None = None) -> None:
        self._parent = parent

    def attach(self, parent: Any) -> None:
        self._parent = parent

    async def pick_model_file(self, initial_dir: Path) -> Path | None:
        from PySide6.QtWidgets import QFileDialog

        path, _ = QFileDialog.getOpenFileName(
            self._parent,
            "Select a model file",
            str(initial_dir),
            MODEL_FILE_FILTER,
        )
        if not path:
            return None
        LOGGER.debug("Model file selected: %s", path)
        return Path(path)
