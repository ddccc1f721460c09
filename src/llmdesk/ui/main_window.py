"""Main chat window rendering the mirrored backend state."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional

from PySide6.QtCore import QEvent, Qt
from PySide6.QtWidgets import (
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QMainWindow,
    QPushButton,
    QStatusBar,
    QTextBrowser,
    QVBoxLayout,
    QWidget,
)

from ..rpc.frontend import FrontendRpc
from ..services.window_state import MIN_HEIGHT, MIN_WIDTH, WindowGeometry, WindowStateStore
from ..state.llm_state import LlmState
from .transcript_view import render_status, render_transcript_html

_LOGGER = logging.getLogger(__name__)

__all__ = ["MainWindow", "PromptInput"]


class PromptInput(QLineEdit):
    """Single-line prompt editor; Tab accepts the suggested completion."""

    def __init__(self, parent: Optional[QWidget] = None) -> None:
        super().__init__(parent)
        self._completion = ""

    @property
    def completion(self) -> str:
        return self._completion

    def set_completion(self, completion: str) -> None:
        self._completion = completion
        self.setToolTip(f"Tab to accept: {completion}" if completion else "")

    def accept_completion(self) -> bool:
        if not self._completion:
            return False
        self.setText(self.text() + self._completion)
        self._completion = ""
        self.setToolTip("")
        return True

    def event(self, event: QEvent) -> bool:  # noqa: D401 - Qt override
        if (
            event.type() == QEvent.Type.KeyPress
            and event.key() == Qt.Key.Key_Tab  # type: ignore[attr-defined]
            and self.accept_completion()
        ):
            return True
        return super().event(event)


class MainWindow(QMainWindow):
    """Thin view over :class:`FrontendRpc`; every action is a backend call."""

    def __init__(
        self,
        frontend: FrontendRpc,
        *,
        window_state: WindowStateStore | None = None,
    ) -> None:
        super().__init__()
        self._frontend = frontend
        self._window_state = window_state
        self._tasks: set[asyncio.Task[Any]] = set()
        self._last_state: LlmState | None = None

        self.setWindowTitle("LLMDesk")
        self.setMinimumSize(MIN_WIDTH, MIN_HEIGHT)

        self.transcript_view = QTextBrowser()
        self.transcript_view.setOpenExternalLinks(True)
        self.suggestion_label = QLabel()
        self.suggestion_label.setStyleSheet("color: #888;")
        self.prompt_input = PromptInput()
        self.prompt_input.setPlaceholderText("Type a message...")
        self.prompt_input.textEdited.connect(self._on_prompt_edited)
        self.prompt_input.returnPressed.connect(self._on_send_clicked)

        self.send_button = QPushButton("Send")
        self.stop_button = QPushButton("Stop")
        self.reset_button = QPushButton("New chat")
        self.open_button = QPushButton("Open model...")
        self.unload_button = QPushButton("Unload")
        self.send_button.clicked.connect(self._on_send_clicked)
        self.stop_button.clicked.connect(lambda: self._schedule(self._frontend.stop_active_prompt()))
        self.reset_button.clicked.connect(lambda: self._schedule(self._frontend.reset_chat_history()))
        self.open_button.clicked.connect(lambda: self._schedule(self._frontend.select_model_file_and_load()))
        self.unload_button.clicked.connect(lambda: self._schedule(self._frontend.unload_model()))

        toolbar = QHBoxLayout()
        for button in (self.open_button, self.unload_button, self.reset_button):
            toolbar.addWidget(button)
        toolbar.addStretch(1)

        input_row = QHBoxLayout()
        input_row.addWidget(self.prompt_input, 1)
        input_row.addWidget(self.send_button)
        input_row.addWidget(self.stop_button)

        layout = QVBoxLayout()
        layout.addLayout(toolbar)
        layout.addWidget(self.transcript_view, 1)
        layout.addWidget(self.suggestion_label)
        layout.addLayout(input_row)
        central = QWidget()
        central.setLayout(layout)
        self.setCentralWidget(central)
        self.setStatusBar(QStatusBar())

        self._restore_geometry()
        self._frontend.mirror.store.add_listener(self._on_state_changed)
        self.render(self._frontend.mirror.state)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def _on_state_changed(self) -> None:
        self.render(self._frontend.mirror.state)

    def render(self, state: LlmState) -> None:
        previous = self._last_state
        self._last_state = state
        session = state.chat_session

        if previous is None or previous.chat_session.transcript != session.transcript or (
            previous.chat_session.generating_result != session.generating_result
        ):
            self.transcript_view.setHtml(render_transcript_html(state))
            scrollbar = self.transcript_view.verticalScrollBar()
            scrollbar.setValue(scrollbar.maximum())

        draft = session.draft_prompt
        matches_draft = draft.prompt == self.prompt_input.text()
        completion = draft.completion if matches_draft else ""
        self.prompt_input.set_completion(completion)
        self.suggestion_label.setText(f"Suggestion: {completion}" if completion else "")

        ready = session.loaded and not session.generating_result
        self.send_button.setEnabled(ready)
        self.prompt_input.setEnabled(session.loaded)
        self.stop_button.setEnabled(session.generating_result)
        self.reset_button.setEnabled(session.loaded and not session.generating_result)
        self.unload_button.setEnabled(state.model.loaded or state.selected_model_file_path is not None)
        self.open_button.setEnabled(not state.model_download.downloading)

        title = "LLMDesk"
        if state.model.name:
            title = f"{state.model.name} - LLMDesk"
        self.setWindowTitle(title)
        self.statusBar().showMessage(render_status(state))

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def _on_prompt_edited(self, text: str) -> None:
        self.prompt_input.set_completion("")
        self.suggestion_label.setText("")
        self._schedule(self._frontend.set_draft_prompt(text))

    def _on_send_clicked(self) -> None:
        message = self.prompt_input.text().strip()
        state = self._frontend.mirror.state
        if not message or not state.chat_session.loaded or state.chat_session.generating_result:
            return
        self.prompt_input.clear()
        self._schedule(self._frontend.prompt(message))

    def _schedule(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.warning("Backend call failed: %s", exc)
            self.statusBar().showMessage(f"Error: {exc}", 5000)

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------
    def _restore_geometry(self) -> None:
        if self._window_state is None:
            self.resize(1400, 900)
            return
        geometry = self._window_state.load()
        self.resize(geometry.width, geometry.height)
        if geometry.x is not None and geometry.y is not None:
            self.move(geometry.x, geometry.y)
        if geometry.is_maximized:
            self.setWindowState(self.windowState() | Qt.WindowState.WindowMaximized)

    def current_geometry(self) -> WindowGeometry:
        maximized = self.isMaximized()
        bounds = self.normalGeometry() if maximized else self.geometry()
        return WindowGeometry(
            width=max(bounds.width(), MIN_WIDTH),
            height=max(bounds.height(), MIN_HEIGHT),
            x=bounds.x(),
            y=bounds.y(),
            is_maximized=maximized,
        )

    def save_geometry(self) -> None:
        if self._window_state is not None:
            self._window_state.save(self.current_geometry())

    def moveEvent(self, event: Any) -> None:  # noqa: N802 - Qt API
        super().moveEvent(event)
        self.save_geometry()

    def resizeEvent(self, event: Any) -> None:  # noqa: N802 - Qt API
        super().resizeEvent(event)
        self.save_geometry()

    def closeEvent(self, event: Any) -> None:  # noqa: N802 - Qt API
        self.save_geometry()
        self._frontend.mirror.store.remove_listener(self._on_state_changed)
        super().closeEvent(event)
