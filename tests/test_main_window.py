"""Main window behavior tests."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any

import pytest

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
pytest.importorskip("PySide6.QtWidgets")

from llmdesk.chat.message_model import ModelItem, TextBlock, UserItem  # noqa: E402
from llmdesk.rpc.frontend import FrontendStateMirror  # noqa: E402
from llmdesk.services.window_state import WindowGeometry, WindowStateStore  # noqa: E402
from llmdesk.state.llm_state import ChatSessionState, DraftPrompt, LlmState, ModelState  # noqa: E402
from llmdesk.ui.main_window import MainWindow  # noqa: E402


def _ensure_qapp() -> None:
    qt_widgets = pytest.importorskip("PySide6.QtWidgets")
    app = qt_widgets.QApplication.instance()
    if app is None:  # pragma: no cover - depends on PySide6 availability
        qt_widgets.QApplication([])


class _FakeFrontend:
    def __init__(self) -> None:
        self.mirror = FrontendStateMirror()
        self.calls: list[tuple[str, Any]] = []
        self.fail_with: Exception | None = None

    async def _record(self, name: str, value: Any = None) -> None:
        self.calls.append((name, value))
        if self.fail_with is not None:
            raise self.fail_with

    def prompt(self, message: str):
        return self._record("prompt", message)

    def set_draft_prompt(self, text: str):
        return self._record("set_draft_prompt", text)

    def stop_active_prompt(self):
        return self._record("stop_active_prompt")

    def reset_chat_history(self):
        return self._record("reset_chat_history")

    def select_model_file_and_load(self):
        return self._record("select_model_file_and_load")

    def unload_model(self):
        return self._record("unload_model")


def _ready_state(**session: Any) -> LlmState:
    return LlmState(
        selected_model_file_path="/m/a.gguf",
        model=ModelState(loaded=True, load_progress=1.0, name="Phi 2"),
        chat_session=ChatSessionState(loaded=True, **session),
    )


def _make_window(tmp_path: Path, frontend: _FakeFrontend | None = None) -> tuple[MainWindow, _FakeFrontend]:
    _ensure_qapp()
    frontend = frontend or _FakeFrontend()
    window = MainWindow(frontend, window_state=WindowStateStore(tmp_path))  # type: ignore[arg-type]
    return window, frontend


def test_initial_render_without_model(tmp_path: Path) -> None:
    window, _ = _make_window(tmp_path)

    assert window.windowTitle() == "LLMDesk"
    assert window.statusBar().currentMessage() == "No model loaded"
    assert not window.send_button.isEnabled()
    assert not window.stop_button.isEnabled()
    assert not window.prompt_input.isEnabled()


def test_snapshots_from_the_mirror_are_rendered(tmp_path: Path) -> None:
    window, frontend = _make_window(tmp_path)

    transcript = (UserItem("hi"), ModelItem(blocks=(TextBlock("Hello there"),)))
    frontend.mirror.update_state(_ready_state(transcript=transcript).to_dict())

    text = window.transcript_view.toPlainText()
    assert "hi" in text and "Hello there" in text
    assert window.windowTitle() == "Phi 2 - LLMDesk"
    assert window.statusBar().currentMessage() == "Ready: Phi 2"
    assert window.send_button.isEnabled()
    assert not window.stop_button.isEnabled()

    frontend.mirror.update_state(_ready_state(transcript=transcript, generating_result=True).to_dict())

    assert not window.send_button.isEnabled()
    assert window.stop_button.isEnabled()
    assert not window.reset_button.isEnabled()
    assert "Generating..." in window.transcript_view.toPlainText()


def test_completion_only_shown_for_matching_draft(tmp_path: Path) -> None:
    window, frontend = _make_window(tmp_path)
    window.prompt_input.setText("Hel")

    frontend.mirror.update_state(_ready_state(draft_prompt=DraftPrompt("He", "llo")).to_dict())
    assert window.prompt_input.completion == ""
    assert window.suggestion_label.text() == ""

    frontend.mirror.update_state(_ready_state(draft_prompt=DraftPrompt("Hel", "lo")).to_dict())
    assert window.prompt_input.completion == "lo"
    assert window.suggestion_label.text() == "Suggestion: lo"

    assert window.prompt_input.accept_completion() is True
    assert window.prompt_input.text() == "Hello"
    assert window.prompt_input.accept_completion() is False


@pytest.mark.asyncio
async def test_send_forwards_prompt_and_clears_input(tmp_path: Path) -> None:
    window, frontend = _make_window(tmp_path)
    window.prompt_input.setText("  hi  ")
    window.send_button.click()
    await asyncio.sleep(0)
    assert frontend.calls == []

    frontend.mirror.update_state(_ready_state().to_dict())
    window.prompt_input.setText("  hi  ")
    window.send_button.click()
    await asyncio.sleep(0)

    assert frontend.calls == [("prompt", "hi")]
    assert window.prompt_input.text() == ""


@pytest.mark.asyncio
async def test_edits_and_buttons_call_the_backend(tmp_path: Path) -> None:
    window, frontend = _make_window(tmp_path)
    frontend.mirror.update_state(_ready_state(generating_result=True).to_dict())

    window.prompt_input.textEdited.emit("dra")
    window.stop_button.click()
    window.unload_button.click()
    window.open_button.click()
    await asyncio.sleep(0)

    assert frontend.calls == [
        ("set_draft_prompt", "dra"),
        ("stop_active_prompt", None),
        ("unload_model", None),
        ("select_model_file_and_load", None),
    ]


@pytest.mark.asyncio
async def test_failed_backend_call_is_shown_in_status_bar(tmp_path: Path) -> None:
    window, frontend = _make_window(tmp_path)
    frontend.fail_with = RuntimeError("backend gone")

    window.open_button.click()
    for _ in range(3):
        await asyncio.sleep(0)

    assert window.statusBar().currentMessage() == "Error: backend gone"


def test_geometry_is_restored_and_saved(tmp_path: Path) -> None:
    store = WindowStateStore(tmp_path)
    store.save(WindowGeometry(width=1500, height=950, x=40, y=30))

    window, _ = _make_window(tmp_path)
    assert (window.width(), window.height()) == (1500, 950)

    window.resize(1650, 1000)
    window.save_geometry()

    saved = store.load()
    assert (saved.width, saved.height) == (1650, 1000)
    assert saved.is_maximized is False
