"""HTML rendering of the transcript and status line for the chat window."""

from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Optional

from markdown_it import MarkdownIt

from ..chat.message_model import ModelItem, SegmentBlock, TextBlock, UserItem
from ..state.llm_state import LlmState

__all__ = ["render_markdown", "render_status", "render_transcript_html"]

_MARKDOWN_RENDERER: Optional[MarkdownIt] = None


def _build_renderer() -> MarkdownIt:
    global _MARKDOWN_RENDERER
    if _MARKDOWN_RENDERER is None:
        renderer = MarkdownIt(
            "commonmark",
            {"html": False, "linkify": True, "typographer": True},
        )
        renderer.enable("table")
        renderer.enable("strikethrough")
        _MARKDOWN_RENDERER = renderer
    return _MARKDOWN_RENDERER


def render_markdown(text: str) -> str:
    """Render model output as HTML; raw HTML in the text is escaped."""

    return _build_renderer().render(text)


def _paragraphs(text: str) -> str:
    return escape(text).replace("\n", "<br/>")


def _thought_duration(block: SegmentBlock) -> str:
    if not block.start_time or not block.end_time:
        return "Thinking..."
    try:
        started = datetime.fromisoformat(block.start_time)
        ended = datetime.fromisoformat(block.end_time)
    except ValueError:
        return "Thought"
    seconds = max((ended - started).total_seconds(), 0.0)
    return f"Thought for {seconds:.1f}s"


def render_transcript_html(state: LlmState) -> str:
    parts: list[str] = []
    for item in state.chat_session.transcript:
        if isinstance(item, UserItem):
            parts.append(f'<div class="user"><b>You</b><p>{_paragraphs(item.message)}</p></div>')
        elif isinstance(item, ModelItem):
            body: list[str] = []
            for block in item.blocks:
                if isinstance(block, TextBlock):
                    body.append(render_markdown(block.text))
                elif isinstance(block, SegmentBlock):
                    label = escape(_thought_duration(block))
                    body.append(
                        f'<div class="segment" style="color:#777;font-style:italic">'
                        f"<small>{label}</small>{render_markdown(block.text)}</div>"
                    )
            parts.append(f'<div class="model"><b>Assistant</b>{"".join(body)}</div>')
    if state.chat_session.generating_result:
        parts.append('<div class="pending"><i>Generating...</i></div>')
    return "\n".join(parts)


def render_status(state: LlmState) -> str:
    """One-line summary of the resource chain for the status bar."""

    download = state.model_download
    if download.downloading:
        percent = int((download.progress or 0.0) * 100)
        speed = f" at {download.speed}" if download.speed else ""
        return f"Downloading {download.name or 'model'}: {percent}%{speed}"
    if download.error:
        return f"Download failed: {download.error}"
    if state.engine.error:
        return f"Engine error: {state.engine.error}"
    if state.model.error:
        return f"Model error: {state.model.error}"
    if state.context.error:
        return f"Context error: {state.context.error}"
    if state.context_sequence.error:
        return f"Context sequence error: {state.context_sequence.error}"
    if state.model.loaded and state.chat_session.loaded:
        return f"Ready: {state.model.name or 'model'}"
    if state.selected_model_file_path and not state.model.loaded:
        percent = int((state.model.load_progress or 0.0) * 100)
        return f"Loading model... {percent}%"
    if state.model.loaded:
        return f"Preparing {state.model.name or 'model'}..."
    return "No model loaded"
