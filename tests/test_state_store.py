"""Tests for the observable state store and the snapshot types."""

from __future__ import annotations

import gc
import logging

from llmdesk.chat.message_model import ModelItem, SegmentBlock, TextBlock, UserItem
from llmdesk.state.llm_state import (
    LlmState,
    LocalModel,
    RemoteModel,
    RemoteModelFile,
)
from llmdesk.state.store import StateStore


def test_set_notifies_each_listener_once():
    store = StateStore(0)
    calls: list[int] = []

    def listener() -> None:
        calls.append(store.get())

    store.add_listener(listener)
    store.add_listener(listener)
    store.set(5)

    assert calls == [5]
    assert store.listener_count() == 1


def test_update_builds_from_current_value():
    store = StateStore(1)

    result = store.update(lambda value: value + 1)

    assert result == 2
    assert store.get() == 2


def test_removed_listener_is_not_called():
    store = StateStore("a")
    calls: list[str] = []

    def listener() -> None:
        calls.append(store.get())

    store.add_listener(listener)
    store.remove_listener(listener)
    store.remove_listener(listener)
    store.set("b")

    assert calls == []


def test_failing_listener_does_not_block_others(caplog):
    store = StateStore(0)
    calls: list[str] = []

    def broken() -> None:
        raise RuntimeError("boom")

    store.add_listener(broken)
    store.add_listener(lambda: calls.append("ok"))

    with caplog.at_level(logging.ERROR):
        store.set(1)

    assert calls == ["ok"]
    assert "raised" in caplog.text


def test_bound_method_listeners_are_held_weakly():
    store = StateStore(0)

    class Subscriber:
        def __init__(self) -> None:
            self.seen: list[int] = []

        def on_change(self) -> None:
            self.seen.append(store.get())

    subscriber = Subscriber()
    store.add_listener(subscriber.on_change)
    store.set(1)
    assert subscriber.seen == [1]

    del subscriber
    gc.collect()
    store.set(2)

    assert store.listener_count() == 0


def test_snapshot_round_trips_through_wire_dict():
    state = LlmState(app_version="1.0").with_chat_session(
        loaded=True,
        transcript=(
            UserItem("hi"),
            ModelItem(
                blocks=(
                    SegmentBlock("thought", "greet back", start_time="t0", end_time="t1"),
                    TextBlock("Hello"),
                )
            ),
        ),
    )
    state = state.with_draft_prompt(prompt="how", completion=" are you")
    state = state.with_available_models(
        local=(LocalModel(id="a.gguf", name="A", path="/m/a.gguf", size=3, last_modified="2024-01-01"),),
        remote=(
            RemoteModel(
                id="org/repo",
                name="org/repo",
                author="org",
                tags=("gguf",),
                files=(RemoteModelFile(filename="x.gguf", size=1, download_url="https://x"),),
            ),
        ),
    )

    payload = state.to_dict()

    assert payload["chat_session"]["transcript"][1]["blocks"][0]["type"] == "segment"
    assert LlmState.from_dict(payload) == state


def test_from_dict_fills_missing_sections_with_defaults():
    assert LlmState.from_dict({}) == LlmState()


def test_model_item_text_ignores_segments():
    item = ModelItem(blocks=(SegmentBlock("thought", "hidden"), TextBlock("shown")))

    assert item.text == "shown"
