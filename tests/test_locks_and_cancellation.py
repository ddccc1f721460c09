"""Tests for named mutexes and cancellation tokens."""

from __future__ import annotations

import asyncio
import threading

import pytest

from llmdesk.ai.cancellation import CancellationToken
from llmdesk.errors import GenerationAbortedError
from llmdesk.services.locks import CHAT_SESSION_LOCK, MODEL_LOCK, NamedLocks


@pytest.mark.asyncio
async def test_same_name_operations_are_serialized_in_order():
    locks = NamedLocks()
    events: list[str] = []
    release_first = asyncio.Event()

    async def first() -> None:
        async with locks.hold(MODEL_LOCK):
            events.append("first-start")
            await release_first.wait()
            events.append("first-end")

    async def second() -> None:
        async with locks.hold(MODEL_LOCK):
            events.append("second")

    task_one = asyncio.create_task(first())
    await asyncio.sleep(0)
    task_two = asyncio.create_task(second())
    await asyncio.sleep(0)

    assert locks.locked(MODEL_LOCK)
    assert events == ["first-start"]

    release_first.set()
    await asyncio.gather(task_one, task_two)

    assert events == ["first-start", "first-end", "second"]
    assert not locks.locked(MODEL_LOCK)


@pytest.mark.asyncio
async def test_different_names_do_not_block_each_other():
    locks = NamedLocks()

    async with locks.hold(MODEL_LOCK):
        async with locks.hold(CHAT_SESSION_LOCK):
            assert locks.locked(MODEL_LOCK)
            assert locks.locked(CHAT_SESSION_LOCK)


@pytest.mark.asyncio
async def test_lock_is_released_when_body_raises():
    locks = NamedLocks()

    with pytest.raises(ValueError):
        async with locks.hold(MODEL_LOCK):
            raise ValueError("boom")

    assert not locks.locked(MODEL_LOCK)


def test_cancel_is_idempotent_and_keeps_first_reason():
    token = CancellationToken()
    reason = GenerationAbortedError("stop")

    assert token.cancel(reason) is True
    assert token.cancel(GenerationAbortedError("again")) is False
    assert token.cancelled
    assert token.reason is reason


def test_default_reason_is_generation_aborted():
    token = CancellationToken()
    token.cancel()

    with pytest.raises(GenerationAbortedError) as excinfo:
        token.raise_if_cancelled()

    assert excinfo.value is token.reason


def test_raise_if_cancelled_is_silent_before_cancel():
    CancellationToken().raise_if_cancelled()


def test_callbacks_run_once_and_immediately_when_late():
    token = CancellationToken()
    calls: list[str] = []
    token.add_callback(lambda: calls.append("early"))

    token.cancel()
    token.cancel()
    token.add_callback(lambda: calls.append("late"))

    assert calls == ["early", "late"]


def test_cancel_from_another_thread():
    token = CancellationToken()
    thread = threading.Thread(target=token.cancel)
    thread.start()
    thread.join()

    assert token.cancelled
