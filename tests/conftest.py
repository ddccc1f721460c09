"""Shared pytest fixtures."""

from __future__ import annotations

import os

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import pytest

from helpers import FakeEngine

from llmdesk.chat.session import ChatSessionEngine
from llmdesk.services.lifecycle import ResourceLifecycleManager
from llmdesk.services.locks import NamedLocks
from llmdesk.services.runtime import BackendServices
from llmdesk.services.settings import Settings
from llmdesk.state.llm_state import LlmState
from llmdesk.state.store import StateStore


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    """Keep logs and environment overrides out of the developer's profile."""

    monkeypatch.setenv("LLMDESK_LOG_DIR", str(tmp_path / "logs"))
    for name in (
        "LLMDESK_DEBUG",
        "LLMDESK_MODELS_DIR",
        "LLMDESK_DATA_DIR",
        "LLMDESK_SYSTEM_PROMPT",
        "LLMDESK_HF_TOKEN",
        "LLMDESK_CONTEXT_SIZE",
        "LLMDESK_TEMPERATURE",
        "LLMDESK_DEBUG_LOGGING",
        "LLMDESK_SETTINGS_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def store() -> StateStore[LlmState]:
    return StateStore(LlmState(app_version="test"))


@pytest.fixture
def locks() -> NamedLocks:
    return NamedLocks()


@pytest.fixture
def lifecycle(store, fake_engine, locks) -> ResourceLifecycleManager:
    async def _factory():
        return fake_engine

    return ResourceLifecycleManager(store, _factory, locks=locks)


@pytest.fixture
def chat(store, lifecycle) -> ChatSessionEngine:
    return ChatSessionEngine(store, lifecycle)


@pytest.fixture
def load_chain(lifecycle, chat):
    """Coroutine function running the full load cascade for ``path``."""

    async def _load(path: str = "a.gguf") -> None:
        await lifecycle.load_engine()
        await lifecycle.load_model(path)
        await lifecycle.create_context()
        await lifecycle.create_context_sequence()
        await chat.create_chat_session()

    return _load


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(models_dir=str(tmp_path / "models"), data_dir=str(tmp_path / "data"))


@pytest.fixture
def services(settings, fake_engine) -> BackendServices:
    async def _factory():
        return fake_engine

    return BackendServices(settings, engine_factory=_factory)
