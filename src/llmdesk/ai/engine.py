"""Narrow interface the backend uses to drive a local inference engine.

The resource chain is ``InferenceEngine -> LoadedModel -> ModelContext ->
ContextSequence -> ChatSession``. Every link is :class:`Disposable`; owners
dispose children before parents, and a resource may also be disposed from
the engine side, which fires its dispose listeners.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence, Union

from .cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ChatSession",
    "CompletionEngine",
    "ContextSequence",
    "Disposable",
    "EngineFactory",
    "HistoryItem",
    "InferenceEngine",
    "LoadedModel",
    "ModelContext",
    "ModelHistoryItem",
    "ProgressCallback",
    "ResponseChunk",
    "ResponseSegment",
    "SystemHistoryItem",
    "UserHistoryItem",
]

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True, slots=True)
class ResponseChunk:
    """A piece of streamed output.

    ``segment_type`` is ``None`` for plain text. Segment chunks carry ISO-8601
    timestamps; ``segment_end_time`` is set only on the chunk closing the
    segment.
    """

    text: str
    segment_type: str | None = None
    segment_start_time: str | None = None
    segment_end_time: str | None = None


@dataclass(frozen=True, slots=True)
class ResponseSegment:
    """A closed or open segment stored in the session history."""

    segment_type: str
    text: str
    start_time: str | None = None
    end_time: str | None = None


@dataclass(frozen=True, slots=True)
class SystemHistoryItem:
    text: str


@dataclass(frozen=True, slots=True)
class UserHistoryItem:
    text: str


@dataclass(frozen=True, slots=True)
class ModelHistoryItem:
    response: tuple[Union[str, ResponseSegment], ...] = ()


HistoryItem = Union[SystemHistoryItem, UserHistoryItem, ModelHistoryItem]


class Disposable:
    """Resource with an idempotent ``dispose`` and dispose listeners."""

    def __init__(self) -> None:
        self._disposed = False
        self._dispose_listeners: list[Callable[[], None]] = []

    @property
    def disposed(self) -> bool:
        return self._disposed

    def on_dispose(self, listener: Callable[[], None]) -> None:
        self._dispose_listeners.append(listener)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        try:
            self._release()
        finally:
            listeners = list(self._dispose_listeners)
            self._dispose_listeners.clear()
            for listener in listeners:
                try:
                    listener()
                except Exception:
                    LOGGER.exception("Dispose listener failed for %s", type(self).__name__)

    def _release(self) -> None:
        """Free underlying handles; subclasses override."""


class CompletionEngine(Disposable, ABC):
    """Suggests how the user's draft might continue."""

    @abstractmethod
    def complete(self, text: str) -> str | None:
        """Return a cached or cheap suggestion for ``text`` without blocking.

        Implementations may compute a better suggestion in the background and
        report it through the ``on_generation`` callback they were built with,
        which must be invoked on the event loop thread.
        """


class ChatSession(Disposable, ABC):
    """Stateful conversation bound to one context sequence."""

    @property
    @abstractmethod
    def history(self) -> Sequence[HistoryItem]:
        """Committed history; the turn being generated appears once the prompt returns."""

    @abstractmethod
    async def prompt(
        self,
        message: str,
        *,
        cancellation: CancellationToken | None = None,
        on_chunk: Callable[[ResponseChunk], None] | None = None,
    ) -> str:
        """Generate a response to ``message``.

        When ``cancellation`` fires during generation, output stops at the
        next chunk boundary, the partial response is committed to history and
        the call returns normally. If it fires before generation starts the
        call raises ``cancellation.reason``.
        """

    @abstractmethod
    async def preload_prompt(self, text: str) -> None:
        """Evaluate ``text`` ahead of time so the next prompt starts faster."""

    @abstractmethod
    def create_completion_engine(
        self, on_generation: Callable[[str, str], None] | None = None
    ) -> CompletionEngine:
        """Return a draft completion engine sharing this session's sequence."""


class ContextSequence(Disposable, ABC):
    @abstractmethod
    def create_chat_session(self, *, system_prompt: str | None = None) -> ChatSession:
        """Create a session; disposing it must leave this sequence alive."""


class ModelContext(Disposable, ABC):
    @abstractmethod
    def get_sequence(self) -> ContextSequence:
        """Allocate an evaluation sequence."""


class LoadedModel(Disposable, ABC):
    @abstractmethod
    async def create_context(self) -> ModelContext:
        """Allocate an inference context for this model."""


class InferenceEngine(Disposable, ABC):
    @abstractmethod
    async def load_model(
        self, path: str, *, on_progress: ProgressCallback | None = None
    ) -> LoadedModel:
        """Load the model file at ``path``.

        ``on_progress`` receives fractions in ``[0, 1]`` on the event loop thread.
        """


EngineFactory = Callable[[], Awaitable[InferenceEngine]]
