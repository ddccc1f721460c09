"""Shared fakes for the inference engine chain.

The fakes implement the abstract engine interfaces without touching a real
model. Generation is driven by a :class:`FakeScript` shared by every session
the engine creates, so a test can decide what the next prompt streams, make
it fail, or hold it at a gate until the test releases it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Sequence

from llmdesk.ai.cancellation import CancellationToken
from llmdesk.ai.engine import (
    ChatSession,
    CompletionEngine,
    ContextSequence,
    HistoryItem,
    InferenceEngine,
    LoadedModel,
    ModelContext,
    ModelHistoryItem,
    ResponseChunk,
    ResponseSegment,
    SystemHistoryItem,
    UserHistoryItem,
)


@dataclass
class FakeScript:
    chunks: list[ResponseChunk] = field(default_factory=list)
    error: BaseException | None = None
    gate: asyncio.Event | None = None
    started: asyncio.Event = field(default_factory=asyncio.Event)
    suggestions: dict[str, str] = field(default_factory=dict)


class FakeCompletionEngine(CompletionEngine):
    def __init__(self, engine: "FakeEngine", on_generation: Callable[[str, str], None] | None) -> None:
        super().__init__()
        self._engine = engine
        self.on_generation = on_generation
        self.requests: list[str] = []

    def complete(self, text: str) -> str | None:
        self.requests.append(text)
        return self._engine.script.suggestions.get(text)


class FakeChatSession(ChatSession):
    def __init__(self, engine: "FakeEngine", system_prompt: str | None) -> None:
        super().__init__()
        self._engine = engine
        self.system_prompt = system_prompt
        self._history: list[HistoryItem] = []
        if system_prompt:
            self._history.append(SystemHistoryItem(text=system_prompt))
        self.preloaded: list[str] = []
        self.completions: list[FakeCompletionEngine] = []

    @property
    def history(self) -> Sequence[HistoryItem]:
        return tuple(self._history)

    async def prompt(
        self,
        message: str,
        *,
        cancellation: CancellationToken | None = None,
        on_chunk: Callable[[ResponseChunk], None] | None = None,
    ) -> str:
        script = self._engine.script
        token = cancellation or CancellationToken()
        token.raise_if_cancelled()
        script.started.set()
        if script.error is not None:
            raise script.error

        produced: list[ResponseChunk] = []
        for chunk in script.chunks:
            if script.gate is not None:
                await script.gate.wait()
            else:
                await asyncio.sleep(0)
            if token.cancelled:
                break
            produced.append(chunk)
            if on_chunk is not None:
                on_chunk(chunk)

        response: list[str | ResponseSegment] = []
        for chunk in produced:
            if chunk.segment_type is None:
                response.append(chunk.text)
            else:
                response.append(
                    ResponseSegment(
                        segment_type=chunk.segment_type,
                        text=chunk.text,
                        start_time=chunk.segment_start_time,
                        end_time=chunk.segment_end_time,
                    )
                )
        self._history.append(UserHistoryItem(text=message))
        self._history.append(ModelHistoryItem(response=tuple(response)))
        return "".join(chunk.text for chunk in produced if chunk.segment_type is None)

    async def preload_prompt(self, text: str) -> None:
        self.preloaded.append(text)

    def create_completion_engine(
        self, on_generation: Callable[[str, str], None] | None = None
    ) -> CompletionEngine:
        completion = FakeCompletionEngine(self._engine, on_generation)
        self.completions.append(completion)
        return completion


class FakeSequence(ContextSequence):
    def __init__(self, engine: "FakeEngine") -> None:
        super().__init__()
        self._engine = engine
        self.sessions: list[FakeChatSession] = []

    def create_chat_session(self, *, system_prompt: str | None = None) -> ChatSession:
        if self._engine.fail_session is not None:
            raise self._engine.fail_session
        session = FakeChatSession(self._engine, system_prompt)
        self.sessions.append(session)
        return session


class FakeContext(ModelContext):
    def __init__(self, engine: "FakeEngine") -> None:
        super().__init__()
        self._engine = engine
        self.sequences: list[FakeSequence] = []

    def get_sequence(self) -> ContextSequence:
        if self._engine.fail_sequence is not None:
            raise self._engine.fail_sequence
        sequence = FakeSequence(self._engine)
        self.sequences.append(sequence)
        return sequence


class FakeModel(LoadedModel):
    def __init__(self, engine: "FakeEngine", path: str) -> None:
        super().__init__()
        self._engine = engine
        self.path = path
        self.contexts: list[FakeContext] = []

    async def create_context(self) -> ModelContext:
        self._engine.context_requests += 1
        if self._engine.context_gate is not None:
            await self._engine.context_gate.wait()
        if self._engine.fail_context is not None:
            raise self._engine.fail_context
        context = FakeContext(self._engine)
        self.contexts.append(context)
        return context

    def _release(self) -> None:
        self._engine.released.append(self.path)


class FakeEngine(InferenceEngine):
    def __init__(self) -> None:
        super().__init__()
        self.script = FakeScript()
        self.models: list[FakeModel] = []
        self.released: list[str] = []
        self.bad_paths: set[str] = set()
        self.progress_steps: tuple[float, ...] = (0.25, 0.5, 1.5)
        self.fail_context: BaseException | None = None
        self.context_gate: asyncio.Event | None = None
        self.context_requests = 0
        self.fail_sequence: BaseException | None = None
        self.fail_session: BaseException | None = None

    async def load_model(self, path: str, *, on_progress=None) -> LoadedModel:
        if path in self.bad_paths:
            raise RuntimeError(f"cannot read {path}")
        for step in self.progress_steps:
            if on_progress is not None:
                on_progress(step)
            await asyncio.sleep(0)
        model = FakeModel(self, path)
        self.models.append(model)
        return model

    # Convenience accessors for the most recently created handles.
    @property
    def model(self) -> FakeModel:
        return self.models[-1]

    @property
    def context(self) -> FakeContext:
        return self.model.contexts[-1]

    @property
    def sequence(self) -> FakeSequence:
        return self.context.sequences[-1]

    @property
    def session(self) -> FakeChatSession:
        return self.sequence.sessions[-1]


def text_chunks(*parts: str) -> list[ResponseChunk]:
    return [ResponseChunk(text=part) for part in parts]


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate`` holds."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout)
