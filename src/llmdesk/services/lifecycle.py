"""Owns the engine -> model -> context -> sequence chain and mirrors it into state.

Every operation is serialized on the named mutex of the resource it changes.
Preconditions are checked before anything is mutated and raise
:class:`~llmdesk.errors.IllegalStateError`; load failures are recorded in the
matching state section instead of being raised; disposal failures are
logged and ignored.

When several mutexes are needed they are taken in the order
``engine -> model -> context -> contextSequence -> chatSession``.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Protocol

from ..ai.engine import ContextSequence, Disposable, EngineFactory, InferenceEngine, LoadedModel, ModelContext
from ..errors import IllegalStateError
from ..state.llm_state import ChatSessionState, EngineState, LlmState, ModelState, ResourceState
from ..state.store import StateStore
from .catalog import prettify_model_name
from .locks import CONTEXT_LOCK, CONTEXT_SEQUENCE_LOCK, ENGINE_LOCK, MODEL_LOCK, NamedLocks

LOGGER = logging.getLogger(__name__)

__all__ = ["ResourceLifecycleManager", "SessionOwner"]


class SessionOwner(Protocol):
    """The component that owns the chat session bound to the current sequence."""

    def stop_active_prompt(self) -> None: ...

    async def dispose_session(self, *, clear_draft: bool = False) -> None: ...


class ResourceLifecycleManager:
    """Loads and tears down inference resources on behalf of the backend."""

    def __init__(
        self,
        store: StateStore[LlmState],
        engine_factory: EngineFactory,
        *,
        locks: NamedLocks | None = None,
    ) -> None:
        self._store = store
        self._engine_factory = engine_factory
        self._locks = locks or NamedLocks()
        self._session_owner: SessionOwner | None = None
        self._engine: InferenceEngine | None = None
        self._model: LoadedModel | None = None
        self._context: ModelContext | None = None
        self._sequence: ContextSequence | None = None

    @property
    def locks(self) -> NamedLocks:
        return self._locks

    @property
    def engine(self) -> InferenceEngine | None:
        return self._engine

    @property
    def model(self) -> LoadedModel | None:
        return self._model

    @property
    def context(self) -> ModelContext | None:
        return self._context

    @property
    def sequence(self) -> ContextSequence | None:
        return self._sequence

    def attach_session_owner(self, owner: SessionOwner) -> None:
        self._session_owner = owner

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    async def load_engine(self) -> None:
        async with self._locks.hold(ENGINE_LOCK):
            previous = self._engine
            if previous is not None:
                async with self._locks.hold(MODEL_LOCK):
                    await self._release_below_model(clear_draft=False)
                    self._release_model()
                    self._store.update(
                        lambda state: replace(
                            state,
                            model=ModelState(),
                            context=ResourceState(),
                            context_sequence=ResourceState(),
                        )
                    )
                self._engine = None
                _dispose_quietly(previous, "engine")

            self._store.update(lambda state: replace(state, engine=EngineState(loaded=False)))
            try:
                engine = await self._engine_factory()
            except Exception as exc:
                LOGGER.warning("Failed to load inference engine: %s", exc)
                error = _describe(exc)
                self._store.update(
                    lambda state: replace(state, engine=EngineState(loaded=False, error=error))
                )
                return

            self._engine = engine
            engine.on_dispose(lambda: self._on_engine_disposed(engine))
            self._store.update(lambda state: replace(state, engine=EngineState(loaded=True)))
            LOGGER.info("Inference engine loaded")

    async def load_model(self, path: str) -> None:
        async with self._locks.hold(MODEL_LOCK):
            engine = self._engine
            if engine is None or not self._store.get().engine.loaded:
                raise IllegalStateError("Engine not loaded")

            await self._release_below_model(clear_draft=False)
            self._release_model()
            self._store.update(
                lambda state: replace(
                    state,
                    model=ModelState(loaded=False, load_progress=0.0),
                    context=ResourceState(),
                    context_sequence=ResourceState(),
                )
            )

            LOGGER.info("Loading model %s", path)
            try:
                model = await engine.load_model(path, on_progress=self._on_model_progress)
            except Exception as exc:
                LOGGER.warning("Failed to load model %s: %s", path, exc)
                error = _describe(exc)
                self._store.update(
                    lambda state: replace(state, model=ModelState(loaded=False, error=error))
                )
                return

            self._model = model
            model.on_dispose(lambda: self._on_model_disposed(model))
            name = prettify_model_name(Path(path).name)
            self._store.update(
                lambda state: replace(
                    state, model=ModelState(loaded=True, load_progress=1.0, name=name)
                )
            )

    async def create_context(self) -> None:
        async with self._locks.hold(CONTEXT_LOCK):
            model = self._model
            if model is None or not self._store.get().model.loaded:
                raise IllegalStateError("Model not loaded")

            await self._teardown_session(clear_draft=False)
            self._release_sequence()
            self._release_context()
            self._store.update(
                lambda state: replace(
                    state,
                    context=ResourceState(loaded=False),
                    context_sequence=ResourceState(),
                )
            )

            try:
                context = await model.create_context()
            except Exception as exc:
                if self._model is not model:
                    LOGGER.info("Context creation failed after its model was released: %s", exc)
                    return
                LOGGER.warning("Failed to create context: %s", exc)
                error = _describe(exc)
                self._store.update(
                    lambda state: replace(state, context=ResourceState(loaded=False, error=error))
                )
                return

            if self._model is not model or model.disposed:
                LOGGER.info("Model was released while its context was being created")
                _dispose_quietly(context, "context")
                return

            self._context = context
            context.on_dispose(lambda: self._on_context_disposed(context))
            self._store.update(lambda state: replace(state, context=ResourceState(loaded=True)))

    async def create_context_sequence(self) -> None:
        async with self._locks.hold(CONTEXT_SEQUENCE_LOCK):
            context = self._context
            if context is None or not self._store.get().context.loaded:
                raise IllegalStateError("Context not loaded")

            await self._teardown_session(clear_draft=False)
            if self._context is not context or context.disposed:
                LOGGER.info("Context was released before a sequence could be created")
                return
            self._release_sequence()
            self._store.update(
                lambda state: replace(state, context_sequence=ResourceState(loaded=False))
            )

            try:
                sequence = context.get_sequence()
            except Exception as exc:
                LOGGER.warning("Failed to create context sequence: %s", exc)
                error = _describe(exc)
                self._store.update(
                    lambda state: replace(
                        state, context_sequence=ResourceState(loaded=False, error=error)
                    )
                )
                return

            self._sequence = sequence
            sequence.on_dispose(lambda: self._on_sequence_disposed(sequence))
            self._store.update(
                lambda state: replace(state, context_sequence=ResourceState(loaded=True))
            )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    async def unload_model(self) -> None:
        """Tear down everything below the engine; calling it again is a no-op."""

        owner = self._session_owner
        if owner is not None:
            owner.stop_active_prompt()

        async with self._locks.hold(MODEL_LOCK):
            await self._release_below_model(clear_draft=True)
            self._release_model()
            self._store.update(
                lambda state: replace(
                    state,
                    selected_model_file_path=None,
                    model=ModelState(loaded=False, load_progress=0.0),
                    context=ResourceState(),
                    context_sequence=ResourceState(),
                    chat_session=ChatSessionState(),
                )
            )
        LOGGER.info("Model unloaded")

    async def _release_below_model(self, *, clear_draft: bool) -> None:
        """Drop the session, sequence and context; the caller holds the model mutex."""

        async with self._locks.hold(CONTEXT_LOCK):
            async with self._locks.hold(CONTEXT_SEQUENCE_LOCK):
                await self._teardown_session(clear_draft=clear_draft)
                self._release_sequence()
                self._release_context()

    async def _teardown_session(self, *, clear_draft: bool) -> None:
        owner = self._session_owner
        if owner is None:
            return
        owner.stop_active_prompt()
        try:
            await owner.dispose_session(clear_draft=clear_draft)
        except Exception:
            LOGGER.exception("Failed to dispose chat session")

    def _release_sequence(self) -> None:
        sequence, self._sequence = self._sequence, None
        if sequence is not None:
            _dispose_quietly(sequence, "context sequence")

    def _release_context(self) -> None:
        context, self._context = self._context, None
        if context is not None:
            _dispose_quietly(context, "context")

    def _release_model(self) -> None:
        model, self._model = self._model, None
        if model is not None:
            _dispose_quietly(model, "model")

    # ------------------------------------------------------------------
    # Engine-side notifications
    # ------------------------------------------------------------------
    def _on_model_progress(self, progress: float) -> None:
        state = self._store.get()
        if state.model.loaded or state.model.error is not None:
            return
        clamped = min(max(float(progress), 0.0), 1.0)
        self._store.set(replace(state, model=replace(state.model, load_progress=clamped)))

    def _on_engine_disposed(self, engine: InferenceEngine) -> None:
        if self._engine is not engine:
            return
        self._engine = None
        LOGGER.info("Inference engine was disposed")
        self._store.update(lambda state: replace(state, engine=EngineState(loaded=False)))

    def _on_model_disposed(self, model: LoadedModel) -> None:
        if self._model is not model:
            return
        self._model = None
        LOGGER.info("Model was disposed")
        self._store.update(lambda state: replace(state, model=ModelState(loaded=False)))

    def _on_context_disposed(self, context: ModelContext) -> None:
        if self._context is not context:
            return
        self._context = None
        self._store.update(lambda state: replace(state, context=ResourceState(loaded=False)))

    def _on_sequence_disposed(self, sequence: ContextSequence) -> None:
        if self._sequence is not sequence:
            return
        self._sequence = None
        self._store.update(
            lambda state: replace(state, context_sequence=ResourceState(loaded=False))
        )


def _dispose_quietly(resource: Disposable, label: str) -> None:
    try:
        resource.dispose()
    except Exception:
        LOGGER.exception("Failed to dispose %s", label)


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
