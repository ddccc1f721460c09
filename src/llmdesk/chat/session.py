"""Chat session engine: prompting, streaming assembly, abort and reset.

The engine owns the chat session bound to the lifecycle manager's current
context sequence. All session mutations run under the ``chatSession`` mutex.
While a prompt streams, each chunk is folded into an in-progress block list
and the transcript is republished; once the prompt ends the transcript is
rebuilt from the session's committed history.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from ..ai.cancellation import CancellationToken
from ..ai.engine import (
    ChatSession,
    CompletionEngine,
    ModelHistoryItem,
    ResponseChunk,
    UserHistoryItem,
)
from ..errors import IllegalStateError
from ..services.locks import CHAT_SESSION_LOCK, NamedLocks
from ..state.llm_state import ChatSessionState, DraftPrompt, LlmState
from ..state.store import StateStore
from .message_model import Block, ChatItem, ModelItem, UserItem
from .squash import chunk_to_block, response_to_blocks, squash
from .templates import apply_template_variables

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..services.lifecycle import ResourceLifecycleManager

LOGGER = logging.getLogger(__name__)

__all__ = ["ChatSessionEngine"]


class ChatSessionEngine:
    """Drives the chat session on top of the lifecycle manager's sequence."""

    def __init__(
        self,
        store: StateStore[LlmState],
        lifecycle: ResourceLifecycleManager,
        *,
        locks: NamedLocks | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._locks = locks or lifecycle.locks
        self._system_prompt = system_prompt
        self._session: ChatSession | None = None
        self._completion: CompletionEngine | None = None
        self._cancellation: CancellationToken | None = None
        self._pending_message: str | None = None
        self._in_progress: tuple[Block, ...] = ()
        lifecycle.attach_session_owner(self)

    @property
    def session(self) -> ChatSession | None:
        return self._session

    @property
    def system_prompt(self) -> str | None:
        return self._system_prompt

    @system_prompt.setter
    def system_prompt(self, value: str | None) -> None:
        """Applies to sessions created after the change."""

        self._system_prompt = value

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    async def create_chat_session(self) -> None:
        async with self._locks.hold(CHAT_SESSION_LOCK):
            if self._lifecycle.sequence is None or not self._store.get().context_sequence.loaded:
                raise IllegalStateError("Context sequence not loaded")

            self._dispose_current()
            self._store.update(
                lambda state: state.with_chat_session(
                    loaded=False,
                    generating_result=False,
                    transcript=(),
                    draft_prompt=DraftPrompt(prompt=state.chat_session.draft_prompt.prompt),
                )
            )

            try:
                self._reset_locked(mark_as_loaded=False)
                session = self._session
                if session is None:
                    raise IllegalStateError("Context sequence not loaded")
                try:
                    await session.preload_prompt("")
                except Exception:
                    LOGGER.debug("Preloading the chat session failed", exc_info=True)

                state = self._store.get()
                draft = state.chat_session.draft_prompt.prompt
                completion = self._suggest(draft)
                self._store.set(
                    state.with_chat_session(
                        loaded=True,
                        draft_prompt=DraftPrompt(prompt=draft, completion=completion),
                    )
                )
                LOGGER.info("Chat session created")
            except Exception as exc:
                LOGGER.error("Failed to create chat session: %s", exc, exc_info=True)
                self._dispose_current()
                self._store.update(
                    lambda state: state.with_chat_session(
                        loaded=False, generating_result=False, transcript=()
                    )
                )

    async def reset_chat_history(self, mark_as_loaded: bool = True) -> None:
        """Start a fresh session on the same sequence, keeping the draft text."""

        self.stop_active_prompt()
        async with self._locks.hold(CHAT_SESSION_LOCK):
            self._reset_locked(mark_as_loaded=mark_as_loaded)

    async def dispose_session(self, *, clear_draft: bool = False) -> None:
        async with self._locks.hold(CHAT_SESSION_LOCK):
            self._dispose_current()
            state = self._store.get()
            draft = DraftPrompt() if clear_draft else DraftPrompt(prompt=state.chat_session.draft_prompt.prompt)
            self._store.set(replace(state, chat_session=ChatSessionState(draft_prompt=draft)))

    def _reset_locked(self, *, mark_as_loaded: bool) -> None:
        sequence = self._lifecycle.sequence
        if sequence is None:
            return

        self._dispose_current()
        session = sequence.create_chat_session(system_prompt=self._render_system_prompt())
        completion = session.create_completion_engine(on_generation=self._on_completion_generated)
        self._session = session
        self._completion = completion
        session.on_dispose(lambda: self._on_session_disposed(session))

        state = self._store.get()
        draft = state.chat_session.draft_prompt.prompt
        self._store.set(
            state.with_chat_session(
                loaded=True if mark_as_loaded else state.chat_session.loaded,
                generating_result=False,
                transcript=(),
                draft_prompt=DraftPrompt(prompt=draft, completion=self._suggest(draft)),
            )
        )

    def _dispose_current(self) -> None:
        session, self._session = self._session, None
        completion, self._completion = self._completion, None
        self._cancellation = None
        self._pending_message = None
        self._in_progress = ()
        for resource, label in ((completion, "completion engine"), (session, "chat session")):
            if resource is None:
                continue
            try:
                resource.dispose()
            except Exception:
                LOGGER.exception("Failed to dispose %s", label)

    def _on_session_disposed(self, session: ChatSession) -> None:
        if self._session is not session:
            return
        LOGGER.info("Chat session was disposed")
        completion, self._completion = self._completion, None
        self._session = None
        if self._cancellation is not None:
            self._cancellation.cancel()
        self._cancellation = None
        if completion is not None:
            try:
                completion.dispose()
            except Exception:
                LOGGER.exception("Failed to dispose completion engine")
        self._store.update(
            lambda state: state.with_chat_session(
                loaded=False, generating_result=False, transcript=()
            )
        )

    def _render_system_prompt(self) -> str | None:
        if not self._system_prompt:
            return None
        return apply_template_variables(self._system_prompt)

    # ------------------------------------------------------------------
    # Prompting
    # ------------------------------------------------------------------
    async def prompt(self, message: str) -> None:
        """Send ``message`` and stream the reply into the transcript.

        Stopping the prompt through :meth:`stop_active_prompt` is not an
        error; any other failure is re-raised after the state is restored.
        """

        async with self._locks.hold(CHAT_SESSION_LOCK):
            session = self._session
            if session is None:
                raise IllegalStateError("Chat session not loaded")

            token = CancellationToken()
            self._cancellation = token
            self._pending_message = message
            self._in_progress = ()
            self._store.update(
                lambda state: state.with_chat_session(
                    generating_result=True,
                    draft_prompt=DraftPrompt(),
                    transcript=self._build_transcript(session),
                )
            )

            def _on_chunk(chunk: ResponseChunk) -> None:
                if self._session is not session:
                    return
                self._in_progress = squash(self._in_progress, chunk_to_block(chunk))
                self._store.update(
                    lambda state: state.with_chat_session(transcript=self._build_transcript(session))
                )

            try:
                await session.prompt(message, cancellation=token, on_chunk=_on_chunk)
            except Exception as exc:
                if exc is not token.reason:
                    LOGGER.warning("Prompt failed: %s", exc)
                    raise
                LOGGER.info("Prompt aborted before generation started")
            finally:
                self._finish_prompt(session, token)

    def stop_active_prompt(self) -> None:
        token = self._cancellation
        if token is not None and token.cancel():
            LOGGER.info("Stopping active prompt")

    def _finish_prompt(self, session: ChatSession, token: CancellationToken) -> None:
        if self._cancellation is token:
            self._cancellation = None
        self._pending_message = None
        self._in_progress = ()

        state = self._store.get()
        draft = state.chat_session.draft_prompt.prompt
        if self._session is session:
            transcript = self._build_transcript(session)
        else:
            transcript = state.chat_session.transcript
        self._store.set(
            state.with_chat_session(
                generating_result=False,
                transcript=transcript,
                draft_prompt=DraftPrompt(prompt=draft, completion=self._suggest(draft)),
            )
        )

    def _build_transcript(self, session: ChatSession) -> tuple[ChatItem, ...]:
        items: list[ChatItem] = []
        for entry in session.history:
            if isinstance(entry, UserHistoryItem):
                items.append(UserItem(message=entry.text))
            elif isinstance(entry, ModelHistoryItem):
                blocks = response_to_blocks(entry.response)
                if blocks:
                    items.append(ModelItem(blocks=blocks))
        if self._pending_message is not None:
            items.append(UserItem(message=self._pending_message))
            if self._in_progress:
                items.append(ModelItem(blocks=self._in_progress))
        return tuple(items)

    # ------------------------------------------------------------------
    # Draft prompt
    # ------------------------------------------------------------------
    def set_draft_prompt(self, text: str) -> None:
        if self._completion is None:
            return
        completion = self._suggest(text)
        self._store.update(lambda state: state.with_draft_prompt(prompt=text, completion=completion))

    def _suggest(self, text: str) -> str:
        if self._completion is None:
            return ""
        try:
            return self._completion.complete(text) or ""
        except Exception:
            LOGGER.debug("Draft completion failed", exc_info=True)
            return ""

    def _on_completion_generated(self, prompt: str, completion: str) -> None:
        state = self._store.get()
        if state.chat_session.draft_prompt.prompt != prompt:
            return
        self._store.set(state.with_draft_prompt(completion=completion))
