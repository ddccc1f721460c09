"""Inference engine backed by ``llama-cpp-python``.

A ``Llama`` instance bundles the model weights and its evaluation context, so
the model, context and sequence handles below share one instance. Blocking
calls run in worker threads; results are handed back to the event loop with
``call_soon_threadsafe``. A per-model ``threading.Lock`` keeps chat
generation and draft completion from evaluating on the instance at the same
time.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from ..chat.message_model import Block, SegmentBlock, TextBlock
from ..chat.squash import chunk_to_block, squash
from .cancellation import CancellationToken
from .engine import (
    ChatSession,
    CompletionEngine,
    ContextSequence,
    HistoryItem,
    InferenceEngine,
    LoadedModel,
    ModelContext,
    ModelHistoryItem,
    ProgressCallback,
    ResponseChunk,
    ResponseSegment,
    SystemHistoryItem,
    UserHistoryItem,
)
from .segments import ThoughtSegmentParser

LOGGER = logging.getLogger(__name__)

__all__ = ["LlamaCppEngine", "LlamaOptions", "create_llama_engine"]

_DONE = object()


@dataclass(slots=True)
class LlamaOptions:
    context_size: int = 4096
    gpu_layers: int = 0
    threads: int | None = None
    temperature: float = 0.7
    top_p: float = 0.95
    max_response_tokens: int = 1024
    completion_max_tokens: int = 24


async def create_llama_engine(options: LlamaOptions | None = None) -> LlamaCppEngine:
    """Import the native bindings and return an engine handle."""

    try:  # Local import so the backend can start without the native extension.
        import llama_cpp
    except ImportError as exc:  # pragma: no cover - depends on optional extra
        raise RuntimeError(
            "llama-cpp-python must be installed to load models (pip install 'llmdesk[llama]')."
        ) from exc
    return LlamaCppEngine(llama_cpp, options or LlamaOptions())


class LlamaCppEngine(InferenceEngine):
    def __init__(self, module: Any, options: LlamaOptions) -> None:
        super().__init__()
        self._module = module
        self._options = options
        self._models: list[LlamaCppModel] = []

    @property
    def options(self) -> LlamaOptions:
        return self._options

    async def load_model(self, path: str, *, on_progress: ProgressCallback | None = None) -> LoadedModel:
        options = self._options

        def _load() -> Any:
            kwargs: dict[str, Any] = {
                "model_path": path,
                "n_ctx": options.context_size,
                "n_gpu_layers": options.gpu_layers,
                "verbose": False,
            }
            if options.threads:
                kwargs["n_threads"] = options.threads
            return self._module.Llama(**kwargs)

        llama = await asyncio.to_thread(_load)
        if on_progress is not None:
            on_progress(1.0)
        model = LlamaCppModel(llama, options)
        self._models.append(model)
        return model

    def _release(self) -> None:
        models, self._models = self._models, []
        for model in models:
            model.dispose()


class LlamaCppModel(LoadedModel):
    def __init__(self, llama: Any, options: LlamaOptions) -> None:
        super().__init__()
        self.llama = llama
        self.options = options
        self.eval_lock = threading.Lock()
        self._contexts: list[LlamaCppContext] = []

    async def create_context(self) -> ModelContext:
        await asyncio.to_thread(self._reset)
        context = LlamaCppContext(self)
        self._contexts.append(context)
        return context

    def _reset(self) -> None:
        with self.eval_lock:
            self.llama.reset()

    def _release(self) -> None:
        contexts, self._contexts = self._contexts, []
        for context in contexts:
            context.dispose()
        close = getattr(self.llama, "close", None)
        if callable(close):
            close()


class LlamaCppContext(ModelContext):
    def __init__(self, model: LlamaCppModel) -> None:
        super().__init__()
        self.model = model
        self._sequences: list[LlamaCppSequence] = []

    def get_sequence(self) -> ContextSequence:
        if self.disposed:
            raise RuntimeError("Context is disposed")
        sequence = LlamaCppSequence(self.model)
        self._sequences.append(sequence)
        return sequence

    def _release(self) -> None:
        sequences, self._sequences = self._sequences, []
        for sequence in sequences:
            sequence.dispose()


class LlamaCppSequence(ContextSequence):
    def __init__(self, model: LlamaCppModel) -> None:
        super().__init__()
        self.model = model

    def create_chat_session(self, *, system_prompt: str | None = None) -> ChatSession:
        if self.disposed:
            raise RuntimeError("Context sequence is disposed")
        return LlamaCppChatSession(self.model, system_prompt=system_prompt)


class LlamaCppChatSession(ChatSession):
    def __init__(self, model: LlamaCppModel, *, system_prompt: str | None = None) -> None:
        super().__init__()
        self._model = model
        self._history: list[HistoryItem] = []
        if system_prompt:
            self._history.append(SystemHistoryItem(text=system_prompt))
        self._completions: list[LlamaCppCompletionEngine] = []

    @property
    def history(self) -> Sequence[HistoryItem]:
        return tuple(self._history)

    def _messages(self, message: str | None = None) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        for item in self._history:
            if isinstance(item, SystemHistoryItem):
                messages.append({"role": "system", "content": item.text})
            elif isinstance(item, UserHistoryItem):
                messages.append({"role": "user", "content": item.text})
            elif isinstance(item, ModelHistoryItem):
                text = "".join(part for part in item.response if isinstance(part, str))
                messages.append({"role": "assistant", "content": text})
        if message is not None:
            messages.append({"role": "user", "content": message})
        return messages

    async def prompt(
        self,
        message: str,
        *,
        cancellation: CancellationToken | None = None,
        on_chunk: Callable[[ResponseChunk], None] | None = None,
    ) -> str:
        if self.disposed:
            raise RuntimeError("Chat session is disposed")
        token = cancellation or CancellationToken()
        token.raise_if_cancelled()

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Any] = asyncio.Queue()
        stop = threading.Event()
        token.add_callback(stop.set)
        options = self._model.options
        messages = self._messages(message)

        def _generate() -> None:
            try:
                with self._model.eval_lock:
                    stream = self._model.llama.create_chat_completion(
                        messages=messages,
                        temperature=options.temperature,
                        top_p=options.top_p,
                        max_tokens=options.max_response_tokens,
                        stream=True,
                    )
                    try:
                        for part in stream:
                            if stop.is_set():
                                break
                            delta = part["choices"][0].get("delta") or {}
                            text = delta.get("content")
                            if text:
                                loop.call_soon_threadsafe(queue.put_nowait, text)
                    finally:
                        close = getattr(stream, "close", None)
                        if callable(close):
                            close()
            except Exception as exc:
                loop.call_soon_threadsafe(queue.put_nowait, exc)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, _DONE)

        parser = ThoughtSegmentParser()
        blocks: tuple[Block, ...] = ()

        def _deliver(chunks: list[ResponseChunk]) -> None:
            nonlocal blocks
            for chunk in chunks:
                blocks = squash(blocks, chunk_to_block(chunk))
                if on_chunk is not None:
                    on_chunk(chunk)

        worker = loop.run_in_executor(None, _generate)
        failure: BaseException | None = None
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if isinstance(item, BaseException):
                    failure = item
                    continue
                if token.cancelled:
                    continue
                _deliver(parser.feed(item))
        finally:
            stop.set()
            await asyncio.shield(worker)

        if failure is not None:
            raise failure
        _deliver(parser.flush())

        self._history.append(UserHistoryItem(text=message))
        self._history.append(ModelHistoryItem(response=_blocks_to_response(blocks)))
        return "".join(block.text for block in blocks if isinstance(block, TextBlock))

    async def preload_prompt(self, text: str) -> None:
        """Evaluate the chat-formatted history (and ``text`` as a pending user turn).

        llama.cpp keeps the evaluated tokens, so the next prompt sharing this
        prefix only evaluates what follows it. With no history and no text
        only the BOS token is evaluated.
        """

        if self.disposed:
            return
        messages = self._messages(text or None)
        llama = self._model.llama

        def _preload() -> None:
            with self._model.eval_lock:
                if messages:
                    llama.create_chat_completion(messages=messages, max_tokens=1, temperature=0.0)
                    return
                llama.reset()
                tokens = llama.tokenize(b"", add_bos=True)
                if tokens:
                    llama.eval(tokens)

        await asyncio.to_thread(_preload)
        LOGGER.debug("Preloaded %d message(s) into the context", len(messages))
        if text:
            for completion in self._completions:
                completion.complete(text)

    def create_completion_engine(
        self, on_generation: Callable[[str, str], None] | None = None
    ) -> CompletionEngine:
        engine = LlamaCppCompletionEngine(self._model, on_generation=on_generation)
        self._completions.append(engine)
        return engine

    def _release(self) -> None:
        completions, self._completions = self._completions, []
        for completion in completions:
            completion.dispose()


class LlamaCppCompletionEngine(CompletionEngine):
    """Suggests a short continuation of the draft, computed off the loop thread."""

    def __init__(
        self,
        model: LlamaCppModel,
        *,
        on_generation: Callable[[str, str], None] | None = None,
        cache_size: int = 64,
    ) -> None:
        super().__init__()
        self._model = model
        self._on_generation = on_generation
        self._cache: dict[str, str] = {}
        self._cache_size = cache_size
        self._latest: str | None = None

    def complete(self, text: str) -> str | None:
        if self.disposed or not text.strip():
            return None
        cached = self._cache.get(text)
        if cached is not None:
            return cached
        self._latest = text
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        loop.run_in_executor(None, self._generate, loop, text)
        return None

    def _generate(self, loop: asyncio.AbstractEventLoop, text: str) -> None:
        if self._latest != text or self.disposed:
            return
        if not self._model.eval_lock.acquire(blocking=False):
            return
        try:
            result = self._model.llama.create_completion(
                prompt=text,
                max_tokens=self._model.options.completion_max_tokens,
                temperature=0.0,
                stop=["\n"],
            )
            completion = str(result["choices"][0].get("text") or "")
        except Exception:
            LOGGER.debug("Draft completion failed", exc_info=True)
            return
        finally:
            self._model.eval_lock.release()
        loop.call_soon_threadsafe(self._store, text, completion)

    def _store(self, text: str, completion: str) -> None:
        if self.disposed:
            return
        if len(self._cache) >= self._cache_size:
            self._cache.pop(next(iter(self._cache)))
        self._cache[text] = completion
        if self._on_generation is not None:
            self._on_generation(text, completion)


def _blocks_to_response(blocks: Sequence[Block]) -> tuple[str | ResponseSegment, ...]:
    response: list[str | ResponseSegment] = []
    for block in blocks:
        if isinstance(block, SegmentBlock):
            response.append(
                ResponseSegment(
                    segment_type=block.segment_type,
                    text=block.text,
                    start_time=block.start_time,
                    end_time=block.end_time,
                )
            )
        else:
            response.append(block.text)
    return tuple(response)
