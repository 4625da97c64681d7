"""
Inference context: one loaded model, its KV cache and its lifecycle.

State machine::

    UNINITIALIZED --load()--> LOADING --> READY <--> GENERATING
                                 |          |            |
                                 +------> FAILED <-------+
    any state --invalidate()--> INVALIDATED

Mutating operations (load, generation, session save/load) claim a single
"active operation" slot without blocking; a second one raises BusyError.
Calls that the current state does not allow raise ContextStateError.
"""

import dataclasses
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Generator, List, Mapping, Optional, Sequence, Tuple, Union

from pocket_infer.cache.kv_cache import KVCache
from pocket_infer.chat.template import (
    MessagesInput,
    RenderedPrompt,
    TemplateDefaults,
    format_chat,
    format_chat_full,
)
from pocket_infer.core import session
from pocket_infer.core.generation import CompletionResult, GenerationLoop, TokenCallback, consume
from pocket_infer.core.model_store import ModelHandle, ProgressCallback, load_model
from pocket_infer.core.params import (
    DEFAULT_STOP_WORDS,
    ContextParams,
    GenerationParams,
    merge_stop_sequences,
)
from pocket_infer.errors import BusyError, ContextStateError, InferenceError, ModelLoadError

logger = logging.getLogger(__name__)

ParamsInput = Union[GenerationParams, Mapping[str, Any]]


class ContextState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    GENERATING = "generating"
    FAILED = "failed"
    INVALIDATED = "invalidated"


class InferenceContext:
    """A loaded model plus the conversation state accumulated on it.

    Args:
        model_path: Local model directory.
        params: Load-time configuration, as ContextParams or a mapping.
        on_progress: Optional load progress callback receiving percentages.

    Example:
        >>> with open_context("models/qwen2.5-0.5b-instruct") as ctx:
        ...     result = ctx.complete({"prompt": "Hello", "n_predict": 16})
    """

    def __init__(
        self,
        model_path: Union[str, Path],
        params: Union[None, ContextParams, Mapping[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.model_path = Path(model_path)
        self.params = ContextParams.coerce(params)
        self._on_progress = on_progress

        self._lock = threading.Lock()
        self._state = ContextState.UNINITIALIZED
        self._active: Optional[str] = None
        self._cancel_event: Optional[threading.Event] = None
        self._handle: Optional[ModelHandle] = None
        self._cache: Optional[KVCache] = None

    # State management

    @property
    def state(self) -> ContextState:
        return self._state

    def is_loaded(self) -> bool:
        return self._state in (ContextState.READY, ContextState.GENERATING)

    def _begin(
        self,
        operation: str,
        allowed: Tuple[ContextState, ...],
        new_state: Optional[ContextState] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        with self._lock:
            if self._state is ContextState.INVALIDATED:
                raise ContextStateError(f"Cannot {operation}: context has been invalidated")
            if self._active is not None:
                raise BusyError(f"Cannot {operation}: {self._active} is in progress")
            if self._state not in allowed:
                raise ContextStateError(
                    f"Cannot {operation} while the context is {self._state.value}"
                )
            self._active = operation
            self._cancel_event = cancel_event
            if new_state is not None:
                self._state = new_state

    def _end(self, new_state: Optional[ContextState] = None) -> None:
        with self._lock:
            self._active = None
            self._cancel_event = None
            if self._state is ContextState.INVALIDATED:
                self._release()
            elif new_state is not None:
                self._state = new_state

    def _release(self) -> None:
        self._handle = None
        self._cache = None

    def _require_loaded(self) -> Tuple[ModelHandle, KVCache]:
        handle, cache = self._handle, self._cache
        if not self.is_loaded() or handle is None or cache is None:
            raise ContextStateError(f"Context is {self._state.value}, not loaded")
        return handle, cache

    # Lifecycle

    def load(self) -> None:
        """Load the model and allocate the cache.

        Raises:
            ModelLoadError: If the model cannot be loaded; the context is
                left FAILED.
            ContextStateError: If the context was already loaded or invalidated.
        """
        self._begin("load", (ContextState.UNINITIALIZED,), ContextState.LOADING)
        next_state = ContextState.FAILED
        try:
            handle = load_model(self.model_path, self.params, self._on_progress)
            try:
                cache = KVCache(handle.config.num_hidden_layers, handle.context_length)
            except (RuntimeError, ValueError) as err:
                raise ModelLoadError(f"Cannot allocate the KV cache: {err}") from err
            self._handle, self._cache = handle, cache
            next_state = ContextState.READY
        finally:
            self._end(next_state)

    def invalidate(self) -> None:
        """Release the model and cache. Safe to call any number of times.

        An in-flight completion is cancelled and the release happens once
        it has unwound.
        """
        with self._lock:
            if self._state is ContextState.INVALIDATED:
                return
            self._state = ContextState.INVALIDATED
            if self._cancel_event is not None:
                self._cancel_event.set()
            if self._active is None:
                self._release()
        logger.info("Invalidated context for %s", self.model_path)

    def __enter__(self) -> "InferenceContext":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.invalidate()

    # Generation

    def stream(self, params: ParamsInput) -> Generator[str, None, CompletionResult]:
        """Run a completion as a generator of text fragments.

        The context is claimed when iteration starts and released when the
        generator finishes or is closed. The CompletionResult is the
        generator's return value.

        Raises:
            BusyError: If another operation is active.
            ContextStateError: If the context is not READY.
            ContextOverflowError: If the prompt plus max_tokens do not fit.
            InferenceError: If the forward pass fails; the context becomes FAILED.
        """
        params = GenerationParams.coerce(params)
        cancel_event = threading.Event()
        self._begin("generate", (ContextState.READY,), ContextState.GENERATING, cancel_event)
        next_state = ContextState.READY
        try:
            loop = GenerationLoop(
                self._handle, self._cache, params, cancel_event, n_batch=self.params.n_batch
            )
            result = yield from loop.stream()
        except InferenceError:
            logger.exception("Completion failed; context is no longer usable")
            next_state = ContextState.FAILED
            raise
        finally:
            self._end(next_state)
        return result

    def complete(self, params: ParamsInput, on_token: Optional[TokenCallback] = None) -> CompletionResult:
        """Run a completion, passing each text fragment to ``on_token``.

        An exception raised by ``on_token`` propagates unchanged and leaves
        the context READY.
        """
        return consume(self.stream(params), on_token)

    def stop_completion(self) -> None:
        """Ask the running completion to stop at the next token boundary."""
        with self._lock:
            if self._cancel_event is not None:
                self._cancel_event.set()

    def complete_chat(
        self,
        messages: MessagesInput,
        params: Optional[ParamsInput] = None,
        on_token: Optional[TokenCallback] = None,
        enable_thinking: bool = False,
        template: Optional[str] = None,
    ) -> CompletionResult:
        """Format a conversation and complete the assistant's reply.

        Stop sequences are the default end-of-turn markers, then the caller's,
        then those the template declares.
        """
        params = GenerationParams.coerce(params if params is not None else {})
        rendered = self.format_chat_full(messages, template, enable_thinking)
        stops = merge_stop_sequences(DEFAULT_STOP_WORDS, params.stop, rendered.additional_stops)
        return self.complete(
            dataclasses.replace(params, prompt=rendered.prompt, stop=stops), on_token
        )

    # Read-only helpers

    def _template_defaults(self, handle: ModelHandle) -> TemplateDefaults:
        return TemplateDefaults(
            chat_template=handle.chat_template,
            bos_token=handle.codec.bos_token,
            eos_token=handle.codec.eos_token,
        )

    def format_chat(self, messages: MessagesInput, template: Optional[str] = None) -> str:
        handle, _ = self._require_loaded()
        return format_chat(messages, template, self._template_defaults(handle))

    def format_chat_full(
        self,
        messages: MessagesInput,
        template: Optional[str] = None,
        enable_thinking: bool = False,
    ) -> RenderedPrompt:
        handle, _ = self._require_loaded()
        return format_chat_full(
            messages, template, enable_thinking, self._template_defaults(handle)
        )

    def tokenize(self, text: str) -> List[int]:
        handle, _ = self._require_loaded()
        return handle.codec.tokenize(text)

    def detokenize(self, token_ids: Sequence[int]) -> str:
        handle, _ = self._require_loaded()
        return handle.codec.detokenize(token_ids)

    @property
    def n_tokens(self) -> int:
        _, cache = self._require_loaded()
        return len(cache)

    def token_history(self) -> List[int]:
        _, cache = self._require_loaded()
        return list(cache.token_ids)

    def model_info(self) -> Dict[str, Any]:
        handle, _ = self._require_loaded()
        return handle.describe()

    @property
    def model_handle(self) -> ModelHandle:
        handle, _ = self._require_loaded()
        return handle

    # Sessions

    def save_session(self, path: Union[str, Path], token_count: int = -1) -> int:
        """Persist the first ``token_count`` tokens of history (-1 for all).

        Returns:
            Number of tokens saved.
        """
        self._begin("save session", (ContextState.READY,))
        try:
            return session.save_session(path, self._handle, self._cache, token_count)
        finally:
            self._end()

    def load_session(self, path: Union[str, Path]) -> session.SessionLoadResult:
        """Replace the history and cache with a saved session.

        On any error the context is unchanged.
        """
        self._begin("load session", (ContextState.READY,))
        try:
            return session.load_session(path, self._handle, self._cache)
        finally:
            self._end()

    def __repr__(self) -> str:
        return f"InferenceContext(model_path='{self.model_path}', state={self._state.value})"


def open_context(
    model_path: Union[str, Path],
    params: Union[None, ContextParams, Mapping[str, Any]] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> InferenceContext:
    """Create a context and load its model.

    Raises:
        ModelLoadError: If the model cannot be loaded.
        ParameterError: If ``params`` is invalid.
    """
    context = InferenceContext(model_path, params, on_progress)
    context.load()
    return context
