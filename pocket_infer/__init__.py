"""
pocket_infer: local LLM inference with streaming, chat templates and sessions.

This package provides a single-model inference context implementing:
- Model loading from local Hugging Face checkpoints with progress reporting
- Streaming token generation with stop sequences and cancellation
- Chat template rendering with template-declared stops and thinking mode
- KV cache session save/load for fast conversation resumption
"""

from pocket_infer.chat.template import ChatFormat, ChatMessage, RenderedPrompt, Role
from pocket_infer.core.context import ContextState, InferenceContext, open_context
from pocket_infer.core.generation import CompletionResult, StopReason, Timings
from pocket_infer.core.params import DEFAULT_STOP_WORDS, ContextParams, GenerationParams
from pocket_infer.core.session import SessionLoadResult
from pocket_infer.core.session_cache import SessionCache
from pocket_infer.errors import (
    BusyError,
    ContextOverflowError,
    ContextStateError,
    InferenceError,
    LoadError,
    ModelLoadError,
    ParameterError,
    PocketInferError,
    SessionFormatError,
    SessionIOError,
    TemplateError,
)

__version__ = "0.1.0"
__author__ = "pocket-infer contributors"

__all__ = [
    "open_context",
    "InferenceContext",
    "ContextState",
    "ContextParams",
    "GenerationParams",
    "DEFAULT_STOP_WORDS",
    "CompletionResult",
    "StopReason",
    "Timings",
    "ChatMessage",
    "ChatFormat",
    "RenderedPrompt",
    "Role",
    "SessionLoadResult",
    "SessionCache",
    "PocketInferError",
    "ModelLoadError",
    "LoadError",
    "TemplateError",
    "ContextOverflowError",
    "BusyError",
    "InferenceError",
    "SessionFormatError",
    "SessionIOError",
    "ParameterError",
    "ContextStateError",
]
