"""
Exception hierarchy for pocket_infer.

Every failure surfaced by an inference context is one of the classes below.
Errors raised by torch, transformers, safetensors or jinja2 are translated
at the boundary where they occur and chained with ``raise ... from``.
"""


class PocketInferError(Exception):
    """Base class for all errors raised by pocket_infer."""


class ModelLoadError(PocketInferError):
    """Model weights, config or tokenizer could not be loaded."""


# Short name used by callers that think in terms of "open failed".
LoadError = ModelLoadError


class TemplateError(PocketInferError):
    """Chat template is missing, malformed, or cannot render the conversation."""


class ContextOverflowError(PocketInferError):
    """Prompt plus requested tokens do not fit in the context window."""


class BusyError(PocketInferError):
    """Another mutating operation is already running on the same context."""


class InferenceError(PocketInferError):
    """The forward pass failed while generating."""


class SessionFormatError(PocketInferError):
    """A session file is corrupt, truncated or incompatible."""


class SessionIOError(PocketInferError, OSError):
    """A session file could not be read or written."""


class ParameterError(PocketInferError, ValueError):
    """A parameter has an invalid value or an unknown name."""


class ContextStateError(PocketInferError):
    """The operation is not allowed in the context's current state."""


__all__ = [
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
