"""
Typed parameter structs for loading and generation.

Both structs validate themselves on construction and raise ParameterError
for out-of-range values. ``from_dict`` is the boundary for loosely-typed
configuration: it accepts the field names plus a small alias table of the
keys used by llama.cpp-style callers, and rejects every other key.
"""

import math
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pocket_infer.errors import ParameterError


# End-of-turn markers used by common chat formats.
DEFAULT_STOP_WORDS: Tuple[str, ...] = (
    "</s>",
    "<|eot_id|>",
    "<|end_of_text|>",
    "<|im_end|>",
    "<|EOT|>",
    "<|END_OF_TURN_TOKEN|>",
    "<|end_of_turn|>",
    "<end_of_turn>",
    "<|endoftext|>",
    "<|return|>",
)

SUPPORTED_DTYPES = ("float32", "float16", "bfloat16")


def recommended_thread_count(cpu_count: Optional[int] = None) -> int:
    """Return the default intra-op thread count.

    Small machines use every core; larger ones leave 20% headroom for the
    host application.
    """
    if cpu_count is None:
        cpu_count = os.cpu_count() or 1
    if cpu_count <= 4:
        return max(cpu_count, 1)
    return int(cpu_count * 0.8)


def merge_stop_sequences(*groups: Optional[Iterable[str]]) -> List[str]:
    """Concatenate stop sequence groups, dropping empties and duplicates."""
    merged: List[str] = []
    seen = set()
    for group in groups:
        for stop in group or ():
            if stop and stop not in seen:
                seen.add(stop)
                merged.append(stop)
    return merged


def _build_from_dict(cls, data: Mapping[str, Any], aliases: Mapping[str, str]):
    if not isinstance(data, Mapping):
        raise ParameterError(
            f"{cls.__name__} expects a mapping, got {type(data).__name__}"
        )

    known = {f.name for f in fields(cls)}
    kwargs: Dict[str, Any] = {}
    unknown = []
    for key, value in data.items():
        name = aliases.get(key, key)
        if name not in known:
            unknown.append(key)
            continue
        if name in kwargs:
            raise ParameterError(f"Parameter '{name}' given more than once")
        kwargs[name] = value

    if unknown:
        raise ParameterError(
            f"Unknown {cls.__name__} keys: {', '.join(sorted(unknown))}"
        )
    return cls(**kwargs)


def _require_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParameterError(f"{name} must be an integer, got {value!r}")


def _require_number(name: str, value: Any, finite: bool = True) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParameterError(f"{name} must be a number, got {value!r}")
    if math.isnan(value) or (finite and math.isinf(value)):
        raise ParameterError(f"{name} must be finite, got {value!r}")


@dataclass
class ContextParams:
    """Load-time configuration of an inference context.

    Attributes:
        n_ctx: Requested context window in tokens. Clamped to the model's
            maximum position count at load time.
        n_threads: Torch intra-op thread count. ``None`` picks
            ``recommended_thread_count()``.
        n_batch: Maximum number of prompt tokens evaluated per forward pass.
        device: Torch device string for weights and cache.
        dtype: Weight and cache dtype name.
        use_mmap: Keep checkpoint tensors memory-mapped instead of copying.
    """

    n_ctx: int = 2048
    n_threads: Optional[int] = None
    n_batch: int = 512
    device: str = "cpu"
    dtype: str = "float32"
    use_mmap: bool = True

    ALIASES = {
        "context_length": "n_ctx",
        "thread_count": "n_threads",
    }

    def __post_init__(self) -> None:
        _require_int("n_ctx", self.n_ctx)
        if self.n_ctx <= 0:
            raise ParameterError(f"n_ctx must be positive, got {self.n_ctx}")

        if self.n_threads is None:
            self.n_threads = recommended_thread_count()
        _require_int("n_threads", self.n_threads)
        if self.n_threads <= 0:
            raise ParameterError(f"n_threads must be positive, got {self.n_threads}")

        _require_int("n_batch", self.n_batch)
        if self.n_batch <= 0:
            raise ParameterError(f"n_batch must be positive, got {self.n_batch}")

        if self.dtype not in SUPPORTED_DTYPES:
            raise ParameterError(
                f"dtype must be one of {SUPPORTED_DTYPES}, got {self.dtype!r}"
            )
        if not isinstance(self.device, str) or not self.device:
            raise ParameterError(f"device must be a non-empty string, got {self.device!r}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContextParams":
        return _build_from_dict(cls, data, cls.ALIASES)

    @classmethod
    def coerce(cls, value: Union[None, "ContextParams", Mapping[str, Any]]) -> "ContextParams":
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls.from_dict(value)


@dataclass
class GenerationParams:
    """Parameters for a single completion run.

    Defaults match the completion settings the mobile app ships with.
    ``seed=-1`` draws a fresh random seed per run; ``temperature <= 0``
    selects greedy decoding.
    """

    prompt: str = ""
    max_tokens: int = 1024
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    repeat_penalty: float = 1.0
    repeat_last_n: int = 64
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    stop: List[str] = field(default_factory=list)
    seed: int = -1
    ignore_eos: bool = False
    logit_bias: Dict[int, float] = field(default_factory=dict)

    ALIASES = {
        "n_predict": "max_tokens",
        "penalty_repeat": "repeat_penalty",
        "penalty_last_n": "repeat_last_n",
        "penalty_freq": "frequency_penalty",
        "penalty_present": "presence_penalty",
    }

    def __post_init__(self) -> None:
        if not isinstance(self.prompt, str):
            raise ParameterError(f"prompt must be a string, got {type(self.prompt).__name__}")

        _require_int("max_tokens", self.max_tokens)
        if self.max_tokens < 0:
            raise ParameterError(f"max_tokens must be >= 0, got {self.max_tokens}")

        _require_number("temperature", self.temperature)

        _require_int("top_k", self.top_k)
        if self.top_k < 0:
            raise ParameterError(f"top_k must be >= 0, got {self.top_k}")

        _require_number("top_p", self.top_p)
        if not 0.0 < self.top_p <= 1.0:
            raise ParameterError(f"top_p must be in (0, 1], got {self.top_p}")

        _require_number("min_p", self.min_p)
        if not 0.0 <= self.min_p <= 1.0:
            raise ParameterError(f"min_p must be in [0, 1], got {self.min_p}")

        _require_number("repeat_penalty", self.repeat_penalty)
        if self.repeat_penalty <= 0.0:
            raise ParameterError(
                f"repeat_penalty must be positive, got {self.repeat_penalty}"
            )

        _require_int("repeat_last_n", self.repeat_last_n)
        if self.repeat_last_n < -1:
            raise ParameterError(
                f"repeat_last_n must be >= -1, got {self.repeat_last_n}"
            )

        _require_number("frequency_penalty", self.frequency_penalty)
        _require_number("presence_penalty", self.presence_penalty)
        _require_int("seed", self.seed)

        if isinstance(self.stop, str):
            self.stop = [self.stop]
        self.stop = list(self.stop)
        for stop in self.stop:
            if not isinstance(stop, str):
                raise ParameterError(f"stop sequences must be strings, got {stop!r}")

        bias = {}
        for token, value in dict(self.logit_bias).items():
            try:
                token_id = int(token)
            except (TypeError, ValueError) as e:
                raise ParameterError(f"logit_bias key {token!r} is not a token id") from e
            # -inf bans a token outright.
            _require_number(f"logit_bias[{token_id}]", value, finite=False)
            bias[token_id] = float(value)
        self.logit_bias = bias

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GenerationParams":
        return _build_from_dict(cls, data, cls.ALIASES)

    @classmethod
    def coerce(cls, value: Union["GenerationParams", Mapping[str, Any]]) -> "GenerationParams":
        if isinstance(value, cls):
            return value
        return cls.from_dict(value)
