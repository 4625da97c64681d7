"""
Autoregressive generation over a KV cache.

GenerationLoop runs one completion: it evaluates the prompt (reusing the
cached prefix it shares with the previous history), then samples, decodes,
filters and evaluates one token at a time until a stop condition. Text is
produced as a generator of fragments whose concatenation is exactly the
result text.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Generator, List, Optional, Sequence, Tuple

import torch

from pocket_infer.cache.kv_cache import KVCache
from pocket_infer.core.model_store import ModelHandle
from pocket_infer.core.params import GenerationParams
from pocket_infer.errors import ContextOverflowError, InferenceError, ParameterError
from pocket_infer.sampling.sampling import Sampler, SamplingParams

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str], None]


class StopReason(str, Enum):
    STOP_SEQUENCE = "stop_sequence"
    EOS = "eos"
    LIMIT = "limit"
    CANCELLED = "cancelled"
    NONE = "none"


@dataclass
class Timings:
    """Wall-clock timings of a completion."""

    prompt_n: int = 0
    prompt_ms: float = 0.0
    predicted_n: int = 0
    predicted_ms: float = 0.0

    @property
    def prompt_per_second(self) -> float:
        return self.prompt_n / self.prompt_ms * 1000.0 if self.prompt_ms > 0 else 0.0

    @property
    def predicted_per_second(self) -> float:
        return self.predicted_n / self.predicted_ms * 1000.0 if self.predicted_ms > 0 else 0.0


@dataclass
class CompletionResult:
    """Outcome of one completion run.

    Attributes:
        text: Generated text, equal to the concatenation of streamed fragments.
        tokens_predicted: Tokens sampled and kept (EOS excluded).
        tokens_evaluated: Prompt tokens evaluated by this run.
        tokens_cached: Prompt tokens reused from the previous history.
        stop_reason: Why generation ended.
        stopping_word: The stop sequence that matched, if any.
        timings: Prompt and generation timings.
    """

    text: str = ""
    tokens_predicted: int = 0
    tokens_evaluated: int = 0
    tokens_cached: int = 0
    stop_reason: StopReason = StopReason.NONE
    stopping_word: Optional[str] = None
    timings: Timings = field(default_factory=Timings)

    @property
    def stopped_eos(self) -> bool:
        return self.stop_reason is StopReason.EOS

    @property
    def stopped_word(self) -> bool:
        return self.stop_reason is StopReason.STOP_SEQUENCE

    @property
    def stopped_limit(self) -> bool:
        return self.stop_reason is StopReason.LIMIT

    @property
    def interrupted(self) -> bool:
        return self.stop_reason is StopReason.CANCELLED


class StopSequenceMatcher:
    """Filters streamed text against a set of stop sequences.

    Text that could still turn into a stop sequence is withheld until the
    next fragment decides it. Once a stop sequence matches, the text before
    it is released and everything from the match on is discarded.
    """

    def __init__(self, stops: Sequence[str]) -> None:
        self.stops = [s for s in stops if s]
        self._pending = ""
        self.matched: Optional[str] = None

    def feed(self, text: str) -> Tuple[str, Optional[str]]:
        """Add decoded text and return ``(released_text, matched_stop)``."""
        if self.matched is not None:
            return "", self.matched

        buffer = self._pending + text
        if not self.stops:
            self._pending = ""
            return buffer, None

        best_index, best_stop = -1, None
        for stop in self.stops:
            index = buffer.find(stop)
            if index != -1 and (best_index == -1 or index < best_index):
                best_index, best_stop = index, stop
        if best_stop is not None:
            self._pending = ""
            self.matched = best_stop
            return buffer[:best_index], best_stop

        hold = self._partial_match_length(buffer)
        self._pending = buffer[len(buffer) - hold:] if hold else ""
        return buffer[:len(buffer) - hold], None

    def _partial_match_length(self, buffer: str) -> int:
        longest = 0
        for stop in self.stops:
            for length in range(min(len(stop) - 1, len(buffer)), longest, -1):
                if buffer.endswith(stop[:length]):
                    longest = length
                    break
        return longest

    def flush(self) -> str:
        """Release withheld text when generation stops for another reason."""
        text, self._pending = self._pending, ""
        return text


def common_prefix_length(a: Sequence[int], b: Sequence[int]) -> int:
    n = 0
    for x, y in zip(a, b):
        if x != y:
            break
        n += 1
    return n


def to_sampling_params(params: GenerationParams) -> SamplingParams:
    return SamplingParams(
        temperature=params.temperature,
        top_k=params.top_k,
        top_p=params.top_p,
        min_p=params.min_p,
        repetition_penalty=params.repeat_penalty,
        penalty_last_n=params.repeat_last_n,
        frequency_penalty=params.frequency_penalty,
        presence_penalty=params.presence_penalty,
        logit_bias=dict(params.logit_bias),
        seed=params.seed,
    )


class GenerationLoop:
    """One completion run against a model and its cache.

    Args:
        handle: Loaded model.
        cache: The context's KV cache; extended in place.
        params: Generation parameters for this run.
        cancel_event: Set from any thread to stop at the next token boundary.
        n_batch: Maximum prompt tokens per forward pass.
    """

    def __init__(
        self,
        handle: ModelHandle,
        cache: KVCache,
        params: GenerationParams,
        cancel_event: Optional[threading.Event] = None,
        n_batch: int = 512,
    ) -> None:
        self.handle = handle
        self.cache = cache
        self.params = params
        self.cancel_event = cancel_event or threading.Event()
        self.n_batch = n_batch

    def _evaluate(self, token_ids: List[int]) -> torch.Tensor:
        """Feed tokens through the model and return next-token logits [vocab]."""
        input_ids = torch.tensor([token_ids], dtype=torch.long, device=self.handle.device)
        try:
            with torch.no_grad():
                logits = self.handle.model(input_ids, kv_cache=self.cache, last_only=True)
        except Exception as err:
            raise InferenceError(f"Forward pass failed: {err}") from err

        logits = logits[0, -1]
        if not torch.isfinite(logits).all():
            raise InferenceError("Model produced non-finite logits")
        return logits

    def stream(self) -> Generator[str, None, CompletionResult]:
        """Run the completion, yielding text fragments as they are released.

        Returns:
            The CompletionResult, as the generator's return value.

        Raises:
            ParameterError: If the prompt tokenizes to nothing.
            ContextOverflowError: If prompt plus max_tokens exceed the window.
            InferenceError: If the forward pass fails.
        """
        params = self.params
        result = CompletionResult()
        if params.max_tokens == 0:
            return result

        codec = self.handle.codec
        prompt_tokens = codec.tokenize(params.prompt)
        if not prompt_tokens:
            raise ParameterError("Prompt produced no tokens")
        if len(prompt_tokens) + params.max_tokens > self.handle.context_length:
            raise ContextOverflowError(
                f"Prompt of {len(prompt_tokens)} tokens plus max_tokens={params.max_tokens} "
                f"exceeds the context window of {self.handle.context_length}"
            )

        # Keep at least one prompt token to evaluate so there are logits to sample from.
        reuse = min(common_prefix_length(self.cache.token_ids, prompt_tokens), len(prompt_tokens) - 1)
        self.cache.trim(reuse)
        result.tokens_cached = reuse
        logger.debug(
            "Prompt: %d tokens, %d reused from cache, %d to evaluate",
            len(prompt_tokens),
            reuse,
            len(prompt_tokens) - reuse,
        )

        start = time.perf_counter()
        logits = None
        for offset in range(reuse, len(prompt_tokens), self.n_batch):
            if logits is not None and self.cancel_event.is_set():
                break
            chunk = prompt_tokens[offset:offset + self.n_batch]
            logits = self._evaluate(chunk)
            result.tokens_evaluated += len(chunk)
        result.timings.prompt_n = result.tokens_evaluated
        result.timings.prompt_ms = (time.perf_counter() - start) * 1000.0

        if self.cancel_event.is_set():
            result.stop_reason = StopReason.CANCELLED
            logger.debug("Completion cancelled during prompt evaluation")
            return result

        sampler = Sampler(to_sampling_params(params), device=self.handle.device)
        detokenizer = codec.streaming_detokenizer()
        matcher = StopSequenceMatcher(params.stop)
        pieces: List[str] = []

        start = time.perf_counter()
        while True:
            token = sampler(logits, self.cache.token_ids)
            if codec.is_eos(token) and not params.ignore_eos:
                result.stop_reason = StopReason.EOS
                break

            result.tokens_predicted += 1
            released, matched = matcher.feed(detokenizer.add_token(token))
            if released:
                pieces.append(released)
                yield released

            logits = self._evaluate([token])

            if matched is not None:
                result.stop_reason = StopReason.STOP_SEQUENCE
                result.stopping_word = matched
                break
            if result.tokens_predicted >= params.max_tokens:
                result.stop_reason = StopReason.LIMIT
                break
            if self.cancel_event.is_set():
                result.stop_reason = StopReason.CANCELLED
                break

        if result.stop_reason is not StopReason.STOP_SEQUENCE:
            tail = matcher.flush()
            if tail:
                pieces.append(tail)
                yield tail

        result.timings.predicted_n = result.tokens_predicted
        result.timings.predicted_ms = (time.perf_counter() - start) * 1000.0
        result.text = "".join(pieces)
        logger.debug(
            "Completion stopped (%s) after %d tokens in %.1f ms",
            result.stop_reason.value,
            result.tokens_predicted,
            result.timings.predicted_ms,
        )
        return result

    def run(self, on_token: Optional[TokenCallback] = None) -> CompletionResult:
        """Run the completion to the end, passing each fragment to ``on_token``."""
        return consume(self.stream(), on_token)


def consume(
    stream: Generator[str, None, CompletionResult], on_token: Optional[TokenCallback] = None
) -> CompletionResult:
    """Drain a fragment generator into ``on_token`` and return its result.

    The generator is closed even when ``on_token`` raises.
    """
    try:
        while True:
            try:
                fragment = next(stream)
            except StopIteration as stop:
                return stop.value
            if on_token is not None:
                on_token(fragment)
    finally:
        stream.close()
