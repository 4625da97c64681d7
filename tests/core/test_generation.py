"""
Tests for streamed generation on an inference context.

Generation is made deterministic by greedy decoding plus a large logit bias
on the token "a" (see the ``forced_params`` fixture), so every run emits a
known number of one-character fragments.
"""

import threading

import pytest
import torch

from pocket_infer import InferenceContext
from pocket_infer.core.context import ContextState
from pocket_infer.core.generation import StopReason, StopSequenceMatcher, common_prefix_length
from pocket_infer.errors import (
    BusyError,
    ContextOverflowError,
    ContextStateError,
    InferenceError,
    ParameterError,
)


PROMPT_TOKENS = 12  # "hello world!" is one byte-level token per character


@pytest.mark.unit
class TestStopSequenceMatcher:
    """Tests for withholding and matching stop sequences."""

    def test_no_stops_releases_everything(self):
        matcher = StopSequenceMatcher([])
        assert matcher.feed("abc") == ("abc", None)

    def test_match_inside_fragment(self):
        matcher = StopSequenceMatcher(["STOP"])
        assert matcher.feed("hello STOP world") == ("hello ", "STOP")

    def test_partial_match_is_withheld(self):
        matcher = StopSequenceMatcher(["</s>"])
        assert matcher.feed("hi <") == ("hi ", None)
        assert matcher.feed("/") == ("", None)
        assert matcher.feed("s>tail") == ("", "</s>")

    def test_withheld_text_released_when_match_fails(self):
        matcher = StopSequenceMatcher(["</s>"])
        matcher.feed("x</")
        assert matcher.feed("p") == ("</p", None)

    def test_earliest_stop_wins(self):
        matcher = StopSequenceMatcher(["world", "lo"])
        assert matcher.feed("hello world") == ("hel", "lo")

    def test_feed_after_match_releases_nothing(self):
        matcher = StopSequenceMatcher(["x"])
        matcher.feed("ax")
        assert matcher.feed("more") == ("", "x")

    def test_flush_returns_withheld_tail(self):
        matcher = StopSequenceMatcher(["abc"])
        assert matcher.feed("zab") == ("z", None)
        assert matcher.flush() == "ab"
        assert matcher.flush() == ""


@pytest.mark.unit
def test_common_prefix_length():
    """Test the shared-prefix computation used for prompt reuse."""
    assert common_prefix_length([1, 2, 3], [1, 2, 4]) == 2
    assert common_prefix_length([1, 2], [1, 2, 3]) == 2
    assert common_prefix_length([], [1]) == 0
    assert common_prefix_length([5], [6]) == 0


@pytest.mark.integration
class TestCompletion:
    """Tests for InferenceContext.complete."""

    def test_limit_emits_max_tokens_fragments(self, context: InferenceContext, forced_params):
        """Test that the forced run streams one "a" per token up to the limit."""
        fragments = []

        result = context.complete(forced_params(), fragments.append)

        assert fragments == ["a"] * 8
        assert result.text == "aaaaaaaa"
        assert result.tokens_predicted == 8
        assert result.tokens_evaluated == PROMPT_TOKENS
        assert result.stop_reason is StopReason.LIMIT
        assert result.stopped_limit
        assert context.n_tokens == PROMPT_TOKENS + 8
        assert context.state is ContextState.READY

    def test_fragments_concatenate_to_text(self, context: InferenceContext):
        """Test that sampled output streams losslessly."""
        fragments = []

        result = context.complete(
            {"prompt": "hello world!", "max_tokens": 12, "temperature": 0.9, "seed": 3},
            fragments.append,
        )

        assert "".join(fragments) == result.text
        assert result.tokens_predicted <= 12

    def test_max_tokens_zero_does_nothing(self, context: InferenceContext, forced_params):
        """Test that max_tokens=0 returns an empty result without callbacks."""
        fragments = []

        result = context.complete(forced_params(max_tokens=0), fragments.append)

        assert fragments == []
        assert result.text == ""
        assert result.tokens_predicted == 0
        assert context.n_tokens == 0

    def test_eos_stops_generation(self, context: InferenceContext):
        """Test that sampling the end-of-sequence token ends the run."""
        eos_id = context.tokenize("<|im_end|>")[0]
        fragments = []

        result = context.complete(
            {
                "prompt": "hello world!",
                "max_tokens": 4,
                "temperature": 0.0,
                "logit_bias": {eos_id: 100.0},
            },
            fragments.append,
        )

        assert result.stop_reason is StopReason.EOS
        assert result.stopped_eos
        assert result.tokens_predicted == 0
        assert fragments == []
        assert context.n_tokens == PROMPT_TOKENS

    def test_stop_sequence_is_not_emitted(self, context: InferenceContext, forced_params):
        """Test that a matched stop sequence ends the run and is dropped."""
        fragments = []

        result = context.complete(forced_params(stop=["aaa"]), fragments.append)

        assert fragments == []
        assert result.text == ""
        assert result.stop_reason is StopReason.STOP_SEQUENCE
        assert result.stopping_word == "aaa"
        assert result.tokens_predicted == 3

    def test_unmatched_partial_stop_is_flushed(self, context: InferenceContext, forced_params):
        """Test that text withheld for a stop that never matches is released."""
        fragments = []

        result = context.complete(forced_params(stop=["ab"]), fragments.append)

        assert "".join(fragments) == "aaaaaaaa"
        assert result.text == "aaaaaaaa"
        assert result.stop_reason is StopReason.LIMIT

    def test_cancel_after_fragments(self, context: InferenceContext, forced_params):
        """Test that stop_completion from the callback ends the run promptly."""
        fragments = []

        def on_token(text):
            fragments.append(text)
            if len(fragments) == 3:
                context.stop_completion()

        result = context.complete(forced_params(max_tokens=50), on_token)

        assert fragments == ["a"] * 3
        assert result.text == "aaa"
        assert result.interrupted
        assert result.stop_reason is StopReason.CANCELLED
        assert context.state is ContextState.READY

    def test_stop_completion_without_run_is_noop(self, context: InferenceContext, forced_params):
        """Test that a stale stop request does not affect the next run."""
        context.stop_completion()

        result = context.complete(forced_params())

        assert result.stop_reason is StopReason.LIMIT

    def test_prompt_prefix_is_reused(self, context: InferenceContext, forced_params):
        """Test that a prompt extending the history only evaluates the new tokens."""
        first = context.complete(forced_params())

        second = context.complete(forced_params(prompt="hello world!" + first.text[:4]))

        assert second.tokens_cached == PROMPT_TOKENS + 3
        assert second.tokens_evaluated == 1

    def test_unrelated_prompt_is_reevaluated(self, context: InferenceContext, forced_params):
        """Test that a different prompt discards the old history."""
        context.complete(forced_params())

        result = context.complete(forced_params(prompt="xyz"))

        assert result.tokens_cached == 0
        assert result.tokens_evaluated == 3
        assert context.n_tokens == 3 + 8

    def test_overflow_raises(self, context: InferenceContext, forced_params):
        """Test that prompt plus max_tokens beyond n_ctx is rejected."""
        with pytest.raises(ContextOverflowError):
            context.complete(forced_params(prompt="x" * 250, max_tokens=10))

        assert context.state is ContextState.READY
        assert context.n_tokens == 0

    def test_empty_prompt_raises(self, context: InferenceContext, forced_params):
        with pytest.raises(ParameterError):
            context.complete(forced_params(prompt=""))
        assert context.state is ContextState.READY

    def test_unknown_parameter_raises(self, context: InferenceContext, forced_params):
        with pytest.raises(ParameterError, match="bogus"):
            context.complete(forced_params(bogus=1))

    def test_callback_exception_propagates(self, context: InferenceContext, forced_params):
        """Test that a failing callback aborts the run and leaves the context usable."""

        def on_token(text):
            raise KeyError("callback failed")

        with pytest.raises(KeyError):
            context.complete(forced_params(), on_token)

        assert context.state is ContextState.READY
        assert context.complete(forced_params()).tokens_predicted == 8

    def test_forward_failure_fails_context(self, context: InferenceContext, forced_params, monkeypatch):
        """Test that a failing forward pass raises InferenceError and disables the context."""

        def broken_forward(*args, **kwargs):
            raise RuntimeError("out of memory")

        monkeypatch.setattr(context.model_handle.model, "forward", broken_forward)

        with pytest.raises(InferenceError) as exc_info:
            context.complete(forced_params())

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert context.state is ContextState.FAILED
        with pytest.raises(ContextStateError):
            context.complete(forced_params())

    def test_non_finite_logits_raise(self, context: InferenceContext, forced_params, monkeypatch):
        """Test that NaN logits are reported instead of sampled."""
        vocab_size = context.model_handle.config.vocab_size

        def nan_forward(input_ids, kv_cache=None, last_only=False):
            return torch.full((1, 1, vocab_size), float("nan"))

        monkeypatch.setattr(context.model_handle.model, "forward", nan_forward)

        with pytest.raises(InferenceError, match="non-finite"):
            context.complete(forced_params())


@pytest.mark.integration
class TestStream:
    """Tests for the generator form of completion."""

    def test_stream_returns_result(self, context: InferenceContext, forced_params):
        stream = context.stream(forced_params(max_tokens=4))
        fragments = []
        while True:
            try:
                fragments.append(next(stream))
            except StopIteration as stop:
                result = stop.value
                break

        assert fragments == ["a"] * 4
        assert result.text == "aaaa"

    def test_stream_claims_context_while_running(self, context: InferenceContext, forced_params):
        """Test that a partially consumed stream holds the context until closed."""
        stream = context.stream(forced_params())
        assert context.state is ContextState.READY

        assert next(stream) == "a"
        assert context.state is ContextState.GENERATING
        with pytest.raises(BusyError):
            context.complete(forced_params())

        stream.close()
        assert context.state is ContextState.READY
        assert context.complete(forced_params()).tokens_predicted == 8


@pytest.mark.integration
def test_concurrent_operation_raises_busy(context: InferenceContext, forced_params):
    """Test that a second mutating call during generation fails with BusyError."""
    first_token = threading.Event()
    release = threading.Event()
    outcome = {}

    def on_token(text):
        first_token.set()
        release.wait(timeout=10)

    def worker():
        outcome["result"] = context.complete(forced_params(max_tokens=2), on_token)

    thread = threading.Thread(target=worker)
    thread.start()
    try:
        assert first_token.wait(timeout=10)
        with pytest.raises(BusyError):
            context.complete(forced_params())
        with pytest.raises(BusyError):
            context.save_session("unused.session")
    finally:
        release.set()
        thread.join(timeout=10)

    assert outcome["result"].tokens_predicted == 2
    assert context.state is ContextState.READY


@pytest.mark.integration
def test_invalidate_during_generation_cancels(context: InferenceContext, forced_params):
    """Test that invalidating mid-run stops the run and releases the model."""
    fragments = []

    def on_token(text):
        fragments.append(text)
        if len(fragments) == 2:
            context.invalidate()

    result = context.complete(forced_params(max_tokens=50), on_token)

    assert result.interrupted
    assert context.state is ContextState.INVALIDATED
    with pytest.raises(ContextStateError):
        context.tokenize("a")


@pytest.mark.integration
@pytest.mark.parametrize("name", ["temperature", "frequency_penalty", "presence_penalty"])
def test_non_finite_sampling_value_rejected_before_prompt(context: InferenceContext, forced_params, name):
    """Test that NaN sampling settings fail validation without evaluating the prompt."""
    with pytest.raises(ParameterError, match=name):
        context.complete(forced_params(**{name: float("nan")}))

    assert context.n_tokens == 0
    assert context.state is ContextState.READY
