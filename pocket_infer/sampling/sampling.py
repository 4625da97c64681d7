"""
Sampling strategies for text generation.

This module implements the logit processors and the token sampler used by
the generation loop. Processors run in a fixed order: logit bias, penalties,
top-k, top-p, min-p, temperature, then the draw.
"""

import random
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import torch


@dataclass
class SamplingParams:
    """Parameters for sampling strategies."""
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    repetition_penalty: float = 1.0
    penalty_last_n: int = 64
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    logit_bias: Dict[int, float] = field(default_factory=dict)
    seed: int = -1


def greedy_sampling(logits: torch.Tensor) -> torch.Tensor:
    """Greedy sampling (argmax)."""
    return logits.argmax(dim=-1)


def temperature_scaling(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    """Apply temperature scaling."""
    return logits / temperature


def apply_logit_bias(logits: torch.Tensor, logit_bias: Dict[int, float]) -> torch.Tensor:
    """Add per-token biases. Ids outside the vocabulary are ignored."""
    if not logit_bias:
        return logits
    vocab_size = logits.shape[-1]
    for token_id, bias in logit_bias.items():
        if 0 <= token_id < vocab_size:
            logits[..., token_id] += bias
    return logits


def top_k_sampling(logits: torch.Tensor, k: int) -> torch.Tensor:
    """Top-k sampling."""
    if k <= 0 or k >= logits.shape[-1]:
        return logits

    top_k_logits, top_k_indices = torch.topk(logits, k, dim=-1)

    # Create mask for top-k
    mask = torch.full_like(logits, float('-inf'))
    mask.scatter_(-1, top_k_indices, top_k_logits)

    return mask


def top_p_sampling(logits: torch.Tensor, p: float) -> torch.Tensor:
    """Top-p (nucleus) sampling."""
    if p >= 1.0:
        return logits

    sorted_logits, sorted_indices = torch.sort(logits, descending=True, dim=-1)
    cumulative_probs = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)

    # Remove tokens once the mass before them already exceeds p
    sorted_to_remove = cumulative_probs > p
    sorted_to_remove[..., 1:] = sorted_to_remove[..., :-1].clone()
    sorted_to_remove[..., 0] = False

    to_remove = sorted_to_remove.scatter(-1, sorted_indices, sorted_to_remove)
    return logits.masked_fill(to_remove, float('-inf'))


def min_p_sampling(logits: torch.Tensor, min_p: float) -> torch.Tensor:
    """Drop tokens whose probability is below ``min_p`` times the top one."""
    if min_p <= 0.0:
        return logits

    probs = torch.softmax(logits, dim=-1)
    threshold = probs.max(dim=-1, keepdim=True).values * min_p
    return logits.masked_fill(probs < threshold, float('-inf'))


def apply_frequency_penalty(logits: torch.Tensor, token_counts: torch.Tensor, penalty: float) -> torch.Tensor:
    """Apply frequency penalty."""
    if penalty == 0.0:
        return logits
    return logits - penalty * token_counts


def apply_presence_penalty(logits: torch.Tensor, token_presence: torch.Tensor, penalty: float) -> torch.Tensor:
    """Apply presence penalty."""
    if penalty == 0.0:
        return logits
    return logits - penalty * token_presence


def apply_repetition_penalty(logits: torch.Tensor, previous_tokens: torch.Tensor, penalty: float) -> torch.Tensor:
    """Apply repetition penalty."""
    if penalty == 1.0 or previous_tokens.numel() == 0:
        return logits

    tokens = previous_tokens.unique()
    selected = logits[tokens]
    logits[tokens] = torch.where(selected > 0, selected / penalty, selected * penalty)
    return logits


def apply_penalties(
    logits: torch.Tensor, history: Sequence[int], params: SamplingParams
) -> torch.Tensor:
    """Apply repetition, frequency and presence penalties over the recent window.

    ``penalty_last_n`` of 0 disables penalties, -1 uses the whole history.
    """
    if params.penalty_last_n == 0 or not history:
        return logits
    if (
        params.repetition_penalty == 1.0
        and params.frequency_penalty == 0.0
        and params.presence_penalty == 0.0
    ):
        return logits

    window = history if params.penalty_last_n < 0 else history[-params.penalty_last_n:]
    vocab_size = logits.shape[-1]
    previous = torch.tensor(
        [t for t in window if 0 <= t < vocab_size], dtype=torch.long, device=logits.device
    )
    if previous.numel() == 0:
        return logits

    logits = apply_repetition_penalty(logits, previous, params.repetition_penalty)
    counts = torch.bincount(previous, minlength=vocab_size).to(logits.dtype)
    logits = apply_frequency_penalty(logits, counts, params.frequency_penalty)
    logits = apply_presence_penalty(logits, (counts > 0).to(logits.dtype), params.presence_penalty)
    return logits


class Sampler:
    """Draws tokens from next-token logits with a private random generator.

    Attributes:
        params: Sampling configuration for the run.
        seed: The seed actually used; drawn at random when ``params.seed`` is -1.
    """

    def __init__(self, params: SamplingParams, device: Optional[torch.device] = None) -> None:
        self.params = params
        self.seed = params.seed if params.seed >= 0 else random.getrandbits(63)
        self.generator = torch.Generator(device=device or "cpu")
        self.generator.manual_seed(self.seed)

    def __call__(self, logits: torch.Tensor, history: Sequence[int] = ()) -> int:
        """Sample the next token id.

        Args:
            logits: Next-token logits of shape [vocab_size].
            history: Token ids already in the context, oldest first.

        Returns:
            The selected token id.
        """
        params = self.params
        logits = logits.float().clone()

        logits = apply_logit_bias(logits, params.logit_bias)
        logits = apply_penalties(logits, history, params)

        if params.temperature <= 0.0:
            return int(greedy_sampling(logits))

        logits = top_k_sampling(logits, params.top_k)
        logits = top_p_sampling(logits, params.top_p)
        logits = min_p_sampling(logits, params.min_p)
        logits = temperature_scaling(logits, params.temperature)

        probs = torch.softmax(logits, dim=-1)
        return int(torch.multinomial(probs, num_samples=1, generator=self.generator))
