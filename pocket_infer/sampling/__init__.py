"""
Token sampling strategies.

Provides:
- SamplingParams: Sampling configuration dataclass
- Sampler: Seeded sampler applied to next-token logits
- Processors: logit bias, penalties, top-k, top-p, min-p, temperature
"""

from pocket_infer.sampling.sampling import Sampler, SamplingParams

__all__ = ["Sampler", "SamplingParams"]
