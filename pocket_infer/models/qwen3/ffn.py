"""
Qwen3 Feed-Forward Network (FFN) with SwiGLU activation.

FFN(x) = down_proj(silu(gate_proj(x)) * up_proj(x))
"""

import torch
import torch.nn as nn
import torch.nn.functional as F

from pocket_infer.models.qwen3.config import Qwen3Config


class Qwen3FFN(nn.Module):
    """Gated feed-forward block.

    Attributes:
        gate_proj: hidden_size -> intermediate_size, passed through SiLU.
        up_proj: hidden_size -> intermediate_size, the gated values.
        down_proj: intermediate_size -> hidden_size.
    """

    def __init__(self, config: Qwen3Config) -> None:
        super().__init__()
        self.gate_proj = nn.Linear(config.hidden_size, config.intermediate_size, bias=False)
        self.up_proj = nn.Linear(config.hidden_size, config.intermediate_size, bias=False)
        self.down_proj = nn.Linear(config.intermediate_size, config.hidden_size, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.down_proj(F.silu(self.gate_proj(x)) * self.up_proj(x))
