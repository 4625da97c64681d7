"""
Qwen3 decoder layer.

Pre-norm layout with residual connections:
    x = x + attention(input_layernorm(x))
    x = x + mlp(post_attention_layernorm(x))
"""

from typing import Optional

import torch
import torch.nn as nn

from pocket_infer.cache.kv_cache import KVCache
from pocket_infer.models.qwen3.attention import Qwen3Attention
from pocket_infer.models.qwen3.config import Qwen3Config
from pocket_infer.models.qwen3.ffn import Qwen3FFN
from pocket_infer.models.qwen3.rmsnorm import RMSNorm


class Qwen3DecoderLayer(nn.Module):
    """Self-attention plus feed-forward block with pre-normalization."""

    def __init__(self, config: Qwen3Config, layer_idx: int) -> None:
        super().__init__()
        self.input_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.self_attn = Qwen3Attention(config, layer_idx)
        self.post_attention_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.mlp = Qwen3FFN(config)

    def forward(
        self,
        hidden_states: torch.Tensor,
        cos: torch.Tensor,
        sin: torch.Tensor,
        position_offset: int = 0,
        kv_cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        residual = hidden_states
        hidden_states = self.self_attn(
            self.input_layernorm(hidden_states),
            cos,
            sin,
            position_offset=position_offset,
            kv_cache=kv_cache,
        )
        hidden_states = residual + hidden_states

        residual = hidden_states
        hidden_states = self.mlp(self.post_attention_layernorm(hidden_states))
        return residual + hidden_states
