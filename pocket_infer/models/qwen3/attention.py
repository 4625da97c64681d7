"""
Qwen3 attention layer implementation.

This module implements causal self-attention with:
- Grouped-Query Attention (GQA) with configurable key-value head grouping
- Optional q/k/v projection bias (Qwen2) and per-head q/k RMSNorm (Qwen3)
- Rotary Position Embeddings (RoPE)
- Incremental decoding against a KVCache
"""

from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from pocket_infer.cache.kv_cache import KVCache
from pocket_infer.models.qwen3.config import Qwen3Config
from pocket_infer.models.qwen3.rmsnorm import RMSNorm
from pocket_infer.models.qwen3.rope import apply_rotary_emb


def repeat_kv(hidden_states: torch.Tensor, n_rep: int) -> torch.Tensor:
    """Repeat key/value heads to match the number of query heads.

    For 14 query heads and 2 KV heads each KV head is repeated 7 times:
    [batch, 2, seq_len, head_dim] -> [batch, 14, seq_len, head_dim].
    """
    if n_rep == 1:
        return hidden_states
    batch, num_kv_heads, slen, head_dim = hidden_states.shape
    hidden_states = hidden_states[:, :, None, :, :].expand(
        batch, num_kv_heads, n_rep, slen, head_dim
    )
    return hidden_states.reshape(batch, num_kv_heads * n_rep, slen, head_dim)


def causal_mask(
    query_len: int, key_len: int, device: torch.device, dtype: torch.dtype
) -> torch.Tensor:
    """Additive mask letting query i see keys up to ``key_len - query_len + i``."""
    allowed = torch.ones(query_len, key_len, dtype=torch.bool, device=device).tril(
        diagonal=key_len - query_len
    )
    mask = torch.zeros(query_len, key_len, dtype=dtype, device=device)
    return mask.masked_fill(~allowed, torch.finfo(dtype).min)


class Qwen3Attention(nn.Module):
    """Multi-head causal self-attention with GQA and RoPE.

    Attributes:
        layer_idx: Index of the owning decoder layer, used as the cache slot.
        num_heads: Number of query attention heads.
        num_key_value_heads: Number of key-value attention heads.
        num_key_value_groups: Number of query heads per key-value head.
        head_dim: Dimension of each attention head.
    """

    def __init__(self, config: Qwen3Config, layer_idx: int) -> None:
        super().__init__()

        self.layer_idx = layer_idx
        self.num_heads = config.num_attention_heads
        self.num_key_value_heads = config.num_key_value_heads
        self.num_key_value_groups = config.num_key_value_groups
        self.head_dim = config.head_dim

        self.q_proj = nn.Linear(
            config.hidden_size, self.num_heads * self.head_dim, bias=config.attention_bias
        )
        self.k_proj = nn.Linear(
            config.hidden_size,
            self.num_key_value_heads * self.head_dim,
            bias=config.attention_bias,
        )
        self.v_proj = nn.Linear(
            config.hidden_size,
            self.num_key_value_heads * self.head_dim,
            bias=config.attention_bias,
        )
        self.o_proj = nn.Linear(
            self.num_heads * self.head_dim, config.hidden_size, bias=False
        )

        if config.qk_norm:
            self.q_norm = RMSNorm(self.head_dim, eps=config.rms_norm_eps)
            self.k_norm = RMSNorm(self.head_dim, eps=config.rms_norm_eps)
        else:
            self.q_norm = None
            self.k_norm = None

    def forward(
        self,
        hidden_states: torch.Tensor,
        cos: torch.Tensor,
        sin: torch.Tensor,
        position_offset: int = 0,
        kv_cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        """Attend over the cached positions plus the new ones.

        Args:
            hidden_states: Input of shape [batch_size, seq_len, hidden_size].
            cos: RoPE cosine table.
            sin: RoPE sine table.
            position_offset: Absolute position of the first new token.
            kv_cache: Cache to append this layer's keys/values to. Without a
                cache the layer attends over the new tokens only.

        Returns:
            Attention output of shape [batch_size, seq_len, hidden_size].
        """
        batch_size, seq_len, _ = hidden_states.shape

        q = self.q_proj(hidden_states).view(batch_size, seq_len, self.num_heads, self.head_dim)
        k = self.k_proj(hidden_states).view(
            batch_size, seq_len, self.num_key_value_heads, self.head_dim
        )
        v = self.v_proj(hidden_states).view(
            batch_size, seq_len, self.num_key_value_heads, self.head_dim
        )

        if self.q_norm is not None:
            q = self.q_norm(q)
            k = self.k_norm(k)

        # [batch, heads, seq_len, head_dim]
        q = q.transpose(1, 2)
        k = k.transpose(1, 2)
        v = v.transpose(1, 2)

        q, k = apply_rotary_emb(q, k, cos, sin, position_offset)

        if kv_cache is not None:
            k, v = kv_cache.update(self.layer_idx, k, v)

        k = repeat_kv(k, self.num_key_value_groups)
        v = repeat_kv(v, self.num_key_value_groups)

        scores = torch.matmul(q, k.transpose(-2, -1)) / (self.head_dim ** 0.5)
        scores = scores + causal_mask(seq_len, k.shape[2], scores.device, scores.dtype)
        attn_weights = F.softmax(scores.float(), dim=-1).to(q.dtype)
        attn_output = torch.matmul(attn_weights, v)

        attn_output = attn_output.transpose(1, 2).contiguous()
        attn_output = attn_output.view(batch_size, seq_len, self.num_heads * self.head_dim)
        return self.o_proj(attn_output)
