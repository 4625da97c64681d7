"""
RoPE (Rotary Position Embeddings) for Qwen3-family checkpoints.

Hugging Face checkpoints rotate the two halves of each head ("rotate_half")
rather than interleaved pairs, so the tables here are laid out as
``[positions, head_dim]`` with the frequency block repeated twice.

References:
- RoFormer: Enhanced Transformer with Rotary Position Embedding
  https://arxiv.org/abs/2104.09864
"""

from typing import Optional, Tuple

import torch


def precompute_rope_tables(
    dim: int,
    end: int,
    theta: float = 10000.0,
    device: Optional[torch.device] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Precompute cosine and sine tables for positions ``[0, end)``.

    Args:
        dim: Dimension of each attention head (must be even).
        end: Number of positions to precompute.
        theta: Base value for frequency computation.
        device: Device to place the tables on.

    Returns:
        Tuple of (cos, sin), each of shape [end, dim] in float32.
    """
    inv_freq = 1.0 / (theta ** (torch.arange(0, dim, 2, device=device).float() / dim))
    positions = torch.arange(end, device=device).float()
    angles = torch.outer(positions, inv_freq)
    emb = torch.cat([angles, angles], dim=-1)
    return emb.cos(), emb.sin()


def rotate_half(x: torch.Tensor) -> torch.Tensor:
    half = x.shape[-1] // 2
    return torch.cat([-x[..., half:], x[..., :half]], dim=-1)


def apply_rotary_emb(
    q: torch.Tensor,
    k: torch.Tensor,
    cos: torch.Tensor,
    sin: torch.Tensor,
    position_offset: int = 0,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Rotate queries and keys by their absolute positions.

    Args:
        q: Queries of shape [batch_size, num_heads, seq_len, head_dim].
        k: Keys of shape [batch_size, num_kv_heads, seq_len, head_dim].
        cos: Cosine table from ``precompute_rope_tables``.
        sin: Sine table from ``precompute_rope_tables``.
        position_offset: Absolute position of the first token in ``q``/``k``.

    Returns:
        Tuple of (rotated_q, rotated_k) with the input dtypes.
    """
    seq_len = q.shape[2]
    cos = cos[position_offset : position_offset + seq_len][None, None]
    sin = sin[position_offset : position_offset + seq_len][None, None]

    q_float, k_float = q.float(), k.float()
    q_out = q_float * cos + rotate_half(q_float) * sin
    k_out = k_float * cos + rotate_half(k_float) * sin
    return q_out.type_as(q), k_out.type_as(k)
