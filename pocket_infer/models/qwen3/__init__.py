"""
Qwen3 model implementation.

Components:
- Qwen3ForCausalLM: Decoder stack with LM head and incremental KV caching
- Qwen3DecoderLayer: Transformer decoder layer
- Qwen3Attention: Causal attention with GQA and RoPE
- Qwen3FFN: Feed-forward network with SwiGLU activation
- Weight loading utilities for Hugging Face safetensors checkpoints
"""

from pocket_infer.models.qwen3.config import Qwen3Config
from pocket_infer.models.qwen3.rmsnorm import RMSNorm
from pocket_infer.models.qwen3.rope import precompute_rope_tables, apply_rotary_emb
from pocket_infer.models.qwen3.attention import Qwen3Attention
from pocket_infer.models.qwen3.model import Qwen3ForCausalLM, Qwen3Model

__all__ = [
    "Qwen3Config",
    "RMSNorm",
    "precompute_rope_tables",
    "apply_rotary_emb",
    "Qwen3Attention",
    "Qwen3Model",
    "Qwen3ForCausalLM",
]
