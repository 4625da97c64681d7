"""
Attention KV cache.

Provides:
- KVCache: Per-layer key/value tensors plus the committed token history
"""

from pocket_infer.cache.kv_cache import KVCache

__all__ = ["KVCache"]
