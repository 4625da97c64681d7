"""
Per-context attention key/value cache.

The cache stores one key and one value tensor per decoder layer, shaped
``[1, num_kv_heads, num_tokens, head_dim]``, together with the token ids
that produced them. A forward pass appends to every layer through
``update`` and then ``commit``s its token ids; ``commit`` checks that each
layer grew by exactly that many positions, so the token history and the
cached positions can never drift apart.
"""

from typing import Dict, List, Optional, Sequence, Tuple

import torch


class KVCache:
    """Attention state accumulated over the tokens fed through the model.

    Attributes:
        num_layers: Number of decoder layers cached.
        max_tokens: Capacity in positions (the context window).
        token_ids: Committed token history, one id per cached position.
    """

    def __init__(self, num_layers: int, max_tokens: int) -> None:
        if num_layers <= 0:
            raise ValueError(f"num_layers must be positive, got {num_layers}")
        if max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {max_tokens}")

        self.num_layers = num_layers
        self.max_tokens = max_tokens
        self.token_ids: List[int] = []
        self._keys: List[Optional[torch.Tensor]] = [None] * num_layers
        self._values: List[Optional[torch.Tensor]] = [None] * num_layers

    def __len__(self) -> int:
        return len(self.token_ids)

    @property
    def remaining(self) -> int:
        return self.max_tokens - len(self.token_ids)

    def layer_length(self, layer_idx: int) -> int:
        keys = self._keys[layer_idx]
        return 0 if keys is None else keys.shape[2]

    def layer(self, layer_idx: int) -> Tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
        return self._keys[layer_idx], self._values[layer_idx]

    def update(
        self, layer_idx: int, keys: torch.Tensor, values: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Append new positions to one layer and return the full layer state.

        Args:
            layer_idx: Decoder layer index.
            keys: New keys of shape [1, num_kv_heads, new_tokens, head_dim].
            values: New values of the same shape.

        Returns:
            Tuple of (all_keys, all_values) for the layer.

        Raises:
            RuntimeError: If the layer would exceed the cache capacity.
        """
        if self.layer_length(layer_idx) + keys.shape[2] > self.max_tokens:
            raise RuntimeError(
                f"KV cache capacity exceeded on layer {layer_idx}: "
                f"{self.layer_length(layer_idx)} + {keys.shape[2]} > {self.max_tokens}"
            )

        cached_keys = self._keys[layer_idx]
        if cached_keys is None:
            self._keys[layer_idx] = keys
            self._values[layer_idx] = values
        else:
            self._keys[layer_idx] = torch.cat([cached_keys, keys], dim=2)
            self._values[layer_idx] = torch.cat([self._values[layer_idx], values], dim=2)

        return self._keys[layer_idx], self._values[layer_idx]

    def commit(self, token_ids: Sequence[int]) -> None:
        """Record the tokens of a completed forward pass.

        Raises:
            RuntimeError: If any layer's length disagrees with the history.
        """
        expected = len(self.token_ids) + len(token_ids)
        for layer_idx in range(self.num_layers):
            if self.layer_length(layer_idx) != expected:
                raise RuntimeError(
                    f"KV cache layer {layer_idx} holds {self.layer_length(layer_idx)} "
                    f"positions, expected {expected}"
                )
        self.token_ids.extend(int(t) for t in token_ids)

    def rollback(self) -> None:
        """Drop uncommitted positions left behind by a failed forward pass."""
        self.trim(len(self.token_ids))

    def trim(self, num_tokens: int) -> None:
        """Keep only the first ``num_tokens`` positions."""
        if not 0 <= num_tokens <= len(self.token_ids):
            raise ValueError(
                f"Cannot trim cache of {len(self.token_ids)} tokens to {num_tokens}"
            )
        if num_tokens == 0:
            self.reset()
            return

        for layer_idx in range(self.num_layers):
            if self._keys[layer_idx] is not None:
                self._keys[layer_idx] = self._keys[layer_idx][:, :, :num_tokens]
                self._values[layer_idx] = self._values[layer_idx][:, :, :num_tokens]
        del self.token_ids[num_tokens:]

    def reset(self) -> None:
        self.token_ids = []
        self._keys = [None] * self.num_layers
        self._values = [None] * self.num_layers

    def export_tensors(self, num_tokens: Optional[int] = None) -> Dict[str, torch.Tensor]:
        """Return contiguous CPU copies of the first ``num_tokens`` positions.

        The cache itself is not modified. An empty cache exports no tensors.
        """
        if num_tokens is None:
            num_tokens = len(self.token_ids)
        if not 0 <= num_tokens <= len(self.token_ids):
            raise ValueError(
                f"Cannot export {num_tokens} tokens from a cache of {len(self.token_ids)}"
            )

        tensors: Dict[str, torch.Tensor] = {}
        if num_tokens == 0:
            return tensors
        for layer_idx in range(self.num_layers):
            keys, values = self._keys[layer_idx], self._values[layer_idx]
            tensors[f"layers.{layer_idx}.keys"] = keys[:, :, :num_tokens].contiguous().cpu()
            tensors[f"layers.{layer_idx}.values"] = values[:, :, :num_tokens].contiguous().cpu()
        return tensors

    def restore(
        self,
        token_ids: Sequence[int],
        tensors: Dict[str, torch.Tensor],
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> None:
        """Replace the whole cache with previously exported state.

        The caller validates ``tensors`` beforehand; this method only moves
        them into place.
        """
        if len(token_ids) > self.max_tokens:
            raise ValueError(
                f"Cannot restore {len(token_ids)} tokens into a cache of {self.max_tokens}"
            )
        self.reset()
        if not token_ids:
            return
        for layer_idx in range(self.num_layers):
            self._keys[layer_idx] = tensors[f"layers.{layer_idx}.keys"].to(device=device, dtype=dtype)
            self._values[layer_idx] = tensors[f"layers.{layer_idx}.values"].to(device=device, dtype=dtype)
        self.token_ids = [int(t) for t in token_ids]

    def __repr__(self) -> str:
        return (
            f"KVCache(num_layers={self.num_layers}, "
            f"tokens={len(self.token_ids)}, max_tokens={self.max_tokens})"
        )
