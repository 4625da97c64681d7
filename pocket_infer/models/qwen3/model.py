"""
Qwen3 causal language model.

Module and parameter names mirror the Hugging Face checkpoint layout
(``model.embed_tokens``, ``model.layers.N.self_attn.q_proj`` ...,
``model.norm``, ``lm_head``) so checkpoint tensors load without renaming.
"""

from typing import Optional

import torch
import torch.nn as nn

from pocket_infer.cache.kv_cache import KVCache
from pocket_infer.models.qwen3.config import Qwen3Config
from pocket_infer.models.qwen3.decoder_layer import Qwen3DecoderLayer
from pocket_infer.models.qwen3.rmsnorm import RMSNorm
from pocket_infer.models.qwen3.rope import precompute_rope_tables


class Qwen3Model(nn.Module):
    """Embedding, decoder stack and final norm.

    Attributes:
        embed_tokens: Token embedding table [vocab_size, hidden_size].
        layers: Decoder layers.
        norm: Final RMSNorm.
    """

    def __init__(self, config: Qwen3Config) -> None:
        super().__init__()
        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_size)
        self.layers = nn.ModuleList(
            [Qwen3DecoderLayer(config, layer_idx) for layer_idx in range(config.num_hidden_layers)]
        )
        self.norm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)

    def forward(
        self,
        input_ids: torch.Tensor,
        cos: torch.Tensor,
        sin: torch.Tensor,
        position_offset: int = 0,
        kv_cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        hidden_states = self.embed_tokens(input_ids)
        for layer in self.layers:
            hidden_states = layer(
                hidden_states, cos, sin, position_offset=position_offset, kv_cache=kv_cache
            )
        return self.norm(hidden_states)


class Qwen3ForCausalLM(nn.Module):
    """Decoder network with a language-modeling head.

    RoPE tables are plain tensors rather than registered buffers so the
    network can be built on the ``meta`` device and have checkpoint tensors
    assigned afterwards; ``init_rope`` builds them on the weights' device.
    """

    def __init__(self, config: Qwen3Config) -> None:
        super().__init__()
        self.config = config
        self.model = Qwen3Model(config)
        self.lm_head = nn.Linear(config.hidden_size, config.vocab_size, bias=False)
        self.rope_cos: Optional[torch.Tensor] = None
        self.rope_sin: Optional[torch.Tensor] = None

    @property
    def device(self) -> torch.device:
        return self.model.embed_tokens.weight.device

    @property
    def dtype(self) -> torch.dtype:
        return self.model.embed_tokens.weight.dtype

    def init_rope(self, max_positions: Optional[int] = None) -> None:
        if max_positions is None:
            max_positions = self.config.max_position_embeddings
        self.rope_cos, self.rope_sin = precompute_rope_tables(
            self.config.head_dim,
            max_positions,
            theta=self.config.rope_theta,
            device=self.device,
        )

    def forward(
        self,
        input_ids: torch.Tensor,
        kv_cache: Optional[KVCache] = None,
        last_only: bool = False,
    ) -> torch.Tensor:
        """Run the network and return logits.

        With a cache, positions continue from the cache's committed length,
        the new keys/values are appended and ``input_ids`` are committed as
        the next tokens of the history. If the pass fails, positions it had
        already appended are rolled back before the error propagates.

        Args:
            input_ids: Token ids of shape [batch_size, seq_len]; batch_size
                must be 1 when a cache is given.
            kv_cache: Optional cache to extend.
            last_only: Project only the final position through the LM head.

        Returns:
            Logits of shape [batch_size, seq_len or 1, vocab_size].
        """
        position_offset = len(kv_cache) if kv_cache is not None else 0
        seq_len = input_ids.shape[1]
        if self.rope_cos is None or self.rope_cos.shape[0] < position_offset + seq_len:
            self.init_rope(max(self.config.max_position_embeddings, position_offset + seq_len))

        try:
            hidden_states = self.model(
                input_ids,
                self.rope_cos,
                self.rope_sin,
                position_offset=position_offset,
                kv_cache=kv_cache,
            )
            if last_only:
                hidden_states = hidden_states[:, -1:, :]
            logits = self.lm_head(hidden_states)
            if kv_cache is not None:
                kv_cache.commit(input_ids[0].tolist())
        except BaseException:
            if kv_cache is not None:
                kv_cache.rollback()
            raise
        return logits
