"""
Qwen3 model configuration.

This module defines the Qwen3Config class which stores the architecture
hyperparameters the decoder network needs. It covers the Qwen2/Qwen3 family
and plain Llama checkpoints, which share the same layout (RMSNorm, RoPE,
grouped-query attention, SwiGLU) and differ only in attention bias, per-head
q/k normalization and default head dimension.
"""

from typing import Any, Dict, Optional, Tuple

from transformers import AutoConfig


SUPPORTED_MODEL_TYPES = ("qwen2", "qwen3", "llama")


class Qwen3Config:
    """Configuration class for Qwen3-family decoder models.

    Attributes:
        vocab_size: Size of the vocabulary.
        hidden_size: Dimension of the hidden representations.
        num_hidden_layers: Number of transformer decoder layers.
        num_attention_heads: Number of attention heads for queries.
        num_key_value_heads: Number of attention heads for keys/values (GQA).
        head_dim: Dimension of a single attention head.
        intermediate_size: Dimension of the FFN intermediate layer.
        max_position_embeddings: Maximum sequence length supported.
        rms_norm_eps: Epsilon value for RMSNorm stability.
        rope_theta: Base frequency for rotary position embeddings.
        attention_bias: Whether the q/k/v projections carry a bias.
        qk_norm: Whether queries and keys are RMS-normalized per head.
        tie_word_embeddings: Whether the LM head reuses the embedding matrix.
        eos_token_ids: End-of-sequence token ids declared by the checkpoint.
        model_type: Architecture family name from the checkpoint.
    """

    def __init__(
        self,
        vocab_size: int = 151936,
        hidden_size: int = 896,
        num_hidden_layers: int = 24,
        num_attention_heads: int = 14,
        num_key_value_heads: int = 2,
        head_dim: Optional[int] = None,
        intermediate_size: int = 4864,
        max_position_embeddings: int = 32768,
        rms_norm_eps: float = 1e-6,
        rope_theta: float = 1000000.0,
        attention_bias: bool = True,
        qk_norm: bool = False,
        tie_word_embeddings: bool = False,
        eos_token_ids: Tuple[int, ...] = (),
        model_type: str = "qwen2",
        **kwargs: Any,
    ) -> None:
        self.vocab_size = vocab_size
        self.hidden_size = hidden_size
        self.num_hidden_layers = num_hidden_layers
        self.num_attention_heads = num_attention_heads
        self.num_key_value_heads = num_key_value_heads
        self.head_dim = head_dim or hidden_size // num_attention_heads
        self.intermediate_size = intermediate_size
        self.max_position_embeddings = max_position_embeddings
        self.rms_norm_eps = rms_norm_eps
        self.rope_theta = rope_theta
        self.attention_bias = attention_bias
        self.qk_norm = qk_norm
        self.tie_word_embeddings = tie_word_embeddings
        self.eos_token_ids = tuple(eos_token_ids)
        self.model_type = model_type

        self._validate()

    def _validate(self) -> None:
        """Validate configuration parameters.

        Raises:
            ValueError: If configuration parameters are invalid.
        """
        if self.model_type not in SUPPORTED_MODEL_TYPES:
            raise ValueError(
                f"Unsupported model_type {self.model_type!r}; "
                f"expected one of {SUPPORTED_MODEL_TYPES}"
            )

        for name in (
            "vocab_size",
            "hidden_size",
            "num_hidden_layers",
            "num_attention_heads",
            "num_key_value_heads",
            "head_dim",
            "intermediate_size",
            "max_position_embeddings",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

        if self.num_attention_heads % self.num_key_value_heads != 0:
            raise ValueError(
                f"num_attention_heads ({self.num_attention_heads}) must be divisible by "
                f"num_key_value_heads ({self.num_key_value_heads})"
            )
        if self.head_dim % 2 != 0:
            raise ValueError(f"head_dim must be even for RoPE, got {self.head_dim}")
        if self.rms_norm_eps <= 0:
            raise ValueError(f"rms_norm_eps must be positive, got {self.rms_norm_eps}")
        if self.rope_theta <= 0:
            raise ValueError(f"rope_theta must be positive, got {self.rope_theta}")

    @property
    def num_key_value_groups(self) -> int:
        return self.num_attention_heads // self.num_key_value_heads

    @classmethod
    def from_hf_config(cls, hf_config: Any) -> "Qwen3Config":
        """Build a config from a transformers ``PretrainedConfig``.

        Raises:
            ValueError: If the checkpoint uses an unsupported architecture or
                a RoPE scaling scheme this network does not implement.
        """
        model_type = getattr(hf_config, "model_type", None)
        rope_theta = getattr(hf_config, "rope_theta", None)
        rope_scaling = getattr(hf_config, "rope_scaling", None)
        # Newer transformers releases group RoPE settings under rope_parameters.
        rope_parameters = getattr(hf_config, "rope_parameters", None)
        if isinstance(rope_parameters, dict):
            rope_theta = rope_parameters.get("rope_theta", rope_theta)
            rope_scaling = rope_scaling or rope_parameters
        if rope_scaling and rope_scaling.get("rope_type", rope_scaling.get("type")) not in (
            None,
            "default",
        ):
            raise ValueError(f"Unsupported rope_scaling: {rope_scaling}")

        eos = getattr(hf_config, "eos_token_id", None)
        if eos is None:
            eos_ids: Tuple[int, ...] = ()
        elif isinstance(eos, int):
            eos_ids = (eos,)
        else:
            eos_ids = tuple(eos)

        if model_type == "qwen2":
            attention_bias = True
        else:
            attention_bias = bool(getattr(hf_config, "attention_bias", False))

        return cls(
            vocab_size=hf_config.vocab_size,
            hidden_size=hf_config.hidden_size,
            num_hidden_layers=hf_config.num_hidden_layers,
            num_attention_heads=hf_config.num_attention_heads,
            num_key_value_heads=getattr(
                hf_config, "num_key_value_heads", hf_config.num_attention_heads
            ),
            head_dim=getattr(hf_config, "head_dim", None),
            intermediate_size=hf_config.intermediate_size,
            max_position_embeddings=hf_config.max_position_embeddings,
            rms_norm_eps=hf_config.rms_norm_eps,
            rope_theta=rope_theta or 10000.0,
            attention_bias=attention_bias,
            qk_norm=model_type == "qwen3",
            tie_word_embeddings=bool(getattr(hf_config, "tie_word_embeddings", False)),
            eos_token_ids=eos_ids,
            model_type=model_type,
        )

    @classmethod
    def from_pretrained(cls, model_path: str) -> "Qwen3Config":
        """Load configuration from a local model directory."""
        hf_config = AutoConfig.from_pretrained(model_path)
        return cls.from_hf_config(hf_config)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vocab_size": self.vocab_size,
            "hidden_size": self.hidden_size,
            "num_hidden_layers": self.num_hidden_layers,
            "num_attention_heads": self.num_attention_heads,
            "num_key_value_heads": self.num_key_value_heads,
            "head_dim": self.head_dim,
            "intermediate_size": self.intermediate_size,
            "max_position_embeddings": self.max_position_embeddings,
            "rms_norm_eps": self.rms_norm_eps,
            "rope_theta": self.rope_theta,
            "attention_bias": self.attention_bias,
            "qk_norm": self.qk_norm,
            "tie_word_embeddings": self.tie_word_embeddings,
            "eos_token_ids": list(self.eos_token_ids),
            "model_type": self.model_type,
        }

    def __repr__(self) -> str:
        return (
            f"Qwen3Config("
            f"model_type='{self.model_type}', "
            f"vocab_size={self.vocab_size}, "
            f"hidden_size={self.hidden_size}, "
            f"num_hidden_layers={self.num_hidden_layers}, "
            f"num_attention_heads={self.num_attention_heads}, "
            f"num_key_value_heads={self.num_key_value_heads}, "
            f"head_dim={self.head_dim}, "
            f"max_position_embeddings={self.max_position_embeddings}"
            f")"
        )
