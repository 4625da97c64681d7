"""
Tests for Qwen3Config.

This module tests construction, validation and conversion from a
Hugging Face config for the Qwen2/Qwen3/Llama family.
"""

from types import SimpleNamespace

import pytest
from transformers import AutoConfig

from pocket_infer.models.qwen3.config import Qwen3Config


@pytest.mark.unit
def test_config_head_dim_defaults_to_hidden_over_heads() -> None:
    """Test that head_dim is derived when not given."""
    config = Qwen3Config(hidden_size=64, num_attention_heads=8, num_key_value_heads=2)

    assert config.head_dim == 8
    assert config.num_key_value_groups == 4


@pytest.mark.unit
def test_config_rejects_indivisible_gqa_heads() -> None:
    """Test that query heads must be a multiple of KV heads."""
    with pytest.raises(ValueError, match="divisible"):
        Qwen3Config(hidden_size=60, num_attention_heads=6, num_key_value_heads=4)


@pytest.mark.unit
def test_config_rejects_unknown_model_type() -> None:
    """Test that unsupported architectures are refused."""
    with pytest.raises(ValueError, match="Unsupported model_type"):
        Qwen3Config(model_type="mamba")


@pytest.mark.unit
def test_config_rejects_non_positive_sizes() -> None:
    """Test that sizes must be positive."""
    with pytest.raises(ValueError, match="vocab_size"):
        Qwen3Config(vocab_size=0)


@pytest.mark.unit
def test_from_pretrained_reads_tiny_model(tiny_model_dir) -> None:
    """Test that config.json of a model directory is read and mapped."""
    config = Qwen3Config.from_pretrained(str(tiny_model_dir))

    assert config.model_type == "qwen2"
    assert config.hidden_size == 32
    assert config.num_hidden_layers == 2
    assert config.num_key_value_heads == 2
    assert config.head_dim == 8
    assert config.attention_bias is True
    assert config.qk_norm is False
    assert config.tie_word_embeddings is True
    assert len(config.eos_token_ids) == 1


@pytest.mark.unit
def test_from_hf_config_qwen3_enables_qk_norm() -> None:
    """Test that qwen3 checkpoints get per-head q/k normalization and no bias."""
    hf_config = AutoConfig.for_model(
        "qwen3",
        vocab_size=100,
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=1,
        num_attention_heads=4,
        num_key_value_heads=2,
        head_dim=16,
    )

    config = Qwen3Config.from_hf_config(hf_config)

    assert config.qk_norm is True
    assert config.attention_bias is False
    assert config.head_dim == 16


@pytest.mark.unit
def test_from_hf_config_rejects_rope_scaling() -> None:
    """Test that scaled RoPE variants are refused."""
    hf_config = SimpleNamespace(
        model_type="llama",
        vocab_size=100,
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=1,
        num_attention_heads=4,
        max_position_embeddings=128,
        rms_norm_eps=1e-6,
        rope_scaling={"rope_type": "linear", "factor": 2.0},
    )

    with pytest.raises(ValueError, match="rope_scaling"):
        Qwen3Config.from_hf_config(hf_config)


@pytest.mark.unit
def test_to_dict_round_trips_through_constructor() -> None:
    """Test that to_dict output rebuilds an equivalent config."""
    config = Qwen3Config(hidden_size=64, num_attention_heads=4, num_key_value_heads=2)

    rebuilt = Qwen3Config(**config.to_dict())

    assert rebuilt.to_dict() == config.to_dict()
