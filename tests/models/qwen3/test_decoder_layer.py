"""
Tests for the Qwen3 decoder layer's pre-norm residual structure.
"""

import pytest
import torch

from pocket_infer.cache.kv_cache import KVCache
from pocket_infer.models.qwen3.decoder_layer import Qwen3DecoderLayer
from pocket_infer.models.qwen3.rope import precompute_rope_tables
from tests.utils.comparison import assert_tensors_close
from tests.utils.tiny_model import build_tiny_config


@pytest.fixture
def layer_and_rope():
    torch.manual_seed(0)
    config = build_tiny_config()
    layer = Qwen3DecoderLayer(config, layer_idx=0).eval()
    cos, sin = precompute_rope_tables(config.head_dim, 32, theta=config.rope_theta)
    return layer, cos, sin


@pytest.mark.unit
def test_decoder_layer_submodules(layer_and_rope) -> None:
    layer, _, _ = layer_and_rope

    assert layer.self_attn.layer_idx == 0
    assert layer.input_layernorm.weight.shape == (32,)
    assert layer.post_attention_layernorm.weight.shape == (32,)


@pytest.mark.unit
def test_residual_path_is_identity_when_branches_are_zero(layer_and_rope) -> None:
    """Test that zeroed output projections leave the input unchanged."""
    layer, cos, sin = layer_and_rope
    with torch.no_grad():
        layer.self_attn.o_proj.weight.zero_()
        layer.mlp.down_proj.weight.zero_()
        x = torch.randn(2, 5, 32)
        output = layer(x, cos, sin)

    assert_tensors_close(output, x, atol=0.0, rtol=0.0)


@pytest.mark.unit
def test_decoder_layer_matches_manual_composition(layer_and_rope) -> None:
    """Test x + attn(norm(x)) followed by h + mlp(norm(h))."""
    layer, cos, sin = layer_and_rope
    x = torch.randn(1, 4, 32)

    with torch.no_grad():
        h = x + layer.self_attn(layer.input_layernorm(x), cos, sin)
        expected = h + layer.mlp(layer.post_attention_layernorm(h))
        output = layer(x, cos, sin)

    assert_tensors_close(output, expected, atol=1e-6)


@pytest.mark.unit
def test_decoder_layer_writes_its_cache_slot(layer_and_rope) -> None:
    layer, cos, sin = layer_and_rope
    cache = KVCache(num_layers=2, max_tokens=8)

    with torch.no_grad():
        layer(torch.randn(1, 3, 32), cos, sin, kv_cache=cache)

    assert cache.layer_length(0) == 3
    assert cache.layer_length(1) == 0
