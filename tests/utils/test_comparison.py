"""
Tests for tensor and cache comparison utilities.
"""

import pytest
import torch

from pocket_infer.cache.kv_cache import KVCache
from tests.utils.comparison import assert_caches_equal, assert_tensors_close


def _filled_cache(seed: int, tokens=(1, 2, 3)) -> KVCache:
    generator = torch.Generator().manual_seed(seed)
    cache = KVCache(num_layers=2, max_tokens=8)
    for layer_idx in range(2):
        cache.update(
            layer_idx,
            torch.randn(1, 2, len(tokens), 4, generator=generator),
            torch.randn(1, 2, len(tokens), 4, generator=generator),
        )
    cache.commit(tokens)
    return cache


@pytest.mark.unit
def test_assert_tensors_close_within_tolerance() -> None:
    assert_tensors_close(torch.tensor([1.0, 2.0]), torch.tensor([1.00001, 2.00001]), atol=1e-4)


@pytest.mark.unit
def test_assert_tensors_close_exceeds_tolerance() -> None:
    with pytest.raises(AssertionError, match="Max difference"):
        assert_tensors_close(torch.tensor([1.0, 2.0]), torch.tensor([1.1, 2.0]))


@pytest.mark.unit
def test_assert_tensors_close_shape_mismatch() -> None:
    with pytest.raises(AssertionError, match="shapes do not match"):
        assert_tensors_close(torch.zeros(2), torch.zeros(3), msg="logits")


@pytest.mark.unit
def test_assert_caches_equal_same_state() -> None:
    assert_caches_equal(_filled_cache(0), _filled_cache(0))


@pytest.mark.unit
def test_assert_caches_equal_detects_tensor_difference() -> None:
    with pytest.raises(AssertionError):
        assert_caches_equal(_filled_cache(0), _filled_cache(1))


@pytest.mark.unit
def test_assert_caches_equal_detects_history_difference() -> None:
    with pytest.raises(AssertionError, match="histories"):
        assert_caches_equal(_filled_cache(0, (1, 2, 3)), _filled_cache(0, (1, 2, 4)))
