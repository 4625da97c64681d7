"""
Pytest configuration and shared fixtures for pocket-infer tests.

This module provides reusable fixtures for testing, including:
- A tiny random Qwen2-style model directory (built once per session)
- Loaded inference contexts on that model
- CPU device enforcement
"""

import os
from pathlib import Path
from typing import Iterator

import pytest
import torch

from pocket_infer import InferenceContext, open_context
from tests.utils.tiny_model import build_tiny_model_dir


# Force CPU-only testing by disabling CUDA
os.environ["CUDA_VISIBLE_DEVICES"] = ""


@pytest.fixture(scope="session")
def cpu_device() -> torch.device:
    """Force CPU device for all tests."""
    return torch.device("cpu")


@pytest.fixture(scope="session")
def tiny_model_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """
    Build a tiny model directory for testing (session-scoped).

    The model has 2 layers, 4 query heads, 2 KV heads, head_dim 8 and a
    259-token byte-level vocabulary. Weights are random but fixed by seed.

    Returns:
        Path: Directory with config.json, tokenizer files and model.safetensors
    """
    return build_tiny_model_dir(tmp_path_factory.mktemp("tiny-model"))


@pytest.fixture
def context(tiny_model_dir: Path) -> Iterator[InferenceContext]:
    """
    Loaded inference context on the tiny model (function-scoped).

    Example:
        def test_generate(context):
            result = context.complete({"prompt": "hi", "max_tokens": 2})
            assert result.tokens_predicted <= 2
    """
    ctx = open_context(tiny_model_dir, {"n_ctx": 256, "n_threads": 1, "n_batch": 8})
    yield ctx
    ctx.invalidate()


@pytest.fixture
def letter_a_id(context: InferenceContext) -> int:
    """Token id of the single-byte text "a"."""
    return context.tokenize("a")[0]


@pytest.fixture
def forced_params(letter_a_id: int):
    """
    Build generation params that deterministically emit "a".

    Greedy decoding plus a large logit bias makes every sampled token "a";
    ``ignore_eos`` keeps runs from ending before ``max_tokens``.
    """

    def make(prompt: str = "hello world!", **overrides):
        params = {
            "prompt": prompt,
            "max_tokens": 8,
            "temperature": 0.0,
            "logit_bias": {letter_a_id: 100.0},
            "ignore_eos": True,
        }
        params.update(overrides)
        return params

    return make
