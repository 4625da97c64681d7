"""Test utilities for pocket_infer."""

from tests.utils.comparison import assert_caches_equal, assert_tensors_close
from tests.utils.tiny_model import TINY_CHAT_TEMPLATE, build_tiny_config, build_tiny_model_dir

__all__ = [
    "assert_tensors_close",
    "assert_caches_equal",
    "TINY_CHAT_TEMPLATE",
    "build_tiny_config",
    "build_tiny_model_dir",
]
