"""
Weight loading for Qwen3-family checkpoints.

This module reads Hugging Face safetensors checkpoints (single file or
sharded with ``model.safetensors.index.json``), validates tensor names and
shapes against the network, and assigns the tensors into a network built on
the ``meta`` device so no memory is spent on random initialization.
"""

import json
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

import torch
from safetensors import safe_open

from pocket_infer.models.qwen3.model import Qwen3ForCausalLM

logger = logging.getLogger(__name__)

SINGLE_FILE_NAME = "model.safetensors"
INDEX_FILE_NAME = "model.safetensors.index.json"

# Checkpoint entries that are derived at runtime rather than loaded.
IGNORED_SUFFIXES = ("rotary_emb.inv_freq",)


def resolve_checkpoint_files(model_path: Path) -> List[Path]:
    """Return the safetensors files that make up a checkpoint.

    Raises:
        FileNotFoundError: If neither a single file nor an index is present.
    """
    index_path = model_path / INDEX_FILE_NAME
    if index_path.is_file():
        with open(index_path, "r", encoding="utf-8") as f:
            weight_map = json.load(f)["weight_map"]
        return [model_path / name for name in sorted(set(weight_map.values()))]

    single_file = model_path / SINGLE_FILE_NAME
    if single_file.is_file():
        return [single_file]

    raise FileNotFoundError(
        f"No {INDEX_FILE_NAME} or {SINGLE_FILE_NAME} found in {model_path}"
    )


def expected_shapes(model: Qwen3ForCausalLM) -> Dict[str, torch.Size]:
    return {name: param.shape for name, param in model.named_parameters()}


def validate_weight_shapes(
    state_dict: Dict[str, torch.Tensor], shapes: Dict[str, torch.Size]
) -> None:
    """Check that the checkpoint provides every parameter with the right shape.

    Raises:
        ValueError: If a tensor is missing or has an unexpected shape.
    """
    missing = sorted(set(shapes) - set(state_dict))
    if missing:
        preview = ", ".join(missing[:5])
        more = f" (+{len(missing) - 5} more)" if len(missing) > 5 else ""
        raise ValueError(f"Checkpoint is missing tensors: {preview}{more}")

    for name, tensor in state_dict.items():
        if tuple(tensor.shape) != tuple(shapes[name]):
            raise ValueError(
                f"Weight '{name}' shape mismatch: "
                f"expected {tuple(shapes[name])}, got {tuple(tensor.shape)}"
            )


def load_state_dict(
    files: List[Path],
    shapes: Dict[str, torch.Size],
    dtype: torch.dtype,
    device: str = "cpu",
    use_mmap: bool = True,
    on_tensor: Optional[Callable[[int, int], None]] = None,
) -> Dict[str, torch.Tensor]:
    """Read the tensors named in ``shapes`` from the checkpoint files.

    Args:
        files: Checkpoint files from ``resolve_checkpoint_files``.
        shapes: Parameter names and shapes the network expects.
        dtype: Target dtype for floating point tensors.
        device: Target device.
        use_mmap: Keep CPU tensors backed by the mapped file when no dtype
            conversion is needed.
        on_tensor: Called as ``on_tensor(loaded, total)`` after each tensor.

    Returns:
        Mapping of parameter name to tensor.
    """
    handles = [safe_open(str(path), framework="pt", device="cpu") for path in files]
    key_to_handle = {}
    for handle in handles:
        for key in handle.keys():
            if key.endswith(IGNORED_SUFFIXES):
                continue
            if key not in shapes:
                logger.debug("Ignoring unexpected checkpoint tensor %s", key)
                continue
            key_to_handle[key] = handle

    total = len(key_to_handle)
    state_dict: Dict[str, torch.Tensor] = {}
    for loaded, (key, handle) in enumerate(sorted(key_to_handle.items()), start=1):
        tensor = handle.get_tensor(key)
        if tensor.is_floating_point() and tensor.dtype != dtype:
            tensor = tensor.to(dtype)
        elif not use_mmap:
            tensor = tensor.clone()
        state_dict[key] = tensor.to(device)
        if on_tensor is not None:
            on_tensor(loaded, total)
    return state_dict


def load_weights(
    model: Qwen3ForCausalLM,
    model_path: Path,
    dtype: torch.dtype,
    device: str = "cpu",
    use_mmap: bool = True,
    on_tensor: Optional[Callable[[int, int], None]] = None,
) -> None:
    """Load checkpoint tensors into a (typically meta-device) network.

    Tied embeddings are resolved here: when the checkpoint has no
    ``lm_head.weight``, the LM head shares the embedding matrix.

    Raises:
        FileNotFoundError: If the checkpoint files are missing.
        ValueError: If tensors are missing or mis-shaped.
    """
    files = resolve_checkpoint_files(model_path)
    shapes = expected_shapes(model)
    state_dict = load_state_dict(files, shapes, dtype, device, use_mmap, on_tensor)

    if "lm_head.weight" not in state_dict and "model.embed_tokens.weight" in state_dict:
        if not model.config.tie_word_embeddings:
            logger.warning("Checkpoint has no lm_head.weight; tying it to the embeddings")
        state_dict["lm_head.weight"] = state_dict["model.embed_tokens.weight"]

    validate_weight_shapes(state_dict, shapes)
    model.load_state_dict(state_dict, strict=True, assign=True)
