"""
Model loading.

``load_model`` turns a local Hugging Face style model directory into a
ModelHandle: the decoder network with its weights, the tokenizer, the
architecture metadata and the effective context window. Progress is
reported as integer percentages through an optional callback.
"""

import gc
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import torch

from pocket_infer.core.params import ContextParams
from pocket_infer.core.tokenizer import TokenCodec
from pocket_infer.errors import ModelLoadError
from pocket_infer.models.qwen3.config import Qwen3Config
from pocket_infer.models.qwen3.model import Qwen3ForCausalLM
from pocket_infer.models.qwen3.weight_loader import load_weights

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

DTYPES = {
    "float32": torch.float32,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}

# Share of the progress range spent reading tensors.
WEIGHTS_START = 10
WEIGHTS_END = 95


@dataclass(frozen=True)
class ModelHandle:
    """A loaded model, owned by exactly one inference context.

    Attributes:
        model: Decoder network in eval mode.
        codec: Tokenizer wrapper for this model's vocabulary.
        config: Architecture metadata.
        context_length: Effective context window in tokens.
        n_threads: Torch intra-op thread count set at load.
        chat_template: Chat template embedded in the tokenizer, if any.
        model_path: Directory the model was loaded from.
    """

    model: Qwen3ForCausalLM
    codec: TokenCodec
    config: Qwen3Config
    context_length: int
    n_threads: int
    chat_template: Optional[str]
    model_path: Path

    @property
    def device(self) -> torch.device:
        return self.model.device

    @property
    def dtype(self) -> torch.dtype:
        return self.model.dtype

    def describe(self) -> Dict[str, Any]:
        return {
            "model_path": str(self.model_path),
            "model_type": self.config.model_type,
            "context_length": self.context_length,
            "n_threads": self.n_threads,
            "vocab_size": self.codec.vocab_size,
            "n_layers": self.config.num_hidden_layers,
            "n_kv_heads": self.config.num_key_value_heads,
            "head_dim": self.config.head_dim,
            "dtype": str(self.dtype).replace("torch.", ""),
            "device": str(self.device),
            "has_chat_template": self.chat_template is not None,
        }


class ProgressReporter:
    """Forwards strictly increasing integer percentages to a callback."""

    def __init__(self, callback: Optional[ProgressCallback]) -> None:
        self._callback = callback
        self._last = -1

    def report(self, percent: float) -> None:
        value = max(0, min(100, int(percent)))
        if self._callback is None or value <= self._last:
            return
        self._last = value
        self._callback(value)


def load_model(
    model_path: Union[str, Path],
    params: Optional[ContextParams] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> ModelHandle:
    """Load a model directory into memory.

    Args:
        model_path: Directory with ``config.json``, tokenizer files and
            safetensors weights.
        params: Load-time configuration; defaults to ``ContextParams()``.
        on_progress: Optional callback receiving percentages in [0, 100].

    Returns:
        The loaded ModelHandle.

    Raises:
        ModelLoadError: If anything about the model cannot be loaded.
    """
    params = params or ContextParams()
    path = Path(model_path)
    if not path.is_dir():
        raise ModelLoadError(f"Model path {str(path)!r} is not a directory")

    progress = ProgressReporter(on_progress)
    progress.report(0)
    logger.info("Loading model from %s", path)

    model = None
    try:
        config = Qwen3Config.from_pretrained(str(path))
        progress.report(5)

        codec = TokenCodec.from_pretrained(str(path), extra_eos_ids=config.eos_token_ids)
        progress.report(WEIGHTS_START)

        context_length = min(params.n_ctx, config.max_position_embeddings)
        if context_length < params.n_ctx:
            logger.warning(
                "Requested n_ctx=%d exceeds the model's %d positions; using %d",
                params.n_ctx,
                config.max_position_embeddings,
                context_length,
            )

        if torch.get_num_threads() != params.n_threads:
            logger.info("Setting torch intra-op threads to %d", params.n_threads)
        torch.set_num_threads(params.n_threads)

        with torch.device("meta"):
            model = Qwen3ForCausalLM(config)

        def on_tensor(loaded: int, total: int) -> None:
            progress.report(WEIGHTS_START + (WEIGHTS_END - WEIGHTS_START) * loaded / total)

        load_weights(
            model,
            path,
            dtype=DTYPES[params.dtype],
            device=params.device,
            use_mmap=params.use_mmap,
            on_tensor=on_tensor,
        )
        model.eval()
        model.requires_grad_(False)
        model.init_rope(context_length)
    except ModelLoadError:
        model = None
        gc.collect()
        raise
    except Exception as err:
        model = None
        gc.collect()
        raise ModelLoadError(f"Failed to load model from {str(path)!r}: {err}") from err

    progress.report(100)
    handle = ModelHandle(
        model=model,
        codec=codec,
        config=config,
        context_length=context_length,
        n_threads=params.n_threads,
        chat_template=codec.chat_template,
        model_path=path,
    )
    logger.info(
        "Loaded %s model (%d layers, context %d) from %s",
        config.model_type,
        config.num_hidden_layers,
        context_length,
        path,
    )
    return handle
