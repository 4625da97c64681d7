"""
Session files: a persisted token history and its KV cache.

Layout (little-endian):

    magic         4 bytes   b"PKIS"
    version       u32       FORMAT_VERSION
    token_count   u32
    token_ids     token_count x i32
    blob_length   u64
    blob          safetensors payload

The safetensors payload holds ``layers.{i}.keys`` and ``layers.{i}.values``
for every layer, shaped [1, n_kv_heads, token_count, head_dim], and string
metadata ``n_layers``, ``n_kv_heads``, ``head_dim`` and ``token_count``.
"""

import json
import logging
import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence, Union

import torch
from safetensors.torch import load as load_tensors
from safetensors.torch import save as save_tensors

from pocket_infer.cache.kv_cache import KVCache
from pocket_infer.core.model_store import ModelHandle
from pocket_infer.errors import ParameterError, SessionFormatError, SessionIOError

logger = logging.getLogger(__name__)

MAGIC = b"PKIS"
FORMAT_VERSION = 1

_HEADER = struct.Struct("<4sII")
_BLOB_LENGTH = struct.Struct("<Q")


@dataclass
class SessionRecord:
    """Decoded contents of a session file."""

    format_version: int
    token_ids: List[int]
    tensors: Dict[str, torch.Tensor] = field(default_factory=dict)
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionLoadResult:
    tokens_loaded: int
    prompt: str


def encode_session(
    token_ids: Sequence[int],
    tensors: Dict[str, torch.Tensor],
    n_layers: int,
    n_kv_heads: int,
    head_dim: int,
) -> bytes:
    metadata = {
        "n_layers": str(n_layers),
        "n_kv_heads": str(n_kv_heads),
        "head_dim": str(head_dim),
        "token_count": str(len(token_ids)),
    }
    blob = save_tensors(tensors, metadata=metadata)
    return b"".join(
        [
            _HEADER.pack(MAGIC, FORMAT_VERSION, len(token_ids)),
            struct.pack(f"<{len(token_ids)}i", *token_ids),
            _BLOB_LENGTH.pack(len(blob)),
            blob,
        ]
    )


def _read_metadata(blob: bytes) -> Dict[str, str]:
    (header_length,) = _BLOB_LENGTH.unpack_from(blob, 0)
    header = json.loads(blob[_BLOB_LENGTH.size:_BLOB_LENGTH.size + header_length])
    return dict(header.get("__metadata__") or {})


def decode_session(data: bytes) -> SessionRecord:
    """Parse session bytes without interpreting them against a model.

    Raises:
        SessionFormatError: On bad magic, unknown version, truncation or an
            undecodable payload.
    """
    if len(data) < _HEADER.size:
        raise SessionFormatError("Session file is truncated (header)")
    magic, version, token_count = _HEADER.unpack_from(data, 0)
    if magic != MAGIC:
        raise SessionFormatError(f"Not a session file (magic {magic!r})")
    if version != FORMAT_VERSION:
        raise SessionFormatError(
            f"Unsupported session format version {version} (expected {FORMAT_VERSION})"
        )

    offset = _HEADER.size
    ids_end = offset + 4 * token_count
    if len(data) < ids_end + _BLOB_LENGTH.size:
        raise SessionFormatError("Session file is truncated (token ids)")
    token_ids = list(struct.unpack_from(f"<{token_count}i", data, offset))

    (blob_length,) = _BLOB_LENGTH.unpack_from(data, ids_end)
    blob_start = ids_end + _BLOB_LENGTH.size
    if len(data) != blob_start + blob_length:
        raise SessionFormatError(
            f"Session payload is {len(data) - blob_start} bytes, header declares {blob_length}"
        )
    blob = data[blob_start:]

    try:
        metadata = _read_metadata(blob)
        tensors = load_tensors(blob)
    except Exception as err:
        raise SessionFormatError(f"Session payload cannot be decoded: {err}") from err

    return SessionRecord(
        format_version=version, token_ids=token_ids, tensors=tensors, metadata=metadata
    )


def validate_record(record: SessionRecord, handle: ModelHandle, max_tokens: int) -> None:
    """Check that a decoded session fits the loaded model and context window.

    Raises:
        SessionFormatError: If anything is inconsistent or incompatible.
    """
    config = handle.config
    count = len(record.token_ids)

    expected = {
        "n_layers": config.num_hidden_layers,
        "n_kv_heads": config.num_key_value_heads,
        "head_dim": config.head_dim,
        "token_count": count,
    }
    for key, value in expected.items():
        if record.metadata.get(key) != str(value):
            raise SessionFormatError(
                f"Session {key}={record.metadata.get(key)!r} does not match expected {value}"
            )

    if count > max_tokens:
        raise SessionFormatError(
            f"Session holds {count} tokens, context window is {max_tokens}"
        )
    # The embedding table may be padded past the tokenizer; every row is a valid id.
    vocab_size = handle.config.vocab_size
    for token_id in record.token_ids:
        if not 0 <= token_id < vocab_size:
            raise SessionFormatError(f"Token id {token_id} is outside the vocabulary")

    if count == 0:
        return
    shape = (1, config.num_key_value_heads, count, config.head_dim)
    for layer_idx in range(config.num_hidden_layers):
        for kind in ("keys", "values"):
            name = f"layers.{layer_idx}.{kind}"
            tensor = record.tensors.get(name)
            if tensor is None:
                raise SessionFormatError(f"Session is missing tensor {name}")
            if tuple(tensor.shape) != shape:
                raise SessionFormatError(
                    f"Session tensor {name} has shape {tuple(tensor.shape)}, expected {shape}"
                )


def save_session(
    path: Union[str, Path], handle: ModelHandle, cache: KVCache, token_count: int = -1
) -> int:
    """Write the first ``token_count`` cached tokens (all with -1) to ``path``.

    The live cache is not modified.

    Returns:
        Number of tokens saved.

    Raises:
        ParameterError: If ``token_count`` is out of range.
        SessionIOError: If the file cannot be written.
    """
    if token_count == -1:
        token_count = len(cache)
    if not 0 <= token_count <= len(cache):
        raise ParameterError(
            f"token_count must be -1 or in [0, {len(cache)}], got {token_count}"
        )

    config = handle.config
    data = encode_session(
        cache.token_ids[:token_count],
        cache.export_tensors(token_count),
        n_layers=config.num_hidden_layers,
        n_kv_heads=config.num_key_value_heads,
        head_dim=config.head_dim,
    )

    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except OSError as err:
        if tmp_path.exists():
            tmp_path.unlink()
        raise SessionIOError(f"Cannot write session file {str(path)!r}: {err}") from err

    logger.info("Saved session with %d tokens to %s", token_count, path)
    return token_count


def load_session(path: Union[str, Path], handle: ModelHandle, cache: KVCache) -> SessionLoadResult:
    """Replace the cache with the history stored at ``path``.

    The file is decoded and validated completely before the cache is touched.

    Raises:
        SessionIOError: If the file cannot be read.
        SessionFormatError: If the file is corrupt or incompatible.
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as err:
        raise SessionIOError(f"Cannot read session file {str(path)!r}: {err}") from err

    record = decode_session(data)
    validate_record(record, handle, cache.max_tokens)

    cache.restore(record.token_ids, record.tensors, device=handle.device, dtype=handle.dtype)
    logger.info("Loaded session with %d tokens from %s", len(record.token_ids), path)
    return SessionLoadResult(
        tokens_loaded=len(record.token_ids),
        prompt=handle.codec.detokenize(record.token_ids),
    )
