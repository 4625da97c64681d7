"""
Per-conversation session caches.

A session cache keeps the evaluated system prompt of a conversation on disk
so that reopening the conversation skips the prompt evaluation. Each cache
is a session file ``<key>.session`` next to ``<key>_metadata.json``, which
records the model and system prompt it was built from; a cache whose
metadata no longer matches is rebuilt.
"""

import json
import logging
from pathlib import Path
from typing import Optional, Union

from pocket_infer.core.context import InferenceContext
from pocket_infer.errors import ParameterError, SessionFormatError, SessionIOError

logger = logging.getLogger(__name__)

# Minimal user turn used to render a prompt that contains the system prompt.
PRIMING_USER_MESSAGE = "Hi"


class SessionCache:
    """Directory of session caches keyed by conversation id.

    Attributes:
        directory: Where cache files live; created on first save.
    """

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)

    def _check_key(self, key: str) -> None:
        if not key or Path(key).name != key or key in (".", ".."):
            raise ParameterError(f"Invalid session cache key {key!r}")

    def path_for(self, key: str) -> Path:
        self._check_key(key)
        return self.directory / f"{key}.session"

    def metadata_path_for(self, key: str) -> Path:
        self._check_key(key)
        return self.directory / f"{key}_metadata.json"

    def read_metadata(self, key: str) -> Optional[dict]:
        path = self.metadata_path_for(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                metadata = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Unreadable session cache metadata %s: %s", path, e)
            return None
        return metadata if isinstance(metadata, dict) else None

    def write_metadata(self, key: str, model_id: str, system_prompt: str) -> None:
        path = self.metadata_path_for(key)
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump({"modelId": model_id, "systemPrompt": system_prompt}, f, indent=2)
        except OSError as e:
            raise SessionIOError(f"Cannot write session cache metadata {str(path)!r}: {e}") from e

    def is_valid(self, key: str, model_id: str, system_prompt: str) -> bool:
        """Whether a cache exists and was built for this model and system prompt."""
        if not self.path_for(key).is_file():
            return False
        metadata = self.read_metadata(key)
        return (
            metadata is not None
            and metadata.get("modelId") == model_id
            and metadata.get("systemPrompt") == system_prompt
        )

    def save(
        self,
        context: InferenceContext,
        key: str,
        model_id: str,
        system_prompt: str,
        token_count: int = -1,
    ) -> int:
        """Save the context's history as the cache for ``key``.

        Returns:
            Number of tokens saved.
        """
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SessionIOError(f"Cannot create {str(self.directory)!r}: {e}") from e
        saved = context.save_session(self.path_for(key), token_count)
        self.write_metadata(key, model_id, system_prompt)
        return saved

    def load_or_regenerate(
        self, context: InferenceContext, key: str, model_id: str, system_prompt: str
    ) -> bool:
        """Load the cache for ``key``, rebuilding it when missing or stale.

        Rebuilding evaluates a one-token chat completion over the system
        prompt and a minimal user turn, then saves the resulting history.

        Returns:
            Whether a usable cache is now loaded in the context.
        """
        if self.is_valid(key, model_id, system_prompt):
            try:
                result = context.load_session(self.path_for(key))
            except (SessionFormatError, SessionIOError) as e:
                logger.warning("Session cache %s could not be loaded, regenerating: %s", key, e)
            else:
                logger.info("Loaded session cache %s with %d tokens", key, result.tokens_loaded)
                return True
        else:
            logger.warning("Session cache %s is missing or stale, regenerating", key)

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": PRIMING_USER_MESSAGE},
        ]
        prompt = context.format_chat_full(messages, enable_thinking=False).prompt
        context.complete({"prompt": prompt, "max_tokens": 1})

        saved = self.save(context, key, model_id, system_prompt)
        logger.info("Regenerated session cache %s with %d tokens", key, saved)
        return saved > 0
