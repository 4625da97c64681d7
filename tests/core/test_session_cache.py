"""
Tests for per-conversation session caches.
"""

import json
import logging
from pathlib import Path

import pytest

from pocket_infer import InferenceContext, SessionCache
from pocket_infer.errors import ParameterError

SYSTEM_PROMPT = "You are terse."


@pytest.fixture
def cache(tmp_path: Path) -> SessionCache:
    return SessionCache(tmp_path / "sessions")


@pytest.mark.unit
class TestPaths:
    """Tests for cache file naming and metadata handling."""

    def test_paths(self, cache: SessionCache):
        assert cache.path_for("chat-1").name == "chat-1.session"
        assert cache.metadata_path_for("chat-1").name == "chat-1_metadata.json"

    @pytest.mark.parametrize("key", ["", ".", "..", "a/b", "../escape"])
    def test_invalid_keys_raise(self, cache: SessionCache, key):
        with pytest.raises(ParameterError):
            cache.path_for(key)

    def test_missing_cache_is_invalid(self, cache: SessionCache):
        assert cache.read_metadata("chat") is None
        assert not cache.is_valid("chat", "model", SYSTEM_PROMPT)

    def test_unreadable_metadata_is_ignored(self, cache: SessionCache, caplog):
        cache.directory.mkdir(parents=True)
        cache.metadata_path_for("chat").write_text("{not json")

        with caplog.at_level(logging.WARNING):
            assert cache.read_metadata("chat") is None

        assert "Unreadable" in caplog.text

    def test_non_object_metadata_is_ignored(self, cache: SessionCache):
        cache.directory.mkdir(parents=True)
        cache.metadata_path_for("chat").write_text("[1, 2]")

        assert cache.read_metadata("chat") is None

    def test_write_metadata(self, cache: SessionCache):
        cache.directory.mkdir(parents=True)

        cache.write_metadata("chat", "qwen", SYSTEM_PROMPT)

        stored = json.loads(cache.metadata_path_for("chat").read_text())
        assert stored == {"modelId": "qwen", "systemPrompt": SYSTEM_PROMPT}


@pytest.mark.integration
class TestLoadOrRegenerate:
    """Tests for SessionCache.load_or_regenerate."""

    def test_missing_cache_is_regenerated(self, context: InferenceContext, cache: SessionCache):
        """Test that a first call evaluates the system prompt and saves it."""
        assert cache.load_or_regenerate(context, "chat", "tiny", SYSTEM_PROMPT)

        assert cache.path_for("chat").is_file()
        assert cache.is_valid("chat", "tiny", SYSTEM_PROMPT)
        history = context.detokenize(context.token_history())
        assert history.startswith(f"<|im_start|>system\n{SYSTEM_PROMPT}<|im_end|>\n")

    def test_valid_cache_is_loaded(self, context: InferenceContext, cache: SessionCache, forced_params):
        """Test that a matching cache restores the saved history."""
        cache.load_or_regenerate(context, "chat", "tiny", SYSTEM_PROMPT)
        saved_history = context.token_history()
        context.complete(forced_params(prompt="unrelated"))

        assert cache.load_or_regenerate(context, "chat", "tiny", SYSTEM_PROMPT)

        assert context.token_history() == saved_history

    def test_changed_system_prompt_regenerates(self, context: InferenceContext, cache: SessionCache, caplog):
        cache.load_or_regenerate(context, "chat", "tiny", SYSTEM_PROMPT)

        with caplog.at_level(logging.WARNING):
            assert cache.load_or_regenerate(context, "chat", "tiny", "Be verbose.")

        assert "stale" in caplog.text
        assert cache.read_metadata("chat")["systemPrompt"] == "Be verbose."
        assert "Be verbose." in context.detokenize(context.token_history())

    def test_changed_model_regenerates(self, context: InferenceContext, cache: SessionCache):
        cache.load_or_regenerate(context, "chat", "tiny", SYSTEM_PROMPT)

        assert not cache.is_valid("chat", "other-model", SYSTEM_PROMPT)
        assert cache.load_or_regenerate(context, "chat", "other-model", SYSTEM_PROMPT)
        assert cache.read_metadata("chat")["modelId"] == "other-model"

    def test_corrupt_cache_regenerates(self, context: InferenceContext, cache: SessionCache, caplog):
        """Test that an unloadable session file is rebuilt instead of failing."""
        cache.load_or_regenerate(context, "chat", "tiny", SYSTEM_PROMPT)
        cache.path_for("chat").write_bytes(b"garbage")

        with caplog.at_level(logging.WARNING):
            assert cache.load_or_regenerate(context, "chat", "tiny", SYSTEM_PROMPT)

        assert "could not be loaded" in caplog.text
        assert cache.path_for("chat").read_bytes()[:4] == b"PKIS"

    def test_save_prefix(self, context: InferenceContext, cache: SessionCache, forced_params):
        context.complete(forced_params())

        assert cache.save(context, "chat", "tiny", SYSTEM_PROMPT, token_count=12) == 12
        assert cache.is_valid("chat", "tiny", SYSTEM_PROMPT)
