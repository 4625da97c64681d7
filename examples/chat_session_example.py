"""Example demonstrating a streamed chat completion and session reuse.

This example loads a local model directory, streams a reply to a short
conversation, cancels a second completion early, and saves/restores the
KV cache so a later run skips re-evaluating the conversation.

Usage:
    python examples/chat_session_example.py /path/to/Qwen2.5-0.5B-Instruct
"""

import logging
import sys
import tempfile
from pathlib import Path

from pocket_infer import SessionCache, open_context


def main(model_path: str):
    """Demonstrate chat, cancellation and session caching."""
    logging.basicConfig(level=logging.INFO)

    print("=== Loading model ===\n")
    with open_context(
        model_path,
        {"n_ctx": 2048},
        on_progress=lambda percent: print(f"  load progress: {percent}%"),
    ) as ctx:
        print(f"\nModel info: {ctx.model_info()}")

        messages = [
            {"role": "system", "content": "You are a concise assistant."},
            {"role": "user", "content": "Name three primary colors."},
        ]

        print("\n=== Streaming chat completion ===\n")
        result = ctx.complete_chat(
            messages,
            {"max_tokens": 64, "temperature": 0.7, "seed": 42},
            on_token=lambda text: print(text, end="", flush=True),
        )
        print(f"\n\nStop reason: {result.stop_reason.value}")
        print(f"Tokens predicted: {result.tokens_predicted}")
        print(f"Generation speed: {result.timings.predicted_per_second:.1f} tokens/s")

        print("\n=== Cancelling after 5 fragments ===\n")
        fragments = []

        def on_token(text):
            fragments.append(text)
            if len(fragments) == 5:
                ctx.stop_completion()

        result = ctx.complete({"prompt": "Once upon a time", "max_tokens": 100}, on_token)
        print(f"Interrupted: {result.interrupted}, text: {result.text!r}")

        print("\n=== Session save/load ===\n")
        with tempfile.TemporaryDirectory() as tmp:
            session_path = Path(tmp) / "chat.session"
            saved = ctx.save_session(session_path)
            print(f"Saved {saved} tokens to {session_path}")

            loaded = ctx.load_session(session_path)
            print(f"Loaded {loaded.tokens_loaded} tokens")

            cache = SessionCache(Path(tmp) / "session-cache")
            ready = cache.load_or_regenerate(
                ctx, "assistant", model_id=Path(model_path).name,
                system_prompt="You are a concise assistant.",
            )
            print(f"Session cache ready: {ready}, history: {ctx.n_tokens} tokens")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print(__doc__)
        sys.exit(1)
    main(sys.argv[1])
