"""
Core inference module.

Provides the main API and orchestrates all components:
- InferenceContext: Main entry point for users
- GenerationLoop: Prompt evaluation and token generation
- TokenCodec: Tokenization and streaming detokenization
- ModelHandle: Loaded model, tokenizer and metadata
- Session files: KV cache persistence
"""

__all__ = []
