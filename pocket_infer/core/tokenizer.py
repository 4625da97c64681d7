"""
Tokenization and incremental detokenization.

TokenCodec wraps a Hugging Face tokenizer loaded from the model directory.
StreamingDetokenizer turns a growing token sequence into text fragments
without ever emitting a partial UTF-8 character: byte-level vocabularies
split multi-byte characters across tokens, and a decode that ends in the
replacement character is held back until the next token completes it.
"""

from typing import Iterable, List, Optional, Sequence

from transformers import AutoTokenizer, PreTrainedTokenizerBase

REPLACEMENT_CHAR = "\ufffd"


class TokenCodec:
    """Text/token conversion for one loaded model.

    Attributes:
        tokenizer: Underlying transformers tokenizer.
        eos_token_ids: Token ids that end generation.
    """

    def __init__(
        self, tokenizer: PreTrainedTokenizerBase, extra_eos_ids: Iterable[int] = ()
    ) -> None:
        self.tokenizer = tokenizer
        eos_ids = set(int(t) for t in extra_eos_ids)
        if tokenizer.eos_token_id is not None:
            eos_ids.add(int(tokenizer.eos_token_id))
        self.eos_token_ids = frozenset(eos_ids)

    @classmethod
    def from_pretrained(cls, model_path: str, extra_eos_ids: Iterable[int] = ()) -> "TokenCodec":
        tokenizer = AutoTokenizer.from_pretrained(model_path)
        return cls(tokenizer, extra_eos_ids)

    @property
    def vocab_size(self) -> int:
        return len(self.tokenizer)

    @property
    def bos_token(self) -> Optional[str]:
        return self.tokenizer.bos_token

    @property
    def eos_token(self) -> Optional[str]:
        return self.tokenizer.eos_token

    @property
    def chat_template(self) -> Optional[str]:
        template = getattr(self.tokenizer, "chat_template", None)
        return template if isinstance(template, str) and template else None

    def tokenize(self, text: str) -> List[int]:
        """Encode text, adding the tokenizer's special prefix unless present.

        Chat templates usually render the BOS token themselves; adding it a
        second time would shift the model off its training distribution.
        """
        bos = self.bos_token
        add_special_tokens = not (bos and text.startswith(bos))
        return list(self.tokenizer.encode(text, add_special_tokens=add_special_tokens))

    def detokenize(self, token_ids: Sequence[int]) -> str:
        return self.tokenizer.decode(
            list(token_ids), skip_special_tokens=False, clean_up_tokenization_spaces=False
        )

    def is_eos(self, token_id: int) -> bool:
        return token_id in self.eos_token_ids

    def streaming_detokenizer(self) -> "StreamingDetokenizer":
        return StreamingDetokenizer(self)


class StreamingDetokenizer:
    """Incrementally decodes tokens into complete-character text fragments.

    Decoding uses a sliding window: text for ``tokens[prefix_offset:]`` is
    compared with text for ``tokens[prefix_offset:read_offset]`` and only the
    difference is released, so tokenizers that merge whitespace across token
    boundaries still produce the same text as a full decode.
    """

    def __init__(self, codec: TokenCodec) -> None:
        self._codec = codec
        self.tokens: List[int] = []
        self.prefix_offset = 0
        self.read_offset = 0
        self.text = ""

    def add_token(self, token_id: int) -> str:
        """Append a token and return the newly completed text, possibly empty."""
        self.tokens.append(token_id)
        prefix_text = self._codec.detokenize(self.tokens[self.prefix_offset:self.read_offset])
        new_text = self._codec.detokenize(self.tokens[self.prefix_offset:])

        if len(new_text) > len(prefix_text) and not new_text.endswith(REPLACEMENT_CHAR):
            fragment = new_text[len(prefix_text):]
            self.prefix_offset = self.read_offset
            self.read_offset = len(self.tokens)
            self.text += fragment
            return fragment
        return ""

    @property
    def pending(self) -> bool:
        """Whether tokens are held back waiting for the rest of a character."""
        return self.read_offset < len(self.tokens)
