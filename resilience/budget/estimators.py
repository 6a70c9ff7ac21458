"""Token estimators.

The validator only needs a deterministic, monotonic proxy for token cost that
is used consistently for both the budget check and chunk sizing. Two are
provided:

- CharRatioEstimator: ceil(len(text) / chars_per_token). No I/O, the default.
- TiktokenEstimator: exact cl100k_base token counts via tiktoken. Loading the
  encoding may download the BPE table on first use, so it is opt-in.
"""

from __future__ import annotations

import math
from typing import Protocol

import tiktoken

from resilience.config import Settings

_TOKENIZER_NAME = "cl100k_base"  # OpenAI tokenizer compatible with most models


class TokenEstimator(Protocol):
    """Counts tokens and hard-splits text that no boundary can break up."""

    def count(self, text: str) -> int: ...

    def split(self, text: str, max_tokens: int) -> list[str]: ...


class CharRatioEstimator:
    """Approximate tokens as a fixed number of characters each."""

    def __init__(self, chars_per_token: int = 4) -> None:
        if chars_per_token < 1:
            raise ValueError(f"chars_per_token must be >= 1, got {chars_per_token}")
        self._chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        return math.ceil(len(text) / self._chars_per_token)

    def split(self, text: str, max_tokens: int) -> list[str]:
        width = max(1, max_tokens) * self._chars_per_token
        return [text[pos : pos + width] for pos in range(0, len(text), width)]


class TiktokenEstimator:
    """Exact token counts using a tiktoken encoding."""

    def __init__(self, encoding_name: str = _TOKENIZER_NAME) -> None:
        self._enc = tiktoken.get_encoding(encoding_name)

    def count(self, text: str) -> int:
        return len(self._enc.encode(text))

    def split(self, text: str, max_tokens: int) -> list[str]:
        tokens = self._enc.encode(text)
        step = max(1, max_tokens)
        return [
            self._enc.decode(tokens[pos : pos + step])
            for pos in range(0, len(tokens), step)
        ]


def build_estimator(settings: Settings) -> TokenEstimator:
    """Return the estimator selected by TOKEN_ESTIMATOR."""
    if settings.token_estimator == "tiktoken":
        return TiktokenEstimator()
    return CharRatioEstimator(settings.chars_per_token)
