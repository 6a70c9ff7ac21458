"""Token budget validation and chunking.

Checks whether a text plus its context fits within the safety budget and,
when it does not, splits the text into ordered chunks that each fit:

1. Split on paragraph boundaries (blank lines)
2. Split any paragraph that alone exceeds the chunk capacity on sentence
   boundaries
3. Hard-split any single sentence that still does not fit

Chunk capacity = budget - context tokens - overlap reserve. The reserve
leaves room for the boundary note (see ``overlap_context``) the caller may
prepend to each follow-up chunk. Whitespace between pieces is normalised,
but no paragraph, sentence or character of content is ever dropped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

import structlog

from resilience.budget.estimators import CharRatioEstimator, TokenEstimator
from resilience.exceptions import ContextTooLarge

log = structlog.get_logger(__name__)

DEFAULT_TOKEN_BUDGET = 28000
DEFAULT_OVERLAP_RESERVE = 500

_PARAGRAPH_SEP = "\n\n"
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


@dataclass
class BudgetResult:
    """Outcome of a budget check.

    ``chunks`` always holds at least one element. When the input fits, it is
    exactly ``[text]``.
    """

    is_valid: bool
    token_count: int
    chunks: list[str]
    warnings: list[str] = field(default_factory=list)

    @property
    def was_chunked(self) -> bool:
        return len(self.chunks) > 1


@dataclass
class _Piece:
    text: str
    separator: str  # joins this piece to the previous one inside a chunk


class TokenBudgetValidator:
    """Estimates token cost of text and chunks content that exceeds the budget."""

    def __init__(
        self,
        *,
        budget: int = DEFAULT_TOKEN_BUDGET,
        overlap_reserve: int = DEFAULT_OVERLAP_RESERVE,
        estimator: TokenEstimator | None = None,
    ) -> None:
        if budget <= 0:
            raise ValueError(f"budget must be positive, got {budget}")
        if overlap_reserve < 0:
            raise ValueError(f"overlap_reserve must be >= 0, got {overlap_reserve}")
        self._budget = budget
        self._overlap_reserve = overlap_reserve
        self._estimator = estimator or CharRatioEstimator()

    @property
    def budget(self) -> int:
        return self._budget

    def estimate_tokens(self, text: str) -> int:
        """Return the estimated token cost of text."""
        return self._estimator.count(text)

    def estimate_messages(self, contents: list[str]) -> int:
        return sum(self._estimator.count(content) for content in contents)

    def validate_and_chunk(
        self,
        text: str,
        context: list[str] | None = None,
    ) -> BudgetResult:
        """Check text + context against the budget, chunking text if needed.

        Args:
            text: The content to validate (the part that may be chunked)
            context: Strings that accompany every chunk, e.g. system prompt
                and conversation history

        Returns:
            BudgetResult with the token count and chunks

        Raises:
            ContextTooLarge: If the context leaves no room for any content
        """
        context = context or []
        context_tokens = self.estimate_messages(context)
        text_tokens = self.estimate_tokens(text)
        total = text_tokens + context_tokens

        if total <= self._budget:
            return BudgetResult(is_valid=True, token_count=total, chunks=[text])

        capacity = self._budget - context_tokens - self._overlap_reserve
        if capacity <= 0:
            log.warning(
                "token_budget.context_too_large",
                context_tokens=context_tokens,
                budget=self._budget,
            )
            raise ContextTooLarge(context_tokens, self._budget)

        chunks = self._chunk(text, capacity)
        log.info(
            "token_budget.chunked",
            total_tokens=total,
            budget=self._budget,
            capacity=capacity,
            chunk_count=len(chunks),
        )
        return BudgetResult(
            is_valid=False,
            token_count=total,
            chunks=chunks,
            warnings=[
                f"Content exceeds token limit ({total} > {self._budget})",
                f"Split into {len(chunks)} chunks",
            ],
        )

    def validate_message(self, message: str, system_prompt: str = "") -> tuple[bool, int]:
        """Return (fits, token_count) for a single message plus system prompt."""
        tokens = self.estimate_tokens(message) + self.estimate_tokens(system_prompt)
        return tokens <= self._budget, tokens

    def overlap_context(self, previous_chunk: str, next_chunk: str, sentences: int = 3) -> str:
        """Prefix next_chunk with the trailing sentences of previous_chunk.

        The carried-over text is capped by the overlap reserve so a prefixed
        chunk still fits the budget it was sized for.
        """
        tail = [s for s in _SENTENCE_SPLIT.split(previous_chunk.strip()) if s][-sentences:]
        carried = " ".join(tail)
        if self.estimate_tokens(carried) > self._overlap_reserve:
            parts = self._estimator.split(carried, self._overlap_reserve)
            carried = parts[-1] if parts else ""
        return f"Previous context: {carried}\n\nCurrent section: {next_chunk}"

    # ------------------------------------------------------------------ #
    # Chunking internals
    # ------------------------------------------------------------------ #

    def _pieces(self, text: str, capacity: int) -> list[_Piece]:
        pieces: list[_Piece] = []
        for paragraph in _PARAGRAPH_SPLIT.split(text):
            if not paragraph.strip():
                continue
            if self.estimate_tokens(paragraph) <= capacity:
                pieces.append(_Piece(paragraph, _PARAGRAPH_SEP))
                continue

            separator = _PARAGRAPH_SEP
            for sentence in _SENTENCE_SPLIT.split(paragraph):
                if not sentence:
                    continue
                if self.estimate_tokens(sentence) <= capacity:
                    pieces.append(_Piece(sentence, separator))
                else:
                    for i, part in enumerate(self._estimator.split(sentence, capacity)):
                        pieces.append(_Piece(part, separator if i == 0 else ""))
                separator = " "
        return pieces

    def _chunk(self, text: str, capacity: int) -> list[str]:
        chunks: list[str] = []
        current = ""
        for piece in self._pieces(text, capacity):
            if not current:
                current = piece.text
                continue
            candidate = current + piece.separator + piece.text
            if self.estimate_tokens(candidate) <= capacity:
                current = candidate
            else:
                chunks.append(current)
                current = piece.text
        if current:
            chunks.append(current)
        return chunks or [text]
