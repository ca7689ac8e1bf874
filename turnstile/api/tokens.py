"""Token counting for history budgeting.

The default counter is a chars/4 heuristic that improves itself from
the provider's reported input token usage.  Any real tokenizer can be
plugged in with FunctionTokenCounter.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from turnstile.api.models import Message, TextPart

logger = logging.getLogger(__name__)


class TokenCounter(Protocol):
    def count(self, text: str) -> int: ...


class HeuristicTokenCounter:
    """Estimates token counts with optional calibration from API usage.

    Starts with chars/4. Improves via calibrate() after each model
    response using actual input_tokens from usage data.

    Limitations (acknowledged):
    - Resets on restart (ephemeral)
    - actual_tokens from the API includes tool schema overhead
    - Alpha=0.1 means ~10 samples to ~65% convergence
    """

    def __init__(self, ratio: float = 0.25) -> None:
        self._ratio = ratio  # tokens per char
        self._samples = 0

    @property
    def samples(self) -> int:
        """Number of calibration samples received."""
        return self._samples

    @property
    def ratio(self) -> float:
        """Current tokens-per-char ratio."""
        return self._ratio

    def count(self, text: str) -> int:
        if not text:
            return 0
        return max(1, int(len(text) * self._ratio))

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from actual API input_tokens. EMA with alpha=0.1."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


class FunctionTokenCounter:
    """Adapts a plain ``text -> int`` tokenizer function."""

    def __init__(self, fn: Callable[[str], int]) -> None:
        self._fn = fn

    def count(self, text: str) -> int:
        return self._fn(text)


MessageCost = Callable[[Message, TokenCounter], int]


def count_text(counter: TokenCounter, text: str, context: str = "text") -> int:
    """Count tokens, treating tokenizer failures as zero."""
    try:
        return counter.count(text)
    except Exception as e:
        logger.warning("Failed to count tokens for %s, assuming 0: %s", context, e)
        return 0


def text_parts_cost(message: Message, counter: TokenCounter) -> int:
    """Default message cost: sum of ``text`` parts only.

    Tool calls, tool results and reasoning parts are not charged. This
    under-counts tool-heavy histories; swap in another MessageCost to
    account for them.
    """
    return sum(
        count_text(counter, part.text, f"message {message.id}")
        for part in message.parts
        if isinstance(part, TextPart)
    )
