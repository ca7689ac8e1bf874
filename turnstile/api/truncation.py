"""History truncation -- fit an unbounded history into a token budget."""

from __future__ import annotations

import logging

from turnstile.api.models import Message
from turnstile.api.tokens import MessageCost, TokenCounter, count_text, text_parts_cost

logger = logging.getLogger(__name__)


class HistoryTruncator:
    """Selects the most recent contiguous run of messages that fits.

    The budget left for history is the input budget minus the system
    prompt and the reasoning budget.  Messages are taken newest first
    and scanning stops at the first one that does not fit, so the
    result is always a suffix of the input, never a sparse subset.
    """

    def __init__(self, counter: TokenCounter, cost: MessageCost | None = None) -> None:
        self._counter = counter
        self._cost = cost or text_parts_cost

    def history_budget(
        self,
        system_prompt: str,
        input_token_budget: int,
        reasoning_token_budget: int = 0,
    ) -> int:
        system_tokens = count_text(self._counter, system_prompt, "system prompt")
        return max(0, input_token_budget - system_tokens - reasoning_token_budget)

    def message_cost(self, message: Message) -> int:
        return self._cost(message, self._counter)

    def truncate(
        self,
        system_prompt: str,
        full_history: list[Message],
        input_token_budget: int,
        reasoning_token_budget: int = 0,
    ) -> list[Message]:
        """Return the longest suffix of full_history within budget, oldest first."""
        remaining = self.history_budget(system_prompt, input_token_budget, reasoning_token_budget)

        selected: list[Message] = []
        accumulated = 0
        for message in reversed(full_history):
            cost = self.message_cost(message)
            if accumulated + cost > remaining:
                break
            selected.append(message)
            accumulated += cost
        selected.reverse()

        if len(selected) < len(full_history):
            logger.info(
                "Truncated history: kept %d of %d messages (%d/%d tokens)",
                len(selected), len(full_history), accumulated, remaining,
            )
        else:
            logger.debug(
                "History fits: %d messages (%d/%d tokens)",
                len(selected), accumulated, remaining,
            )
        return selected
