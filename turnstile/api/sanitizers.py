"""Message sanitization passes run before every model call.

Three independent passes, each enforcing one structural invariant the
provider API requires:

  1. remove_incomplete_tool_calls -- every tool call has a later result
  2. remove_empty_messages        -- no blank messages (except a trailing
                                     assistant message)
  3. remove_unsigned_reasoning    -- only signed reasoning is replayed

Passes never raise, never reorder and never change message ids.  Each
is idempotent.  Dropped content is logged, not reported to the caller.
"""

from __future__ import annotations

import logging
from enum import StrEnum

from turnstile.api.models import (
    Message,
    ReasoningPart,
    RedactedReasoningPart,
    Role,
    TextPart,
)

logger = logging.getLogger(__name__)


class ToolCallCheckMode(StrEnum):
    # Every assistant message anywhere in the list is checked
    FULL_HISTORY = "full_history"
    # Only the last assistant message is checked; it and everything after go
    LAST_ASSISTANT = "last_assistant"


def _preview(message: Message) -> str:
    return message.text[:100]


# ---------------------------------------------------------------------------
# Pass 1: incomplete tool calls
# ---------------------------------------------------------------------------


def remove_incomplete_tool_calls(
    messages: list[Message],
    mode: ToolCallCheckMode | str = ToolCallCheckMode.FULL_HISTORY,
) -> list[Message]:
    """Drop assistant messages whose tool calls were never answered.

    Happens when a previous run was interrupted mid-tool-execution; the
    provider rejects a tool-call turn without its results.
    """
    if ToolCallCheckMode(mode) is ToolCallCheckMode.LAST_ASSISTANT:
        return _remove_incomplete_last_assistant(messages)
    return _remove_incomplete_full_history(messages)


def _remove_incomplete_full_history(messages: list[Message]) -> list[Message]:
    # Walk newest to oldest; only a result in a later message answers a call
    answered: set[str] = set()
    keep: list[bool] = []
    for message in reversed(messages):
        missing = [c.id for c in message.tool_calls if c.id not in answered]
        answered.update(message.tool_result_ids)
        if message.role is not Role.ASSISTANT:
            keep.append(True)
            continue
        if missing:
            logger.warning(
                "Removing message %s with incomplete tool call(s) %s. Content starts: %r",
                message.id, missing, _preview(message),
            )
        keep.append(not missing)
    keep.reverse()
    return [m for m, k in zip(messages, keep) if k]


def _remove_incomplete_last_assistant(messages: list[Message]) -> list[Message]:
    last_index = next(
        (i for i in range(len(messages) - 1, -1, -1) if messages[i].role is Role.ASSISTANT),
        None,
    )
    if last_index is None:
        return list(messages)

    required = {c.id for c in messages[last_index].tool_calls}
    if not required:
        return list(messages)

    provided = {
        result_id
        for m in messages[last_index + 1:]
        for result_id in m.tool_result_ids
    }
    if required <= provided:
        return list(messages)

    logger.warning(
        "Incomplete tool call sequence at message %s (required=%s, provided=%s); "
        "removing it and %d following message(s)",
        messages[last_index].id, sorted(required), sorted(provided),
        len(messages) - last_index - 1,
    )
    return messages[:last_index]


# ---------------------------------------------------------------------------
# Pass 2: empty messages
# ---------------------------------------------------------------------------


def is_empty_message(message: Message) -> bool:
    """True when a message has no parts or only whitespace text parts."""
    return all(
        isinstance(part, TextPart) and not part.text.strip()
        for part in message.parts
    )


def remove_empty_messages(messages: list[Message]) -> list[Message]:
    """Drop blank messages, keeping a blank final assistant message.

    A model may end a streamed turn with trailing empty content.
    """
    last = len(messages) - 1
    result: list[Message] = []
    for i, message in enumerate(messages):
        if is_empty_message(message) and not (i == last and message.role is Role.ASSISTANT):
            logger.warning("Removing empty %s message %s", message.role.value, message.id)
            continue
        result.append(message)
    return result


# ---------------------------------------------------------------------------
# Pass 3: unsigned reasoning
# ---------------------------------------------------------------------------


def _is_replayable(part: object) -> bool:
    if isinstance(part, RedactedReasoningPart):
        return False
    if isinstance(part, ReasoningPart):
        return bool(part.signature)
    return True


def remove_unsigned_reasoning(messages: list[Message]) -> list[Message]:
    """Strip reasoning parts the provider could not verify.

    Reasoning reconstructed from storage may have lost its signature;
    redacted reasoning never has one.  A message left empty by the strip
    is dropped unless it is the final assistant message.
    """
    last = len(messages) - 1
    result: list[Message] = []
    for i, message in enumerate(messages):
        if message.role is not Role.ASSISTANT:
            result.append(message)
            continue
        parts = [p for p in message.parts if _is_replayable(p)]
        if len(parts) == len(message.parts):
            result.append(message)
            continue
        logger.warning(
            "Removing %d unsigned reasoning part(s) from message %s",
            len(message.parts) - len(parts), message.id,
        )
        stripped = message.model_copy(update={"parts": parts})
        if i != last and is_empty_message(stripped):
            logger.warning("Removing assistant message %s left empty", message.id)
            continue
        result.append(stripped)
    return result


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def sanitize_messages(
    messages: list[Message],
    mode: ToolCallCheckMode | str = ToolCallCheckMode.FULL_HISTORY,
) -> list[Message]:
    """Run all passes in order: tool calls -> empty -> unsigned reasoning."""
    sanitized = remove_incomplete_tool_calls(messages, mode)
    sanitized = remove_empty_messages(sanitized)
    sanitized = remove_unsigned_reasoning(sanitized)
    if len(sanitized) != len(messages):
        logger.info("Sanitized history: %d -> %d messages", len(messages), len(sanitized))
    return sanitized
