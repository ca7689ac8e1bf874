"""Tests for the message sanitization passes."""

from turnstile.api.models import (
    Message,
    ReasoningPart,
    RedactedReasoningPart,
    Role,
    TextPart,
    ToolCallPart,
    ToolCallResult,
    ToolResultPart,
)
from turnstile.api.sanitizers import (
    ToolCallCheckMode,
    is_empty_message,
    remove_empty_messages,
    remove_incomplete_tool_calls,
    remove_unsigned_reasoning,
    sanitize_messages,
)


def _call(*ids: str, text: str = "") -> Message:
    parts = [TextPart(text=text)] if text else []
    parts += [ToolCallPart(id=i, name="echo", args={}) for i in ids]
    return Message(role=Role.ASSISTANT, parts=parts)


def _result(call_id: str) -> Message:
    return Message.tool_result(ToolCallResult(call_id, "echo", value="ok"))


def _ids(messages: list[Message]) -> list[str]:
    return [m.id for m in messages]


class TestIncompleteToolCallsFullHistory:
    def test_unanswered_call_removed_following_answer_kept(self):
        user = Message.user("hi")
        dangling = _call("c1")
        answer = Message.assistant("done")
        result = remove_incomplete_tool_calls([user, dangling, answer])
        assert _ids(result) == [user.id, answer.id]

    def test_answered_call_kept(self):
        messages = [Message.user("hi"), _call("c1"), _result("c1"), Message.assistant("ok")]
        assert remove_incomplete_tool_calls(messages) == messages

    def test_partially_answered_call_removed(self):
        call = _call("c1", "c2")
        messages = [Message.user("hi"), call, _result("c1")]
        result = remove_incomplete_tool_calls(messages)
        assert call.id not in _ids(result)

    def test_result_before_call_does_not_count(self):
        early = _result("c1")
        call = _call("c1")
        result = remove_incomplete_tool_calls([Message.user("hi"), early, call])
        assert call.id not in _ids(result)

    def test_middle_of_history_checked(self):
        old = _call("c0")
        messages = [Message.user("a"), old, Message.user("b"), _call("c1"), _result("c1")]
        result = remove_incomplete_tool_calls(messages)
        assert _ids(result) == _ids(messages[:1] + messages[2:])

    def test_every_remaining_call_has_later_result(self):
        messages = [
            Message.user("a"), _call("c1"), _result("c1"),
            _call("c2"), Message.user("b"), _call("c3", "c4"), _result("c4"),
        ]
        result = remove_incomplete_tool_calls(messages)
        for i, message in enumerate(result):
            later = {rid for m in result[i + 1:] for rid in m.tool_result_ids}
            assert all(c.id in later for c in message.tool_calls)

    def test_result_in_same_message_does_not_count(self):
        mixed = Message(
            role=Role.ASSISTANT,
            parts=[ToolCallPart(id="c1", name="echo"), ToolResultPart(tool_call_id="c1", name="echo")],
        )
        user = Message.user("hi")
        assert remove_incomplete_tool_calls([user, mixed]) == [user]

    def test_idempotent(self):
        messages = [Message.user("a"), _call("c1"), _call("c2"), _result("c2")]
        once = remove_incomplete_tool_calls(messages)
        assert remove_incomplete_tool_calls(once) == once


class TestIncompleteToolCallsLastAssistant:
    def test_incomplete_last_assistant_truncates_tail(self):
        user = Message.user("hi")
        call = _call("c1", "c2")
        messages = [user, call, _result("c1")]
        result = remove_incomplete_tool_calls(messages, ToolCallCheckMode.LAST_ASSISTANT)
        assert result == [user]

    def test_earlier_assistants_not_checked(self):
        messages = [Message.user("a"), _call("c0"), Message.assistant("answer")]
        result = remove_incomplete_tool_calls(messages, "last_assistant")
        assert result == messages

    def test_complete_last_assistant_kept(self):
        messages = [Message.user("a"), _call("c1"), _result("c1")]
        assert remove_incomplete_tool_calls(messages, "last_assistant") == messages

    def test_no_assistant(self):
        messages = [Message.user("a")]
        assert remove_incomplete_tool_calls(messages, "last_assistant") == messages


class TestEmptyMessages:
    def test_is_empty(self):
        assert is_empty_message(Message(role=Role.USER, parts=[]))
        assert is_empty_message(Message.user("   \n"))
        assert not is_empty_message(Message.user("x"))
        assert not is_empty_message(_call("c1"))

    def test_final_empty_assistant_kept_middle_empty_user_removed(self):
        first = Message.user("hello")
        blank_user = Message.user("  ")
        reply = Message.assistant("hi")
        blank_final = Message.assistant("")
        result = remove_empty_messages([first, blank_user, reply, blank_final])
        assert _ids(result) == [first.id, reply.id, blank_final.id]

    def test_final_empty_user_removed(self):
        first = Message.user("hello")
        result = remove_empty_messages([first, Message.user("")])
        assert result == [first]

    def test_idempotent(self):
        messages = [Message.user(""), Message.assistant(""), Message.user("x"), Message.assistant("")]
        once = remove_empty_messages(messages)
        assert remove_empty_messages(once) == once


class TestUnsignedReasoning:
    def test_unsigned_and_redacted_removed_signed_kept(self):
        message = Message(
            role=Role.ASSISTANT,
            parts=[
                ReasoningPart(text="signed", signature="sig"),
                ReasoningPart(text="unsigned"),
                RedactedReasoningPart(data="opaque"),
                TextPart(text="answer"),
            ],
        )
        [result] = remove_unsigned_reasoning([message])
        assert result.id == message.id
        assert [p.type for p in result.parts] == ["reasoning", "text"]
        assert result.parts[0].signature == "sig"

    def test_untouched_message_is_same_object(self):
        message = Message.assistant("plain")
        assert remove_unsigned_reasoning([message])[0] is message

    def test_message_left_empty_in_middle_removed(self):
        question = Message.user("q")
        thinking_only = Message(role=Role.ASSISTANT, parts=[ReasoningPart(text="unsigned")])
        follow_up = Message.user("x")
        result = remove_unsigned_reasoning([question, thinking_only, follow_up])
        assert _ids(result) == [question.id, follow_up.id]

    def test_final_message_left_empty_kept(self):
        question = Message.user("q")
        thinking_only = Message(role=Role.ASSISTANT, parts=[RedactedReasoningPart(data="opaque")])
        result = remove_unsigned_reasoning([question, thinking_only])
        assert _ids(result) == [question.id, thinking_only.id]
        assert result[1].parts == []


class TestSanitizePipeline:
    def test_order_and_ids_preserved(self):
        messages = [
            Message.user("q1"),
            _call("c1"),
            Message.user(""),
            Message(role=Role.ASSISTANT, parts=[ReasoningPart(text="x"), TextPart(text="a1")]),
            Message.user("q2"),
        ]
        result = sanitize_messages(messages)
        assert _ids(result) == [messages[0].id, messages[3].id, messages[4].id]
        assert result[1].text == "a1"

    def test_pipeline_idempotent(self):
        messages = [
            Message.user("q1"), _call("c1"), Message.user(""),
            _call("c2"), _result("c2"), Message.assistant(""),
        ]
        once = sanitize_messages(messages)
        assert sanitize_messages(once) == once

    def test_pipeline_idempotent_when_reasoning_strip_empties_message(self):
        messages = [
            Message.user("q"),
            Message(role=Role.ASSISTANT, parts=[ReasoningPart(text="unsigned")]),
            Message.user("x"),
        ]
        once = sanitize_messages(messages)
        assert len(once) == 2
        assert sanitize_messages(once) == once

    def test_never_raises_on_empty_input(self):
        assert sanitize_messages([]) == []
        assert sanitize_messages([], ToolCallCheckMode.LAST_ASSISTANT) == []
