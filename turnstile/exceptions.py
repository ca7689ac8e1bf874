"""Exceptions raised across turnstile."""


class TurnstileError(Exception):
    """Base exception for turnstile."""

    pass


class ModelInvocationError(TurnstileError):
    """The language model call failed (network, HTTP or in-stream error)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ConversationBusyError(TurnstileError):
    """A turn for this conversation id is already in flight."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} already has a turn in progress")
        self.conversation_id = conversation_id


class ToolExecutionError(TurnstileError):
    """A tool refused or failed to do its work; reported back to the model."""

    pass
