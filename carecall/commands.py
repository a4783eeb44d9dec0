"""
Command types for HealthCheckMachine control flow.

Commands are the ONLY public interface to HealthCheckMachine.
A suspended machine is never "called into"; the caller sends a
ResumeHealthCheck command carrying the same checkpoint key it was
given when the machine suspended.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class StartHealthCheck:
    """
    Begin (or reattach to) the health check for one call.

    If a checkpoint already exists for (user_id, conversation_id) the
    machine re-renders the pending question instead of starting over.

    Returns: TurnResult with the first (or pending) question.
    """
    user_id: str
    conversation_id: str


@dataclass(frozen=True)
class ResumeHealthCheck:
    """
    Deliver the user's reply to a suspended health check.

    checkpoint_key must equal the key returned by the turn that
    suspended (health_check:<userId>:<conversationId>).

    Returns: TurnResult with the next question, a retry, or the
    closing message.
    """
    checkpoint_key: str
    user_reply: str


@dataclass(frozen=True)
class ChatRequest:
    """
    One inbound turn as delivered by the telephony/webhook layer.

    Attributes:
        messages: Full message list ({'role', 'content'} dicts), system first
        conversation_id: Explicit conversation id, if the caller knows it
        user_id: Explicit user id, if the caller knows it
    """
    messages: Tuple[Dict[str, str], ...] = field(default_factory=tuple)
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None

    @staticmethod
    def from_messages(messages: List[Dict[str, str]],
                      conversation_id: Optional[str] = None,
                      user_id: Optional[str] = None) -> "ChatRequest":
        """Build a request, copying each message dict."""
        return ChatRequest(
            messages=tuple(dict(m) for m in messages),
            conversation_id=conversation_id,
            user_id=user_id,
        )

    @property
    def latest_user_message(self) -> str:
        """Content of the last 'user' message (empty string if none)."""
        for message in reversed(self.messages):
            if message.get('role') == 'user':
                return message.get('content', '') or ''
        return ''

    @property
    def system_message(self) -> str:
        """Content of the first 'system' message (empty string if none)."""
        for message in self.messages:
            if message.get('role') == 'system':
                return message.get('content', '') or ''
        return ''


# Command union type for type hints
Command = StartHealthCheck | ResumeHealthCheck
