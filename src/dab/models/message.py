"""Message and conversation session models."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


class MessageRole(str, Enum):
    """Message role enumeration."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class TurnState(str, Enum):
    """Phases of a single conversational turn."""

    AWAITING_INPUT = "awaiting_input"
    DISPATCHING = "dispatching"
    TOOL_INVOCATION = "tool_invocation"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    RESULT_INTEGRATION = "result_integration"


class Message(BaseModel):
    """A single entry of the conversation history."""

    role: MessageRole = Field(..., description="Message role (system, user, assistant)")
    content: str = Field(..., description="Message text")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    def to_chat_format(self) -> dict:
        """Render the message as a chat-completion message dict."""
        return {"role": self.role, "content": self.content}


class ConversationSession(BaseModel):
    """Conversation state for one interactive session.

    The message list is append-only: insertion order is conversational order
    and messages are never reordered or rewritten.
    """

    session_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique identifier for the session"
    )

    messages: List[Message] = Field(
        default_factory=list,
        description="Ordered conversation history"
    )

    turn_state: TurnState = Field(
        default=TurnState.AWAITING_INPUT,
        description="Phase of the turn currently being processed"
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Session creation timestamp"
    )

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Last activity timestamp"
    )

    class Config:
        """Pydantic configuration."""

        validate_assignment = True

    @field_validator('session_id')
    @classmethod
    def validate_session_id(cls, v):
        """Session identifier must be non-empty."""
        if not v or not v.strip():
            raise ValueError("session_id cannot be empty")
        return v.strip()

    def add_message(self, role: MessageRole, content: str) -> Message:
        """Append a message to the history and return it."""
        message = Message(role=role, content=content)
        self.messages.append(message)
        self.updated_at = datetime.now(timezone.utc)
        return message

    def enter(self, state: TurnState) -> None:
        """Move the current turn to a new phase."""
        self.turn_state = state
        self.updated_at = datetime.now(timezone.utc)

    def last_message(self, role: Optional[MessageRole] = None) -> Optional[Message]:
        """Return the most recent message, optionally filtered by role."""
        for message in reversed(self.messages):
            if role is None or message.role == role:
                return message
        return None

    def to_chat_format(self) -> List[dict]:
        """Render the full history for a completion request."""
        return [message.to_chat_format() for message in self.messages]
