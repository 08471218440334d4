"""DAB Data Models.

This package contains the data models for the Diagnostic Agent Bridge,
including conversation messages, tool descriptors and results, provider
launch specs, approval decisions, progress streams and credential pools.
"""

from .message import Message, MessageRole, ConversationSession, TurnState
from .tool import ToolDescriptor, ToolCatalog, ToolResult
from .provider import (
    ConnectionState,
    ProviderSpec,
    WorkflowArgument,
    WorkflowDescriptor,
    ResourceDescriptor,
)
from .approval import (
    APPROVAL_SCHEMA,
    ApprovalRequest,
    ApprovalDecision,
    Accepted,
    Declined,
    Cancelled,
    decision_from_action,
    default_approval_payload,
)
from .stream import (
    StreamState,
    StreamEventKind,
    StreamEvent,
    StreamSession,
    classify_event_type,
)
from .credentials import CredentialPool
from .errors import (
    DABError,
    NotInitialized,
    NoCredentialsConfigured,
    ApprovalTransportError,
    ExecutionError,
    ProviderInitializationError,
)

__all__ = [
    # Conversation
    "Message",
    "MessageRole",
    "ConversationSession",
    "TurnState",
    # Tools
    "ToolDescriptor",
    "ToolCatalog",
    "ToolResult",
    # Providers
    "ConnectionState",
    "ProviderSpec",
    "WorkflowArgument",
    "WorkflowDescriptor",
    "ResourceDescriptor",
    # Approval
    "APPROVAL_SCHEMA",
    "ApprovalRequest",
    "ApprovalDecision",
    "Accepted",
    "Declined",
    "Cancelled",
    "decision_from_action",
    "default_approval_payload",
    # Streams
    "StreamState",
    "StreamEventKind",
    "StreamEvent",
    "StreamSession",
    "classify_event_type",
    # Credentials
    "CredentialPool",
    # Errors
    "DABError",
    "NotInitialized",
    "NoCredentialsConfigured",
    "ApprovalTransportError",
    "ExecutionError",
    "ProviderInitializationError",
]
