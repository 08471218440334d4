"""Session orchestration services for DAB."""

from .credential_rotator import CredentialRotator
from .approval_gate import ApprovalGate
from .tool_calls import Recognized, Unrecognized, parse_tool_call
from .tool_provider import ToolProviderHandle, stdio_session
from .stream_broker import HubEventTransport, SSEEventTransport, StreamBroker, new_correlation_id
from .model_client import OpenAICompatibleClient, is_rate_limit_error
from .terminal import TerminalInterface
from .chat_session import ChatSession

__all__ = [
    "CredentialRotator",
    "ApprovalGate",
    "Recognized",
    "Unrecognized",
    "parse_tool_call",
    "ToolProviderHandle",
    "stdio_session",
    "HubEventTransport",
    "SSEEventTransport",
    "StreamBroker",
    "new_correlation_id",
    "OpenAICompatibleClient",
    "is_rate_limit_error",
    "TerminalInterface",
    "ChatSession",
]
