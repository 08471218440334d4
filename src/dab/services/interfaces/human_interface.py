"""Abstract interfaces for the human side of a session.

Defines the ApprovalPresenter interface the approval gate delegates to, and
the HumanInterface interface the chat session renders through.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

from dab.models.approval import ApprovalDecision


class RenderKind(str, Enum):
    """Kinds of output the session hands to the human interface."""

    WELCOME = "welcome"
    ASSISTANT = "assistant"
    FINAL = "final"
    TOOL_EXECUTION = "tool_execution"
    TOOL_RESULT = "tool_result"
    STREAM_EVENT = "stream_event"
    NOTICE = "notice"
    ERROR = "error"
    LIST_HEADER = "list_header"
    LIST_ITEM = "list_item"
    RESOURCE = "resource"
    EXIT = "exit"


class ApprovalPresenter(ABC):
    """Interface for asking a human to approve an action."""

    @abstractmethod
    async def present_approval_prompt(self, prompt_text: str, parameter_schema: Dict[str, Any]) -> ApprovalDecision:
        """Show the prompt and return the human's decision.

        Raises any error of the underlying channel; callers decide how to
        fail.
        """
        pass


class HumanInterface(ApprovalPresenter):
    """Interface for the interactive terminal or any equivalent front end."""

    @abstractmethod
    def render_event(self, kind: RenderKind, payload: Dict[str, Any]) -> None:
        """Render one piece of session output."""
        pass

    @abstractmethod
    async def read_input(self, prompt_text: str = "You: ") -> Optional[str]:
        """Read one line of input. Raises EOFError when input is closed."""
        pass

    @abstractmethod
    async def ask_argument(self, name: str, description: str, required: bool) -> Optional[str]:
        """Ask for one workflow argument. Empty answers return ``None``."""
        pass

    @abstractmethod
    async def confirm(self, question: str) -> bool:
        """Ask a yes/no question; anything but yes is no."""
        pass
