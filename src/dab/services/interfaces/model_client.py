"""Abstract interface for model completion.

Defines the ModelClient interface used by the chat session to obtain
assistant replies.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from dab.models.message import Message
from dab.models.tool import ToolCatalog


class ModelClient(ABC):
    """Interface for chat completion backends."""

    @abstractmethod
    async def complete(self, messages: List[Message], tools: Optional[ToolCatalog] = None) -> str:
        """Return the assistant reply for the given history.

        Args:
            messages: Conversation history in order
            tools: Live tool catalog, for backends that accept native tool definitions

        Returns:
            Reply text. A tool request is encoded as a JSON object with
            ``tool`` and ``arguments`` keys.
        """
        pass

    async def aclose(self) -> None:
        """Release connections held by the backend."""
        pass
