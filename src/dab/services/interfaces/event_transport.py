"""Abstract interface for progress event transports.

Defines the EventTransport interface the stream broker subscribes through.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class EventTransport(ABC):
    """Interface for a per-correlation-id event subscription channel."""

    @abstractmethod
    async def subscribe(self, correlation_id: str, on_event: EventHandler) -> None:
        """Deliver every event for ``correlation_id`` to ``on_event`` in order.

        Runs until the subscription is closed or the channel ends. The first
        delivered event is the ``connected`` handshake.
        """
        pass

    async def aclose(self) -> None:
        """Release transport-wide resources."""
        pass
