"""Live progress stream coordination.

The broker keeps one subscription per correlation id, classifies incoming
events, forwards them to the human interface and closes the subscription on
the first terminal event. Events arriving for an unknown or closed id are
dropped.
"""

import asyncio
import json
import logging
import secrets
import time
from typing import Any, Dict, List, Optional

import httpx

from dab.lib.metrics import try_get_metrics_collector
from dab.models.stream import (
    StreamEvent,
    StreamEventKind,
    StreamSession,
    StreamState,
    classify_event_type,
)
from dab.services.interfaces.event_transport import EventHandler, EventTransport
from dab.services.interfaces.human_interface import HumanInterface, RenderKind


def new_correlation_id() -> str:
    """Return an id of the form ``session_<epoch ms>_<9 hex chars>``."""
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


class SSEEventTransport(EventTransport):
    """Subscribes to ``GET {base_url}/sse/{correlation_id}`` over HTTP."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        connect_timeout: float = 5.0
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=connect_timeout, read=None, write=10.0, pool=10.0)
        )
        self.logger = logging.getLogger(__name__)

    async def subscribe(self, correlation_id: str, on_event: EventHandler) -> None:
        url = f"{self.base_url}/sse/{correlation_id}"
        async with self.client.stream("GET", url, headers={"Accept": "text/event-stream"}) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if not data:
                    continue
                try:
                    event = json.loads(data)
                except ValueError as e:
                    self.logger.warning(f"Unparseable event for {correlation_id}: {e}")
                    continue
                if isinstance(event, dict):
                    await on_event(event)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class HubEventTransport(EventTransport):
    """Subscribes directly to an in-process ``EventHub``."""

    def __init__(self, hub):
        self.hub = hub

    async def subscribe(self, correlation_id: str, on_event: EventHandler) -> None:
        queue = self.hub.register(correlation_id)
        try:
            while True:
                event = await queue.get()
                await on_event(event)
        finally:
            self.hub.unregister(correlation_id, queue)


class _SubscriptionFinished(Exception):
    pass


class StreamBroker:
    """Correlates progress events with the subscriptions that asked for them."""

    def __init__(
        self,
        transport: EventTransport,
        interface: Optional[HumanInterface] = None,
        connect_timeout: float = 5.0
    ):
        self.transport = transport
        self.interface = interface
        self.connect_timeout = connect_timeout
        self._sessions: Dict[str, StreamSession] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self.logger = logging.getLogger(__name__)

    new_correlation_id = staticmethod(new_correlation_id)

    @property
    def active_ids(self) -> List[str]:
        return list(self._sessions)

    def get(self, correlation_id: str) -> Optional[StreamSession]:
        return self._sessions.get(correlation_id)

    async def open_stream(self, correlation_id: str) -> StreamSession:
        """Subscribe to events for ``correlation_id``.

        Waits up to ``connect_timeout`` for the ``connected`` handshake.
        Subscription failures are logged, never raised; the tool call goes
        ahead without live progress.
        """
        session = StreamSession(correlation_id=correlation_id)
        self._sessions[correlation_id] = session
        task = asyncio.create_task(self._run(session), name=f"stream-{correlation_id}")
        self._tasks[correlation_id] = task
        task.add_done_callback(lambda t: self._forget_task(correlation_id, t))
        collector = try_get_metrics_collector()
        if collector:
            collector.record_stream_opened()

        try:
            await asyncio.wait_for(session.wait_connected(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"No stream handshake for {correlation_id} within {self.connect_timeout}s")
        return session

    async def _run(self, session: StreamSession) -> None:
        correlation_id = session.correlation_id

        async def on_event(event: Dict[str, Any]) -> None:
            self.handle_event(correlation_id, event)
            if session.is_closed:
                raise _SubscriptionFinished()

        try:
            await self.transport.subscribe(correlation_id, on_event)
        except _SubscriptionFinished:
            pass
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(f"Stream connection error for {correlation_id}: {e}")
            self._render({"correlation_id": correlation_id, "type": "connection_error", "error": str(e)})
        finally:
            self._discard(correlation_id, session)

    def handle_event(self, correlation_id: str, event: Dict[str, Any]) -> Optional[StreamEvent]:
        """Accept one event for ``correlation_id``.

        Returns the accepted event, or ``None`` when it was dropped.
        """
        session = self._sessions.get(correlation_id)
        if session is None or session.is_closed:
            self.logger.debug(f"Dropping event for closed stream {correlation_id}")
            return None

        event_type = event.get("type")
        classified = classify_event_type(event_type) if isinstance(event_type, str) else None
        if classified is None:
            self.logger.warning(f"Unknown stream event type for {correlation_id}: {event_type}")
            return None

        operation, kind = classified
        stream_event = StreamEvent(type=event_type, kind=kind, operation=operation, payload=event)
        session.events.append(stream_event)
        session.last_event_type = event_type

        if kind == StreamEventKind.CONNECTED:
            session.mark_connected()
        elif kind == StreamEventKind.START:
            session.state = StreamState.ACTIVE

        self._render({"correlation_id": correlation_id, **event, "kind": kind.value, "operation": operation})

        if stream_event.is_terminal:
            self.logger.info(f"Stream {correlation_id} finished with {event_type}")
            self._discard(correlation_id, session)
        return stream_event

    def _render(self, payload: Dict[str, Any]) -> None:
        if self.interface is None:
            return
        try:
            self.interface.render_event(RenderKind.STREAM_EVENT, payload)
        except Exception as e:
            self.logger.warning(f"Failed to render stream event: {e}")

    def _discard(self, correlation_id: str, session: StreamSession) -> None:
        was_open = self._sessions.get(correlation_id) is session
        if was_open:
            del self._sessions[correlation_id]
            collector = try_get_metrics_collector()
            if collector:
                collector.record_stream_closed()
        session.mark_closed()

    def _forget_task(self, correlation_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(correlation_id) is task:
            del self._tasks[correlation_id]

    async def close_stream(self, correlation_id: str) -> None:
        """Stop listening for ``correlation_id``. The remote operation keeps running."""
        session = self._sessions.get(correlation_id)
        if session is not None:
            self._discard(correlation_id, session)

        task = self._tasks.pop(correlation_id, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                self.logger.warning(f"Error closing stream {correlation_id}: {e}")

    async def close_all(self) -> None:
        """Close every subscription and the transport."""
        for correlation_id in list(set(self._sessions) | set(self._tasks)):
            try:
                await self.close_stream(correlation_id)
            except Exception as e:
                self.logger.warning(f"Error closing stream {correlation_id}: {e}")
        try:
            await self.transport.aclose()
        except Exception as e:
            self.logger.warning(f"Error closing event transport: {e}")
