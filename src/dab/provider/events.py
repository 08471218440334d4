"""Progress event hub and its Server-Sent Events endpoint.

Command runners publish events by correlation id; each subscriber gets its
own queue, opened with a ``connected`` handshake event.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from dab.models.stream import TERMINAL_KINDS, classify_event_type


logger = logging.getLogger(__name__)


class EventHub:
    """In-process fan-out of progress events keyed by correlation id."""

    def __init__(self):
        self._queues: Dict[str, asyncio.Queue] = {}

    def register(self, correlation_id: str) -> asyncio.Queue:
        """Open a subscription; the queue starts with the ``connected`` event."""
        queue: asyncio.Queue = asyncio.Queue()
        queue.put_nowait({"type": "connected", "sessionId": correlation_id})
        self._queues[correlation_id] = queue
        logger.info(f"Event subscription established for session: {correlation_id}")
        return queue

    def unregister(self, correlation_id: str, queue: Optional[asyncio.Queue] = None) -> None:
        current = self._queues.get(correlation_id)
        if current is not None and (queue is None or current is queue):
            del self._queues[correlation_id]
            logger.info(f"Event subscription closed for session: {correlation_id}")

    def is_subscribed(self, correlation_id: str) -> bool:
        return correlation_id in self._queues

    def publish(self, correlation_id: str, event: Dict[str, Any]) -> bool:
        """Queue ``event`` for the subscriber of ``correlation_id``.

        Returns False when nobody is subscribed; the event is then dropped.
        """
        queue = self._queues.get(correlation_id)
        if queue is None:
            logger.warning(f"No active event subscription for session {correlation_id}")
            return False
        queue.put_nowait(event)
        return True


def _is_terminal(event: Dict[str, Any]) -> bool:
    event_type = event.get("type")
    classified = classify_event_type(event_type) if isinstance(event_type, str) else None
    return classified is not None and classified[1] in TERMINAL_KINDS


def create_event_app(hub: EventHub, keepalive_interval: float = 15.0) -> FastAPI:
    """Build the FastAPI app serving ``GET /sse/{session_id}``."""
    app = FastAPI(title="DAB progress events", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["Cache-Control"],
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok"}

    @app.get("/sse/{session_id}")
    async def subscribe(session_id: str, request: Request) -> StreamingResponse:
        queue = hub.register(session_id)

        async def event_stream():
            try:
                while True:
                    if await request.is_disconnected():
                        break
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=keepalive_interval)
                    except asyncio.TimeoutError:
                        yield ": keep-alive\n\n"
                        continue
                    yield f"data: {json.dumps(event)}\n\n"
                    if _is_terminal(event):
                        break
            finally:
                hub.unregister(session_id, queue)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    return app
