"""SSE stream of domain events."""
from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends
from sse_starlette import ServerSentEvent
from sse_starlette.sse import EventSourceResponse

from agent_hq.date_utils import format_datetime_utc, utc_now
from agent_hq.dependencies import get_event_bus
from agent_hq.events import EventBus

logger = logging.getLogger("agent_hq.api")

events_router = APIRouter(prefix="/api/events", tags=["events"])

_KEEPALIVE_SECONDS = 30.0


@events_router.get("")
async def event_stream(bus: EventBus = Depends(get_event_bus)) -> EventSourceResponse:
    """Stream every emitted event as SSE, one ``event:`` per domain event type.

    A ``keepalive`` event is sent after 30 seconds without traffic.
    """

    async def event_generator():
        queue = bus.queue()
        try:
            yield ServerSentEvent(data=format_datetime_utc(utc_now()), event="connected")
            logger.info("Event stream connected")
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ServerSentEvent(data=format_datetime_utc(utc_now()), event="keepalive")
                    continue
                yield ServerSentEvent(data=event.model_dump_json(), event=event.event)
        except asyncio.CancelledError:
            logger.info("Event stream disconnected")
            raise
        finally:
            bus.unsubscribe_queue(queue)

    return EventSourceResponse(event_generator())
