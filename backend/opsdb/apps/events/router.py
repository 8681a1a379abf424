from __future__ import annotations

import asyncio
import json
import queue
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse

from .broker import EventBroker, EventEnvelope, format_sse, keepalive_message

router = APIRouter(prefix="/api", tags=["events"])

KEEPALIVE_SECONDS = 15


def get_broker(request: Request) -> EventBroker:
    return request.app.state.broker


def _frame(event: EventEnvelope) -> str:
    return format_sse(event.to_json(), event=event.type, event_id=event.id)


async def _event_generator(
    request: Request,
    broker: EventBroker,
    entity_type: Optional[str],
) -> AsyncGenerator[str, None]:
    # subscribe before replaying so nothing published in between is missed
    subscription = broker.subscribe(entity_type)
    try:
        last_event_id = request.headers.get("last-event-id") or request.query_params.get("lastEventId")
        if last_event_id:
            replay, stale = broker.replay_since(last_event_id=last_event_id, entity_type=entity_type)
            if stale:
                reset = {"type": "reset", "reason": "last_event_id_out_of_window", "lastEventId": last_event_id}
                yield format_sse(json.dumps(reset), event="reset")
            for event in replay:
                yield _frame(event)
        while not await request.is_disconnected():
            try:
                event = await asyncio.to_thread(subscription.queue.get, True, KEEPALIVE_SECONDS)
            except queue.Empty:
                yield keepalive_message()
                continue
            yield _frame(event)
    finally:
        broker.unsubscribe(subscription)


@router.get("/events")
async def stream_events(
    request: Request,
    entity_type: Optional[str] = Query(None, alias="entityType"),
) -> StreamingResponse:
    return StreamingResponse(
        _event_generator(request, get_broker(request), entity_type),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
