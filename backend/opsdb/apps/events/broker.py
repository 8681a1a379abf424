"""
In-process fan-out of committed ledger changes.

The inventory engine hands every post-commit envelope to `EventBroker.publish`.
Each SSE client holds a `Subscription` that may narrow the feed to one entity
type (`inventory.order`, `inventory.item`, `inventory.movement`). A ring buffer
of recent envelopes lets a reconnecting client resume from its Last-Event-ID.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple

from opsdb.utils.identifiers import generate_uuid7

logger = logging.getLogger(__name__)


@dataclass
class EventEnvelope:
    # camelCase is the wire format consumed by the UI
    id: str
    type: str
    entityType: str
    entityId: str
    action: str
    timestamp: str
    actor: Optional[Dict[str, Any]]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


def build_envelope(
    *,
    type: str,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> EventEnvelope:
    return EventEnvelope(
        id=generate_uuid7(),
        type=type,
        entityType=entity_type,
        entityId=entity_id,
        action=action,
        timestamp=datetime.now(timezone.utc).isoformat(),
        actor={"userId": actor_id} if actor_id else None,
        metadata=metadata or {},
    )


@dataclass(eq=False)
class Subscription:
    """One consumer's bounded queue; `dropped` counts envelopes lost to overflow."""

    queue: "queue.Queue[EventEnvelope]"
    entity_type: Optional[str] = None
    dropped: int = 0

    def wants(self, event: EventEnvelope) -> bool:
        return self.entity_type is None or event.entityType == self.entity_type

    def offer(self, event: EventEnvelope) -> None:
        while True:
            try:
                self.queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self.queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    continue


class EventBroker:
    def __init__(self, replay_size: int = 2000, queue_size: int = 400) -> None:
        self._subscriptions: List[Subscription] = []
        self._recent: Deque[EventEnvelope] = deque(maxlen=replay_size)
        self._queue_size = queue_size
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscribe(self, entity_type: Optional[str] = None) -> Subscription:
        subscription = Subscription(queue=queue.Queue(maxsize=self._queue_size), entity_type=entity_type)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        if subscription.dropped:
            logger.warning(
                "Event subscriber fell behind",
                extra={"entity_type": subscription.entity_type, "dropped": subscription.dropped},
            )

    def replay_since(
        self,
        *,
        last_event_id: str,
        entity_type: Optional[str] = None,
    ) -> Tuple[List[EventEnvelope], bool]:
        """
        Envelopes published after `last_event_id`, optionally narrowed to one
        entity type. The flag is set when the id is no longer buffered and the
        client has to reload instead of resuming.
        """
        with self._lock:
            recent = list(self._recent)
        if not recent:
            return [], False
        position = next((i for i, event in enumerate(recent) if event.id == last_event_id), None)
        if position is None:
            return [], True
        later = recent[position + 1 :]
        if entity_type is not None:
            later = [event for event in later if event.entityType == entity_type]
        return later, False

    def publish(self, event: EventEnvelope) -> None:
        with self._lock:
            self._recent.append(event)
            targets = [s for s in self._subscriptions if s.wants(event)]
        for subscription in targets:
            subscription.offer(event)


def format_sse(data: str, *, event: Optional[str] = None, event_id: Optional[str] = None) -> str:
    fields = []
    if event_id:
        fields.append(("id", event_id))
    if event:
        fields.append(("event", event))
    fields.extend(("data", line) for line in data.splitlines())
    return "".join(f"{name}: {value}\n" for name, value in fields) + "\n"


def keepalive_message() -> str:
    return format_sse(json.dumps({"type": "heartbeat", "ts": time.time()}), event="heartbeat")
