"""In-process broker for task lifecycle notifications.

Subscribers register a callback, optionally scoped to one task, and get an
explicit ``Subscription`` handle to unsubscribe with. Delivery is synchronous
on the publishing thread; a failing callback is logged and skipped.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from mission_hq.storage.common import utc_now

logger = logging.getLogger(__name__)

TASK_CREATED = "task.created"
TASK_STATUS_CHANGED = "task.status_changed"
TASK_DELETED = "task.deleted"
MISSION_COMPLETED = "mission.completed"

_RECENT_BUFFER_SIZE = 100


@dataclass(slots=True)
class OrchestrationEvent:
    event_type: str
    mission_id: str
    task_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)


EventCallback = Callable[[OrchestrationEvent], None]


@dataclass(slots=True, frozen=True)
class Subscription:
    subscription_id: str
    task_id: str | None


class TaskEventBroker:
    """Thread-safe subscriber registry."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, tuple[Subscription, EventCallback]] = {}
        self._recent: deque[OrchestrationEvent] = deque(maxlen=_RECENT_BUFFER_SIZE)

    def subscribe(self, callback: EventCallback, task_id: str | None = None) -> Subscription:
        subscription = Subscription(subscription_id=str(uuid4()), task_id=task_id)
        with self._lock:
            self._subscribers[subscription.subscription_id] = (subscription, callback)
        logger.debug("Subscriber %s registered (task=%s)", subscription.subscription_id, task_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            removed = self._subscribers.pop(subscription.subscription_id, None)
        return removed is not None

    def publish(self, event: OrchestrationEvent) -> int:
        """Deliver ``event`` to matching subscribers; return how many received it."""

        with self._lock:
            self._recent.append(event)
            targets = [
                (subscription, callback)
                for subscription, callback in self._subscribers.values()
                if subscription.task_id is None or subscription.task_id == event.task_id
            ]

        delivered = 0
        for subscription, callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Subscriber %s failed on %s",
                    subscription.subscription_id,
                    event.event_type,
                )
                continue
            delivered += 1
        return delivered

    def recent(self, task_id: str | None = None) -> list[OrchestrationEvent]:
        with self._lock:
            events = list(self._recent)
        if task_id is None:
            return events
        return [event for event in events if event.task_id == task_id]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
