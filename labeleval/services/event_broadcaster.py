from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from labeleval.core.enums import EventType

logger = logging.getLogger(__name__)

_SUBSCRIBER_QUEUE_MAXSIZE = 256


def _close_queue(queue: asyncio.Queue, final_event: Optional[dict[str, Any]] = None) -> None:
    """Discard pending events and end the stream, keeping ``final_event`` if given."""
    while not queue.empty():
        queue.get_nowait()
    if final_event is not None:
        queue.put_nowait(final_event)
    queue.put_nowait(None)


@dataclass
class Subscription:
    evaluation_id: str
    queue: asyncio.Queue
    unsubscribe: Callable[[], None]

    async def next_event(self) -> Optional[dict[str, Any]]:
        """Next event, or ``None`` once the stream is closed."""
        return await self.queue.get()


class EventBroadcaster:
    def __init__(self, queue_maxsize: int = _SUBSCRIBER_QUEUE_MAXSIZE):
        self._queue_maxsize = max(2, int(queue_maxsize))
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    def subscribe(self, evaluation_id: str) -> Subscription:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_maxsize)
        self._subscribers.setdefault(evaluation_id, set()).add(queue)

        def _unsubscribe() -> None:
            queues = self._subscribers.get(evaluation_id)
            if queues is None:
                return
            queues.discard(queue)
            if not queues:
                self._subscribers.pop(evaluation_id, None)

        return Subscription(evaluation_id=evaluation_id, queue=queue, unsubscribe=_unsubscribe)

    def subscriber_count(self, evaluation_id: str) -> int:
        return len(self._subscribers.get(evaluation_id, ()))

    def publish(self, evaluation_id: str, event_type: EventType, data: Any = None) -> None:
        queues = self._subscribers.get(evaluation_id)
        if not queues:
            return
        event = {"type": event_type.value, "data": data}
        closing = event_type == EventType.COMPLETE
        dropped = 0
        for queue in list(queues):
            try:
                queue.put_nowait(event)
                if closing:
                    queue.put_nowait(None)
            except asyncio.QueueFull:
                # A lagging subscriber loses its backlog but still sees the stream end.
                queues.discard(queue)
                dropped += 1
                _close_queue(queue, event if closing else None)
        if dropped:
            logger.warning("Dropped %d slow subscriber(s) for evaluation %s", dropped, evaluation_id)
        if closing or not queues:
            self._subscribers.pop(evaluation_id, None)

    def publish_snapshot(self, evaluation_id: str, snapshot: dict[str, Any]) -> None:
        status = str(snapshot.get("status") or "")
        if status in ("completed", "failed"):
            self.publish(evaluation_id, EventType.COMPLETE, snapshot)
        else:
            self.publish(evaluation_id, EventType.EVALUATION, snapshot)
