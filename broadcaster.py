"""
Progress broadcaster: fans job events out to subscribed channels.

Delivery is best-effort. A subscriber whose buffer is full loses its oldest
event; the job store remains the source of truth.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from config import GLOBAL_CHANNEL, SUBSCRIBER_BUFFER_SIZE
from models import JobStatus, iso_timestamp

logger = logging.getLogger(__name__)

STATUS_EVENT = "download:status"
COMPLETE_EVENT = "download:complete"
ERROR_EVENT = "download:error"
ITEM_PROGRESS_EVENT = "playlist:item-progress"
ITEM_COMPLETE_EVENT = "playlist:item-complete"


@dataclass
class Event:
    name: str
    data: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.name, "data": self.data}


@dataclass(eq=False)
class Subscription:
    """One consumer's view of the stream; channels may be added or removed."""

    channels: Set[str] = field(default_factory=set)
    buffer_size: int = SUBSCRIBER_BUFFER_SIZE
    queue: asyncio.Queue = field(init=False)
    dropped: int = 0

    def __post_init__(self) -> None:
        self.queue = asyncio.Queue(maxsize=self.buffer_size)

    def deliver(self, event: Event) -> None:
        while True:
            try:
                self.queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self.queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def get(self, timeout: Optional[float] = None) -> Event:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def pending(self) -> int:
        return self.queue.qsize()


class ProgressBroadcaster:
    """Converts job state changes into events for per-job and global channels."""

    def __init__(self, buffer_size: int = SUBSCRIBER_BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._subscriptions: Set[Subscription] = set()

    def subscribe(self, *channels: str) -> Subscription:
        subscription = Subscription(channels=set(channels), buffer_size=self.buffer_size)
        self._subscriptions.add(subscription)
        logger.debug("Subscriber added for channels %s", sorted(subscription.channels))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, job_id: str, name: str, data: Dict[str, Any]) -> int:
        """Deliver to subscribers of the job channel and of the global channel."""
        payload = {"id": job_id, **data, "timestamp": iso_timestamp(time.time())}
        event = Event(name=name, data=payload)
        delivered = 0
        for subscription in list(self._subscriptions):
            if job_id in subscription.channels or GLOBAL_CHANNEL in subscription.channels:
                subscription.deliver(event)
                delivered += 1
        logger.debug("Event %s for %s delivered to %d subscriber(s)", name, job_id, delivered)
        return delivered

    def emit_status(
        self,
        job_id: str,
        status: JobStatus,
        progress: int,
        data: Optional[Dict[str, Any]] = None,
    ) -> int:
        body: Dict[str, Any] = {"status": status.value, "progress": progress}
        if data:
            body["data"] = data
        return self.publish(job_id, STATUS_EVENT, body)

    def emit_complete(self, job_id: str, file_data: Dict[str, Any]) -> int:
        return self.publish(job_id, COMPLETE_EVENT, {"fileData": file_data})

    def emit_error(self, job_id: str, error: str) -> int:
        return self.publish(job_id, ERROR_EVENT, {"error": error})

    def emit_item_progress(
        self,
        job_id: str,
        item_index: int,
        total_items: int,
        item_title: str,
        item_progress: int,
    ) -> int:
        return self.publish(
            job_id,
            ITEM_PROGRESS_EVENT,
            {
                "itemIndex": item_index,
                "totalItems": total_items,
                "itemTitle": item_title,
                "itemProgress": item_progress,
            },
        )

    def emit_item_complete(
        self,
        job_id: str,
        item_index: int,
        total_items: int,
        file_data: Dict[str, Any],
    ) -> int:
        return self.publish(
            job_id,
            ITEM_COMPLETE_EVENT,
            {"itemIndex": item_index, "totalItems": total_items, "fileData": file_data},
        )
