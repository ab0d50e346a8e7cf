from __future__ import annotations

import asyncio
import logging
import threading

from iot_dashboard.models.telemetry import TelemetryRecord

logger = logging.getLogger(__name__)


class Subscription:
    """A live listener for one device, bound to the event loop that created it."""

    def __init__(
        self, *, device_id: str, loop: asyncio.AbstractEventLoop, queue_size: int
    ) -> None:
        self.device_id = device_id
        self._loop = loop
        self._queue: asyncio.Queue[TelemetryRecord] = asyncio.Queue(maxsize=queue_size)
        self._stats_lock = threading.Lock()
        self.dropped = 0

    async def get(self) -> TelemetryRecord:
        return await self._queue.get()

    def offer(self, record: TelemetryRecord) -> None:
        try:
            self._loop.call_soon_threadsafe(self._put, record)
        except RuntimeError:
            # Loop already closed; the owning connection is going away.
            self._count_drop()

    def _put(self, record: TelemetryRecord) -> None:
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self._count_drop()
            logger.debug("Dropping live update for slow subscriber of %s", self.device_id)

    def _count_drop(self) -> None:
        with self._stats_lock:
            self.dropped += 1


class LiveFanout:
    def __init__(self, *, queue_size: int = 100) -> None:
        self._queue_size = max(int(queue_size), 1)
        self._lock = threading.Lock()
        self._by_device: dict[str, set[Subscription]] = {}

    def subscribe(self, device_id: str) -> Subscription:
        subscription = Subscription(
            device_id=device_id,
            loop=asyncio.get_running_loop(),
            queue_size=self._queue_size,
        )
        with self._lock:
            self._by_device.setdefault(device_id, set()).add(subscription)
        logger.debug("Live subscriber added for device %s", device_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            group = self._by_device.get(subscription.device_id)
            if group is None:
                return
            group.discard(subscription)
            if not group:
                del self._by_device[subscription.device_id]

    def subscriber_count(self, device_id: str) -> int:
        with self._lock:
            return len(self._by_device.get(device_id, ()))

    def publish(self, device_id: str, record: TelemetryRecord) -> int:
        with self._lock:
            listeners = list(self._by_device.get(device_id, ()))
        for subscription in listeners:
            subscription.offer(record)
        return len(listeners)
