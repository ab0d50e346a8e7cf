from __future__ import annotations

import logging
import queue
import threading
from datetime import datetime, timezone

from iot_dashboard.models.telemetry import TelemetryRecord
from iot_dashboard.repositories.base import TelemetryRepository
from iot_dashboard.services.cache import LatestValueCache
from iot_dashboard.services.fanout import LiveFanout

logger = logging.getLogger(__name__)

_STOP = object()


class TelemetryWriter:
    """Single worker thread that drains a bounded queue into the store.

    Keeps store latency off the MQTT network threads. Records are written in
    submission order; failures are logged and the record is dropped.
    """

    def __init__(self, *, repo: TelemetryRepository, max_queue_size: int = 1000) -> None:
        self._repo = repo
        self._queue: queue.Queue[object] = queue.Queue(maxsize=max(int(max_queue_size), 1))
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.written = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._thread = threading.Thread(
                target=self._run, name="telemetry-writer", daemon=True
            )
            self._thread.start()

    def submit(self, record: TelemetryRecord) -> bool:
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            with self._stats_lock:
                self.dropped += 1
            logger.warning(
                "Telemetry write queue full, dropping message for device %s topic %s",
                record.device_id,
                record.topic,
            )
            return False
        return True

    def flush(self) -> None:
        self._queue.join()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Telemetry writer did not accept stop signal; abandoning queue")
            return
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("Telemetry writer still busy after %.1fs", timeout)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if isinstance(item, TelemetryRecord):
                    self._write(item)
            finally:
                self._queue.task_done()

    def _write(self, record: TelemetryRecord) -> None:
        try:
            self._repo.append(
                device_id=record.device_id,
                topic=record.topic,
                payload=record.payload,
                received_at=record.received_at,
            )
            with self._stats_lock:
                self.written += 1
        except Exception:
            with self._stats_lock:
                self.failed += 1
            logger.exception(
                "Failed to persist telemetry for device %s topic %s",
                record.device_id,
                record.topic,
            )


class IngestionPipeline:
    def __init__(
        self,
        *,
        repo: TelemetryRepository,
        cache: LatestValueCache,
        fanout: LiveFanout | None = None,
        writer: TelemetryWriter | None = None,
    ) -> None:
        self._repo = repo
        self._cache = cache
        self._fanout = fanout
        self._writer = writer

    def ingest(
        self,
        device_id: str,
        topic: str,
        payload: bytes | str,
        received_at: datetime | None = None,
    ) -> TelemetryRecord | None:
        """Handle one inbound message. Never raises."""
        try:
            return self._ingest(device_id, topic, payload, received_at)
        except Exception:
            logger.exception("Unhandled error ingesting message for device %s", device_id)
            return None

    def _ingest(
        self,
        device_id: str,
        topic: str,
        payload: bytes | str,
        received_at: datetime | None,
    ) -> TelemetryRecord:
        text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
        if received_at is None:
            received_at = datetime.now(tz=timezone.utc)
        elif received_at.tzinfo is None:
            received_at = received_at.replace(tzinfo=timezone.utc)

        record = TelemetryRecord(
            device_id=device_id, topic=topic, payload=text, received_at=received_at
        )
        logger.debug("Message from device %s on %s: %.200s", device_id, topic, text)

        self._cache.update(topic, payload=text, timestamp=received_at)
        self._persist(record)

        if self._fanout is not None:
            self._fanout.publish(device_id, record)
        return record

    def _persist(self, record: TelemetryRecord) -> None:
        if self._writer is not None:
            self._writer.submit(record)
            return
        try:
            self._repo.append(
                device_id=record.device_id,
                topic=record.topic,
                payload=record.payload,
                received_at=record.received_at,
            )
        except Exception:
            logger.exception(
                "Failed to persist telemetry for device %s topic %s",
                record.device_id,
                record.topic,
            )
