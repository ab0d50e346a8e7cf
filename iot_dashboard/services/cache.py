from __future__ import annotations

import threading
from datetime import datetime

from iot_dashboard.models.telemetry import CachedLatest


class LatestValueCache:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_topic: dict[str, CachedLatest] = {}

    def update(self, topic: str, *, payload: str, timestamp: datetime) -> None:
        entry = CachedLatest(payload=payload, timestamp=timestamp)
        with self._lock:
            self._by_topic[topic] = entry

    def get(self, topic: str) -> CachedLatest | None:
        with self._lock:
            return self._by_topic.get(topic)

    def snapshot(self) -> dict[str, CachedLatest]:
        with self._lock:
            return dict(self._by_topic)

    def clear(self) -> None:
        with self._lock:
            self._by_topic.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_topic)
