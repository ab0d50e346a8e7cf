from __future__ import annotations

from datetime import datetime
from typing import Protocol

from iot_dashboard.models.telemetry import TelemetryRecord


class TelemetryRepository(Protocol):
    def ping(self) -> None: ...

    def append(
        self, *, device_id: str, topic: str, payload: str, received_at: datetime
    ) -> None: ...

    def query_range(
        self, *, device_id: str, since: datetime | None, limit: int
    ) -> list[TelemetryRecord]: ...

    def delete_older_than(self, *, cutoff: datetime) -> int: ...
