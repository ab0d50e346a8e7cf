from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from iot_dashboard.clients.devices import DeviceDirectory
from iot_dashboard.core.errors import DeviceNotConfiguredError, DeviceNotFoundError
from iot_dashboard.models.telemetry import (
    CachedLatest,
    ConnectionStatus,
    DeviceConnectionConfig,
    ExceedanceResult,
    TelemetryRecord,
    ThresholdSpec,
)
from iot_dashboard.repositories.base import TelemetryRepository
from iot_dashboard.services.cache import LatestValueCache
from iot_dashboard.services.connections import ConnectionHandle, ConnectionRegistry
from iot_dashboard.services.exceedance import DEFAULT_LIMIT, ExceedanceEngine

logger = logging.getLogger(__name__)


class HistoryPeriod(str, Enum):
    DAY = "day"
    WEEK = "week"


@dataclass(frozen=True)
class _PeriodWindow:
    span: timedelta
    limit: int


PERIOD_WINDOWS: dict[HistoryPeriod, _PeriodWindow] = {
    HistoryPeriod.DAY: _PeriodWindow(span=timedelta(days=1), limit=1000),
    HistoryPeriod.WEEK: _PeriodWindow(span=timedelta(days=7), limit=10_000),
}


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class TelemetryService:
    def __init__(
        self,
        *,
        repo: TelemetryRepository,
        cache: LatestValueCache,
        registry: ConnectionRegistry,
        devices: DeviceDirectory,
    ) -> None:
        self._repo = repo
        self._cache = cache
        self._registry = registry
        self._devices = devices
        self._engine = ExceedanceEngine(repo)

    def _require_device(self, device_id: str) -> DeviceConnectionConfig:
        device = self._devices.get_device(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    def connect(self, device_id: str) -> ConnectionHandle:
        device = self._require_device(device_id)
        missing = device.missing_fields()
        if missing:
            raise DeviceNotConfiguredError(device_id, missing)
        return self._registry.connect(device)

    def disconnect(self, device_id: str) -> bool:
        return self._registry.disconnect(device_id)

    def connect_all(self) -> int:
        requested = 0
        for device in self._devices.list_devices():
            missing = device.missing_fields()
            if missing:
                logger.info(
                    "Skipping device %s: no MQTT %s configured",
                    device.device_id,
                    ", ".join(missing),
                )
                continue
            try:
                self._registry.connect(device)
            except Exception:
                logger.exception("Could not start connection for device %s", device.device_id)
                continue
            requested += 1
        logger.info("%d device connection(s) requested", requested)
        return requested

    def status(self) -> dict[str, ConnectionStatus]:
        return self._registry.status()

    def is_connected(self, device_id: str) -> bool:
        return self._registry.is_connected(device_id)

    def latest(self, device_id: str) -> CachedLatest | None:
        device = self._require_device(device_id)
        if device.topic:
            cached = self._cache.get(device.topic)
            if cached is not None:
                return cached

        rows = self._repo.query_range(device_id=device_id, since=None, limit=1)
        if not rows:
            return None
        newest = max(rows, key=lambda r: r.received_at)
        return CachedLatest(payload=newest.payload, timestamp=newest.received_at)

    def history(
        self,
        device_id: str,
        *,
        limit: int = DEFAULT_LIMIT,
        since: datetime | None = None,
        period: HistoryPeriod | None = None,
    ) -> list[TelemetryRecord]:
        if period is not None:
            window = PERIOD_WINDOWS[period]
            since = datetime.now(tz=timezone.utc) - window.span
            limit = window.limit
        elif since is not None:
            since = _to_utc(since)

        rows = self._repo.query_range(device_id=device_id, since=since, limit=limit)
        if since is not None:
            rows = [r for r in rows if r.received_at >= since]
        rows.sort(key=lambda r: r.received_at, reverse=True)
        return rows[:limit]

    def exceedances(
        self,
        device_id: str,
        thresholds: ThresholdSpec,
        *,
        limit: int = DEFAULT_LIMIT,
        since: datetime | None = None,
    ) -> list[ExceedanceResult]:
        return self._engine.find(
            device_id,
            thresholds,
            limit=limit,
            since=_to_utc(since) if since is not None else None,
        )

    def clean_old_data(self, *, days: int) -> tuple[int, datetime]:
        cutoff = datetime.now(tz=timezone.utc) - timedelta(days=days)
        deleted = self._repo.delete_older_than(cutoff=cutoff)
        logger.info("Retention sweep removed %d record(s) older than %d day(s)", deleted, days)
        return deleted, cutoff
