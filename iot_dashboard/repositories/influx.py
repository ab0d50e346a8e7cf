from __future__ import annotations

import logging
from datetime import datetime, timezone

from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS

from iot_dashboard.core.config import Settings
from iot_dashboard.models.telemetry import TelemetryRecord
from iot_dashboard.repositories.flux import EPOCH_RFC3339, flux_str, flux_time, to_rfc3339

logger = logging.getLogger(__name__)

PAYLOAD_FIELD = "payload"


def create_influx_client(settings: Settings) -> InfluxDBClient:
    return InfluxDBClient(
        url=str(settings.influx_url),
        token=settings.influx_token,
        org=settings.influx_org,
        timeout=settings.influx_timeout_ms,
    )


class InfluxTelemetryRepository:
    """Telemetry log stored as one string field per point.

    Points are tagged with ``device_id`` and ``topic`` so range queries stay
    inside a single device's series.
    """

    def __init__(
        self,
        *,
        client: InfluxDBClient,
        org: str,
        bucket: str,
        measurement: str,
    ) -> None:
        self._client = client
        self._org = org
        self._bucket = bucket
        self._measurement = measurement
        self._write_api = client.write_api(write_options=SYNCHRONOUS)

    def ping(self) -> None:
        if not self._client.ping():
            raise ConnectionError("InfluxDB ping failed")

    def append(
        self, *, device_id: str, topic: str, payload: str, received_at: datetime
    ) -> None:
        if received_at.tzinfo is None:
            received_at = received_at.replace(tzinfo=timezone.utc)

        point = (
            Point(self._measurement)
            .tag("device_id", device_id)
            .tag("topic", topic)
            .field(PAYLOAD_FIELD, payload)
            .time(received_at, WritePrecision.NS)
        )
        self._write_api.write(bucket=self._bucket, org=self._org, record=point)

    def query_range(
        self, *, device_id: str, since: datetime | None, limit: int
    ) -> list[TelemetryRecord]:
        if limit <= 0:
            return []

        query = f"""
from(bucket: {flux_str(self._bucket)})
  |> range(start: {flux_time(since)})
  |> filter(fn: (r) => r["_measurement"] == {flux_str(self._measurement)})
  |> filter(fn: (r) => r["device_id"] == {flux_str(device_id)})
  |> filter(fn: (r) => r["_field"] == {flux_str(PAYLOAD_FIELD)})
  |> group()
  |> sort(columns: ["_time"], desc: true)
  |> limit(n: {int(limit)})
"""
        tables = self._client.query_api().query(query=query, org=self._org)

        results: list[TelemetryRecord] = []
        for table in tables:
            for record in table.records:
                ts = record.get_time()
                value = record.get_value()
                if ts is None or value is None:
                    continue
                topic = record.values.get("topic")
                results.append(
                    TelemetryRecord(
                        device_id=device_id,
                        topic=topic if isinstance(topic, str) else "",
                        payload=value if isinstance(value, str) else str(value),
                        received_at=ts,
                    )
                )
        results.sort(key=lambda r: r.received_at, reverse=True)
        return results[:limit]

    def delete_older_than(self, *, cutoff: datetime) -> int:
        count_query = f"""
from(bucket: {flux_str(self._bucket)})
  |> range(start: {flux_time(None)}, stop: {flux_time(cutoff)})
  |> filter(fn: (r) => r["_measurement"] == {flux_str(self._measurement)})
  |> filter(fn: (r) => r["_field"] == {flux_str(PAYLOAD_FIELD)})
  |> group()
  |> count()
"""
        tables = self._client.query_api().query(query=count_query, org=self._org)
        removed = 0
        for table in tables:
            for record in table.records:
                try:
                    removed += int(record.get_value() or 0)
                except (TypeError, ValueError):
                    continue

        if removed == 0:
            return 0

        self._client.delete_api().delete(
            start=EPOCH_RFC3339,
            stop=to_rfc3339(cutoff),
            predicate=f"_measurement={flux_str(self._measurement)}",
            bucket=self._bucket,
            org=self._org,
        )
        logger.info(
            "Deleted %d telemetry points older than %s", removed, to_rfc3339(cutoff)
        )
        return removed
