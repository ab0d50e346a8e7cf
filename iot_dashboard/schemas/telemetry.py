from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from iot_dashboard.models.telemetry import (
    AlertDirection,
    CachedLatest,
    ConnectionState,
    ExceedanceResult,
    TelemetryRecord,
)

DEVICE_ID_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9:_.-]{0,63}$"


def parse_payload(raw: str) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


class ConnectionStatusRead(BaseModel):
    connected: bool
    reconnecting: bool


class ConnectionsResponse(BaseModel):
    connections: dict[str, ConnectionStatusRead] = Field(default_factory=dict)


class ConnectResponse(BaseModel):
    device_id: str
    state: ConnectionState
    message: str | None = None


class ConnectAllResponse(BaseModel):
    requested: int = Field(ge=0)


class TelemetryRead(BaseModel):
    device_id: str
    topic: str
    payload: Any
    received_at: datetime

    @classmethod
    def from_record(cls, record: TelemetryRecord) -> "TelemetryRead":
        return cls(
            device_id=record.device_id,
            topic=record.topic,
            payload=parse_payload(record.payload),
            received_at=record.received_at,
        )


class LatestRead(BaseModel):
    payload: Any
    timestamp: datetime

    @classmethod
    def from_cached(cls, cached: CachedLatest) -> "LatestRead":
        return cls(payload=parse_payload(cached.payload), timestamp=cached.timestamp)


class AlertRead(BaseModel):
    field: str
    direction: AlertDirection
    value: float
    threshold: float


class ExceedanceRead(BaseModel):
    device_id: str
    topic: str
    timestamp: datetime
    payload: Any
    alerts: list[AlertRead] = Field(min_length=1)

    @classmethod
    def from_result(cls, result: ExceedanceResult) -> "ExceedanceRead":
        record = result.record
        return cls(
            device_id=record.device_id,
            topic=record.topic,
            timestamp=record.received_at,
            payload=parse_payload(record.payload),
            alerts=[AlertRead.model_validate(a.__dict__) for a in result.alerts],
        )


class ThresholdBoundRead(BaseModel):
    min: float | None = None
    max: float | None = None


class ExceedanceReport(BaseModel):
    count: int = Field(ge=0)
    thresholds: dict[str, ThresholdBoundRead] = Field(default_factory=dict)
    data: list[ExceedanceRead] = Field(default_factory=list)


class CleanupResponse(BaseModel):
    deleted: int = Field(ge=0)
    cutoff: datetime


class LiveMessage(BaseModel):
    event: Literal["mqtt:data"] = "mqtt:data"
    device_id: str
    topic: str
    payload: Any
    timestamp: datetime

    @classmethod
    def from_record(cls, record: TelemetryRecord) -> "LiveMessage":
        return cls(
            device_id=record.device_id,
            topic=record.topic,
            payload=parse_payload(record.payload),
            timestamp=record.received_at,
        )
