from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

DEFAULT_MQTT_PORT = 1883


@dataclass(frozen=True)
class DeviceConnectionConfig:
    device_id: str
    host: str
    topic: str
    port: int = DEFAULT_MQTT_PORT
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    name: str | None = None

    def missing_fields(self) -> list[str]:
        missing: list[str] = []
        if not self.host:
            missing.append("broker")
        if not self.topic:
            missing.append("topic")
        return missing


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class ConnectionStatus:
    connected: bool
    reconnecting: bool


@dataclass(frozen=True)
class TelemetryRecord:
    device_id: str
    topic: str
    payload: str
    received_at: datetime


@dataclass(frozen=True)
class CachedLatest:
    payload: str
    timestamp: datetime


@dataclass(frozen=True)
class ThresholdBound:
    min: float | None = None
    max: float | None = None

    def is_empty(self) -> bool:
        return self.min is None and self.max is None


ThresholdSpec = dict[str, ThresholdBound]


class AlertDirection(str, Enum):
    BELOW = "below"
    ABOVE = "above"


@dataclass(frozen=True)
class Alert:
    field: str
    direction: AlertDirection
    value: float
    threshold: float


@dataclass(frozen=True)
class ExceedanceResult:
    record: TelemetryRecord
    alerts: list[Alert]
