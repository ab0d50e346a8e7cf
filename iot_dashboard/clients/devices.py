from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol

import httpx

from iot_dashboard.core.errors import DeviceDirectoryError
from iot_dashboard.models.telemetry import DEFAULT_MQTT_PORT, DeviceConnectionConfig

logger = logging.getLogger(__name__)


class DeviceDirectory(Protocol):
    def get_device(self, device_id: str) -> DeviceConnectionConfig | None: ...

    def list_devices(self) -> list[DeviceConnectionConfig]: ...

    def close(self) -> None: ...


def device_config_from_mapping(raw: dict[str, Any]) -> DeviceConnectionConfig:
    """Build a connection snapshot from a device row.

    Accepts both the column names used by the device CRUD API
    (``mqtt_broker``, ``mqtt_port``...) and the short names (``host``,
    ``port``...).
    """
    device_id = raw.get("id", raw.get("device_id"))
    if device_id is None or str(device_id) == "":
        raise ValueError("Device entry has no id")

    return DeviceConnectionConfig(
        device_id=str(device_id),
        host=_str_or_empty(raw.get("mqtt_broker", raw.get("host"))),
        port=_port_or_default(raw.get("mqtt_port", raw.get("port"))),
        topic=_str_or_empty(raw.get("mqtt_topic", raw.get("topic"))),
        username=_str_or_none(raw.get("mqtt_username", raw.get("username"))),
        password=_str_or_none(raw.get("mqtt_password", raw.get("password"))),
        name=_str_or_none(raw.get("name")),
    )


class StaticDeviceDirectory:
    def __init__(self, devices: list[DeviceConnectionConfig] | None = None) -> None:
        self._by_id: dict[str, DeviceConnectionConfig] = {d.device_id: d for d in devices or []}

    @classmethod
    def from_file(cls, path: Path) -> "StaticDeviceDirectory":
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise DeviceDirectoryError(f"Cannot read device file {path}") from e

        entries = raw.get("devices", []) if isinstance(raw, dict) else raw
        if not isinstance(entries, list):
            raise DeviceDirectoryError(f"Device file {path} must hold a list of devices")

        devices: list[DeviceConnectionConfig] = []
        for entry in entries:
            if not isinstance(entry, dict):
                logger.warning("Skipping non-object device entry in %s", path)
                continue
            try:
                devices.append(device_config_from_mapping(entry))
            except ValueError as e:
                logger.warning("Skipping device entry in %s: %s", path, e)
        logger.info("Loaded %d device(s) from %s", len(devices), path)
        return cls(devices)

    def get_device(self, device_id: str) -> DeviceConnectionConfig | None:
        return self._by_id.get(device_id)

    def list_devices(self) -> list[DeviceConnectionConfig]:
        rows = list(self._by_id.values())
        rows.sort(key=lambda d: d.device_id)
        return rows

    def close(self) -> None:
        return None


class HttpDeviceDirectory:
    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        token: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def get_device(self, device_id: str) -> DeviceConnectionConfig | None:
        try:
            resp = self._client.get(f"/devices/{device_id}")
        except httpx.HTTPError as e:
            raise DeviceDirectoryError("Device API unreachable") from e
        if resp.status_code == httpx.codes.NOT_FOUND:
            return None
        try:
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DeviceDirectoryError("Device API returned an invalid response") from e

        entry = self._unwrap(body, key="device")
        if not isinstance(entry, dict):
            raise DeviceDirectoryError("Unexpected device payload shape")
        try:
            return device_config_from_mapping(entry)
        except ValueError as e:
            raise DeviceDirectoryError(str(e)) from e

    def list_devices(self) -> list[DeviceConnectionConfig]:
        try:
            resp = self._client.get("/devices")
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DeviceDirectoryError("Device API unavailable") from e

        entries = self._unwrap(body, key="devices")
        if not isinstance(entries, list):
            raise DeviceDirectoryError("Unexpected device list shape")

        devices: list[DeviceConnectionConfig] = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                devices.append(device_config_from_mapping(entry))
            except ValueError:
                logger.warning("Device API returned an entry without id")
        return devices

    @staticmethod
    def _unwrap(body: Any, *, key: str) -> Any:
        # The CRUD API wraps results as {"success": true, "data"|key: ...}.
        if isinstance(body, dict):
            if key in body:
                return body[key]
            if "data" in body:
                return body["data"]
        return body


def _str_or_empty(v: Any) -> str:
    if v is None:
        return ""
    return str(v).strip()


def _str_or_none(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v)
    return s or None


def _port_or_default(v: Any) -> int:
    try:
        if v is None or v == "":
            return DEFAULT_MQTT_PORT
        port = int(v)
    except (TypeError, ValueError):
        return DEFAULT_MQTT_PORT
    if not 0 < port < 65536:
        return DEFAULT_MQTT_PORT
    return port
