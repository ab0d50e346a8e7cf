from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from iot_dashboard.clients.devices import (
    HttpDeviceDirectory,
    StaticDeviceDirectory,
    device_config_from_mapping,
)
from iot_dashboard.core.config import Settings
from iot_dashboard.core.errors import DeviceDirectoryError
from iot_dashboard.factory import create_device_directory

DEVICE_ROW = {
    "id": 7,
    "name": "Greenhouse",
    "mqtt_broker": "broker.example.com",
    "mqtt_port": "8883",
    "mqtt_topic": "greenhouse/7",
    "mqtt_username": "gh",
    "mqtt_password": "pw",
}


def test_mapping_accepts_crud_column_names() -> None:
    device = device_config_from_mapping(DEVICE_ROW)

    assert device.device_id == "7"
    assert device.host == "broker.example.com"
    assert device.port == 8883
    assert device.topic == "greenhouse/7"
    assert device.username == "gh"
    assert device.missing_fields() == []
    assert "pw" not in repr(device)


def test_mapping_defaults_and_missing_fields() -> None:
    device = device_config_from_mapping({"device_id": "d1", "host": "h", "port": "abc"})

    assert device.port == 1883
    assert device.missing_fields() == ["topic"]

    with pytest.raises(ValueError):
        device_config_from_mapping({"name": "no id"})


def test_static_directory_from_file(tmp_path: Path) -> None:
    path = tmp_path / "devices.json"
    path.write_text(
        json.dumps({"devices": [DEVICE_ROW, {"id": "b", "host": "h", "topic": "t"}, "junk", {}]}),
        encoding="utf-8",
    )

    directory = StaticDeviceDirectory.from_file(path)

    assert [d.device_id for d in directory.list_devices()] == ["7", "b"]
    assert directory.get_device("b").topic == "t"
    assert directory.get_device("missing") is None


def test_static_directory_rejects_unreadable_file(tmp_path: Path) -> None:
    path = tmp_path / "devices.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(DeviceDirectoryError):
        StaticDeviceDirectory.from_file(path)
    with pytest.raises(DeviceDirectoryError):
        StaticDeviceDirectory.from_file(tmp_path / "absent.json")


def _directory(handler) -> HttpDeviceDirectory:
    return HttpDeviceDirectory(
        base_url="http://devices.local/api/",
        timeout_seconds=1.0,
        token="svc-token",
        transport=httpx.MockTransport(handler),
    )


def test_http_directory_fetches_and_unwraps_devices() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/api/devices/7":
            return httpx.Response(200, json={"success": True, "data": DEVICE_ROW})
        if request.url.path == "/api/devices":
            return httpx.Response(200, json={"success": True, "devices": [DEVICE_ROW, {"name": "x"}]})
        return httpx.Response(404, json={"success": False})

    directory = _directory(handler)
    try:
        device = directory.get_device("7")
        assert device is not None and device.topic == "greenhouse/7"
        assert directory.get_device("8") is None
        assert [d.device_id for d in directory.list_devices()] == ["7"]
    finally:
        directory.close()

    assert seen[0].headers["Authorization"] == "Bearer svc-token"


def test_http_directory_errors_become_directory_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/boom"):
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(500, text="oops")

    directory = _directory(handler)
    try:
        with pytest.raises(DeviceDirectoryError):
            directory.get_device("boom")
        with pytest.raises(DeviceDirectoryError):
            directory.get_device("7")
        with pytest.raises(DeviceDirectoryError):
            directory.list_devices()
    finally:
        directory.close()


def test_create_device_directory_prefers_file(tmp_path: Path, settings: Settings) -> None:
    path = tmp_path / "devices.json"
    path.write_text(json.dumps([DEVICE_ROW]), encoding="utf-8")

    directory = create_device_directory(settings.model_copy(update={"devices_file": path}))
    assert [d.device_id for d in directory.list_devices()] == ["7"]

    assert create_device_directory(settings).list_devices() == []
