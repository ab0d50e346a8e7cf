from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from iot_dashboard.api import deps
from iot_dashboard.core.config import Settings
from iot_dashboard.core.security import get_password_hash
from iot_dashboard.factory import create_app
from iot_dashboard.models.telemetry import DeviceConnectionConfig
from iot_dashboard.services.cache import LatestValueCache
from iot_dashboard.services.connections import ConnectionRegistry
from iot_dashboard.services.fanout import LiveFanout
from iot_dashboard.services.ingestion import IngestionPipeline
from iot_dashboard.services.telemetry import TelemetryService
from tests.fakes import FakeDeviceDirectory, FakeMqttClientFactory, FakeTelemetryRepository


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        env="test",
        debug=True,
        docs_enabled=False,
        log_level="DEBUG",
        secret_key="test_secret_key_must_be_32_chars_minimum",
        admin_username="admin",
        admin_password_hash=get_password_hash("password"),
        cors_origins=["http://localhost"],
        trusted_hosts=["testserver", "localhost"],
        influx_url="http://example.com:8086",
        influx_token="test-token-1234567890",
        influx_org="test",
        influx_bucket="test",
        influx_measurement="mqtt_data",
        influx_timeout_ms=5000,
        mqtt_connect_on_startup=False,
        retention_enabled=False,
        retention_days=7,
    )


@pytest.fixture()
def devices() -> FakeDeviceDirectory:
    return FakeDeviceDirectory(
        [
            DeviceConnectionConfig(
                device_id="sensor-1",
                host="broker.example.com",
                port=1883,
                topic="lab/sensor-1",
                username="bridge",
                password="secret",
                name="Lab sensor",
            ),
            DeviceConnectionConfig(
                device_id="sensor-2",
                host="broker.example.com",
                topic="lab/sensor-2",
            ),
            DeviceConnectionConfig(device_id="unwired", host="", topic=""),
        ]
    )


@pytest.fixture()
def repo() -> FakeTelemetryRepository:
    return FakeTelemetryRepository()


@pytest.fixture()
def cache() -> LatestValueCache:
    return LatestValueCache()


@pytest.fixture()
def fanout() -> LiveFanout:
    return LiveFanout(queue_size=10)


@pytest.fixture()
def pipeline(
    repo: FakeTelemetryRepository, cache: LatestValueCache, fanout: LiveFanout
) -> IngestionPipeline:
    return IngestionPipeline(repo=repo, cache=cache, fanout=fanout)


@pytest.fixture()
def client_factory() -> FakeMqttClientFactory:
    return FakeMqttClientFactory()


@pytest.fixture()
def registry(
    pipeline: IngestionPipeline, client_factory: FakeMqttClientFactory
) -> ConnectionRegistry:
    return ConnectionRegistry(
        pipeline=pipeline,
        client_factory=client_factory,
        client_id_prefix="test",
        keepalive_seconds=60,
        reconnect_delay_seconds=5,
    )


@pytest.fixture()
def service(
    repo: FakeTelemetryRepository,
    cache: LatestValueCache,
    registry: ConnectionRegistry,
    devices: FakeDeviceDirectory,
) -> TelemetryService:
    return TelemetryService(repo=repo, cache=cache, registry=registry, devices=devices)


@pytest.fixture()
def client(
    settings: Settings,
    service: TelemetryService,
    repo: FakeTelemetryRepository,
    fanout: LiveFanout,
) -> TestClient:
    app = create_app(settings)
    app.dependency_overrides[deps.get_telemetry_service] = lambda: service
    app.dependency_overrides[deps.get_telemetry_repository] = lambda: repo
    app.dependency_overrides[deps.get_live_fanout] = lambda: fanout
    with TestClient(app) as client:
        yield client


def _token(client: TestClient, scope: str | None = None) -> str:
    data = {"username": "admin", "password": "password"}
    if scope:
        data["scope"] = scope
    resp = client.post(
        "/api/v1/auth/token",
        data=data,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


@pytest.fixture()
def token(client: TestClient) -> str:
    return _token(client)


@pytest.fixture()
def read_only_token(client: TestClient) -> str:
    return _token(client, "telemetry:read")


@pytest.fixture()
def now() -> datetime:
    return datetime.now(tz=timezone.utc)
