from __future__ import annotations

from pathlib import Path

from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ADMIN_PASSWORD_HASH = (
    "$2b$12$sdOU8uwfeIt/6CaZUIM6ke71zg30wHn0r3QC4TDA3xHYwQxTVEEXi"
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="APP_",
        case_sensitive=False,
    )

    env: str = Field(default="development")
    debug: bool = Field(default=False)
    docs_enabled: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    secret_key: str = Field(min_length=32)
    algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=30, ge=1, le=60 * 24 * 30)

    admin_username: str = Field(default="admin", min_length=3, max_length=64)
    admin_password_hash: str = Field(default=DEFAULT_ADMIN_PASSWORD_HASH, min_length=10)

    cors_origins: list[str] = Field(default_factory=list)
    trusted_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1"])

    influx_url: AnyHttpUrl = Field(default="http://influxdb:8086")
    influx_token: str = Field(min_length=10)
    influx_org: str = Field(min_length=1)
    influx_bucket: str = Field(min_length=1)
    influx_measurement: str = Field(default="mqtt_data", min_length=1, max_length=64)
    influx_timeout_ms: int = Field(default=10_000, ge=1000, le=120_000)

    mqtt_client_id_prefix: str = Field(default="iot_dashboard", min_length=1, max_length=32)
    mqtt_keepalive_seconds: int = Field(default=60, ge=5, le=3600)
    mqtt_reconnect_delay_seconds: int = Field(default=5, ge=1, le=300)
    mqtt_connect_on_startup: bool = Field(default=True)

    writer_queue_size: int = Field(default=1000, ge=1, le=100_000)
    fanout_queue_size: int = Field(default=100, ge=1, le=10_000)

    retention_enabled: bool = Field(default=True)
    retention_days: int = Field(default=7, ge=1, le=3650)
    retention_interval_seconds: float = Field(default=3600.0, ge=1.0, le=7 * 24 * 3600.0)

    devices_file: Path | None = Field(default=None)
    device_api_url: AnyHttpUrl | None = Field(default=None)
    device_api_token: str | None = Field(default=None)
    device_api_timeout_seconds: float = Field(default=10.0, ge=1.0, le=60.0)

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"


def load_settings() -> Settings:
    settings = Settings()
    if not settings.cors_origins:
        settings.cors_origins = ["http://localhost:3000", "http://localhost:8000"]
    return settings
