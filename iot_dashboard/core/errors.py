from __future__ import annotations


class DeviceNotFoundError(LookupError):
    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device '{device_id}' not found")
        self.device_id = device_id


class DeviceNotConfiguredError(ValueError):
    def __init__(self, device_id: str, missing: list[str]) -> None:
        super().__init__(
            f"Device '{device_id}' has no MQTT {', '.join(missing)} configured"
        )
        self.device_id = device_id
        self.missing = missing


class DeviceDirectoryError(RuntimeError):
    """The device directory backend could not be reached or returned garbage."""
