from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

import paho.mqtt.client as mqtt

from iot_dashboard.models.telemetry import (
    ConnectionState,
    ConnectionStatus,
    DeviceConnectionConfig,
)
from iot_dashboard.services.ingestion import IngestionPipeline

logger = logging.getLogger(__name__)

SUBSCRIBE_QOS = 1

ClientFactory = Callable[[str], Any]


def create_paho_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        clean_session=True,
        protocol=mqtt.MQTTv311,
    )


def _is_failure(reason_code: Any) -> bool:
    flag = getattr(reason_code, "is_failure", None)
    if flag is not None:
        return bool(flag)
    try:
        return int(reason_code) >= 0x80
    except (TypeError, ValueError):
        return True


class ConnectionHandle:
    def __init__(
        self,
        *,
        config: DeviceConnectionConfig,
        client: Any,
        client_id: str,
        pipeline: IngestionPipeline,
    ) -> None:
        self.config = config
        self.client = client
        self.client_id = client_id
        self._pipeline = pipeline
        self._lock = threading.Lock()
        # Serializes start() and close(); callbacks only take _lock.
        self._lifecycle = threading.Lock()
        self._state = ConnectionState.CONNECTING
        self._closing = False

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message

    @property
    def device_id(self) -> str:
        return self.config.device_id

    @property
    def topic(self) -> str:
        return self.config.topic

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def status(self) -> ConnectionStatus:
        state = self.state
        return ConnectionStatus(
            connected=state is ConnectionState.CONNECTED,
            reconnecting=state is ConnectionState.RECONNECTING,
        )

    def start(self, *, keepalive: int) -> None:
        with self._lifecycle:
            with self._lock:
                if self._closing:
                    logger.debug("Device %s closed before its connection started", self.device_id)
                    return
            try:
                self.client.connect_async(self.config.host, self.config.port, keepalive=keepalive)
            except ValueError as e:
                logger.error("Invalid broker settings for device %s: %s", self.device_id, e)
                self._set_state(ConnectionState.DISCONNECTED)
                return
            logger.info(
                "Connecting device %s to mqtt://%s:%d as %s",
                self.device_id,
                self.config.host,
                self.config.port,
                self.client_id,
            )
            self.client.loop_start()

    def close(self) -> None:
        with self._lock:
            self._closing = True
        # Waits for an in-flight start() so its network thread is stopped too.
        with self._lifecycle:
            try:
                self.client.disconnect()
            except Exception:
                logger.debug("Disconnect of device %s raised", self.device_id, exc_info=True)
            self.client.loop_stop()
        self._set_state(ConnectionState.DISCONNECTED)

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            self._state = state

    def _on_connect(
        self, client: Any, userdata: Any, connect_flags: Any, reason_code: Any, properties: Any
    ) -> None:
        if _is_failure(reason_code):
            logger.warning(
                "Broker %s refused device %s: %s", self.config.host, self.device_id, reason_code
            )
            self._set_state(ConnectionState.RECONNECTING)
            return

        self._set_state(ConnectionState.CONNECTED)
        logger.info("Device %s connected to %s", self.device_id, self.config.host)
        try:
            result, _mid = client.subscribe(self.topic, qos=SUBSCRIBE_QOS)
        except ValueError as e:
            logger.error("Cannot subscribe device %s to %r: %s", self.device_id, self.topic, e)
            return
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error(
                "Subscribe to %s for device %s failed: %s", self.topic, self.device_id, result
            )

    def _on_connect_fail(self, client: Any, userdata: Any) -> None:
        logger.warning("Connection attempt for device %s to %s failed", self.device_id, self.config.host)
        self._set_state(ConnectionState.RECONNECTING)

    def _on_subscribe(
        self, client: Any, userdata: Any, mid: int, reason_code_list: Any, properties: Any
    ) -> None:
        failures = [rc for rc in reason_code_list or [] if _is_failure(rc)]
        if failures:
            logger.error(
                "Broker rejected subscription to %s for device %s: %s",
                self.topic,
                self.device_id,
                failures,
            )
            return
        logger.info("Device %s subscribed to %s (QoS %d)", self.device_id, self.topic, SUBSCRIBE_QOS)

    def _on_disconnect(
        self, client: Any, userdata: Any, disconnect_flags: Any, reason_code: Any, properties: Any
    ) -> None:
        with self._lock:
            closing = self._closing
            self._state = (
                ConnectionState.DISCONNECTED if closing else ConnectionState.RECONNECTING
            )
        if closing:
            logger.info("Device %s disconnected", self.device_id)
        else:
            logger.warning(
                "Device %s lost connection to %s (%s); retrying",
                self.device_id,
                self.config.host,
                reason_code,
            )

    def _on_message(self, client: Any, userdata: Any, message: Any) -> None:
        self._pipeline.ingest(self.device_id, message.topic, message.payload)


class ConnectionRegistry:
    """Owns exactly one broker session per device id."""

    def __init__(
        self,
        *,
        pipeline: IngestionPipeline,
        client_factory: ClientFactory = create_paho_client,
        client_id_prefix: str = "iot_dashboard",
        keepalive_seconds: int = 60,
        reconnect_delay_seconds: int = 5,
    ) -> None:
        self._pipeline = pipeline
        self._client_factory = client_factory
        self._client_id_prefix = client_id_prefix
        self._keepalive_seconds = keepalive_seconds
        self._reconnect_delay_seconds = reconnect_delay_seconds
        self._lock = threading.Lock()
        self._handles: dict[str, ConnectionHandle] = {}

    def connect(self, config: DeviceConnectionConfig) -> ConnectionHandle:
        with self._lock:
            existing = self._handles.get(config.device_id)
            if existing is not None:
                logger.debug("Device %s already registered", config.device_id)
                return existing

            client_id = f"{self._client_id_prefix}_{config.device_id}_{int(time.time() * 1000)}"
            client = self._client_factory(client_id)
            client.reconnect_delay_set(
                min_delay=self._reconnect_delay_seconds,
                max_delay=self._reconnect_delay_seconds,
            )
            if config.username:
                client.username_pw_set(config.username, config.password)

            handle = ConnectionHandle(
                config=config, client=client, client_id=client_id, pipeline=self._pipeline
            )
            self._handles[config.device_id] = handle

        handle.start(keepalive=self._keepalive_seconds)
        return handle

    def disconnect(self, device_id: str) -> bool:
        with self._lock:
            handle = self._handles.pop(device_id, None)
        if handle is None:
            return False
        handle.close()
        logger.info("Device %s disconnected on request", device_id)
        return True

    def disconnect_all(self) -> int:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            try:
                handle.close()
            except Exception:
                logger.exception("Error closing connection for device %s", handle.device_id)
        if handles:
            logger.info("Closed %d MQTT connection(s)", len(handles))
        return len(handles)

    def get(self, device_id: str) -> ConnectionHandle | None:
        with self._lock:
            return self._handles.get(device_id)

    def is_connected(self, device_id: str) -> bool:
        handle = self.get(device_id)
        return handle is not None and handle.state is ConnectionState.CONNECTED

    def status(self) -> dict[str, ConnectionStatus]:
        with self._lock:
            handles = list(self._handles.items())
        return {device_id: handle.status() for device_id, handle in handles}

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
