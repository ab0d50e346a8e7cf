from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone

from iot_dashboard.models.telemetry import TelemetryRecord
from iot_dashboard.services.cache import LatestValueCache
from iot_dashboard.services.fanout import LiveFanout

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _record(device_id: str, payload: str = "{}") -> TelemetryRecord:
    return TelemetryRecord(device_id=device_id, topic=f"lab/{device_id}", payload=payload, received_at=T0)


def test_publish_without_subscribers_is_a_noop() -> None:
    fanout = LiveFanout()

    assert fanout.publish("sensor-1", _record("sensor-1")) == 0


def test_subscribers_only_see_their_device() -> None:
    fanout = LiveFanout()

    async def scenario() -> tuple[TelemetryRecord, bool]:
        mine = fanout.subscribe("sensor-1")
        other = fanout.subscribe("sensor-2")
        fanout.publish("sensor-1", _record("sensor-1", "hello"))
        got = await asyncio.wait_for(mine.get(), timeout=1.0)
        try:
            await asyncio.wait_for(other.get(), timeout=0.05)
            leaked = True
        except asyncio.TimeoutError:
            leaked = False
        return got, leaked

    got, leaked = asyncio.run(scenario())

    assert got.payload == "hello"
    assert not leaked


def test_publish_from_another_thread_reaches_the_loop() -> None:
    fanout = LiveFanout()

    async def scenario() -> TelemetryRecord:
        subscription = fanout.subscribe("sensor-1")
        publisher = threading.Thread(
            target=fanout.publish, args=("sensor-1", _record("sensor-1", "threaded"))
        )
        publisher.start()
        publisher.join()
        return await asyncio.wait_for(subscription.get(), timeout=1.0)

    assert asyncio.run(scenario()).payload == "threaded"


def test_slow_subscriber_drops_instead_of_blocking() -> None:
    fanout = LiveFanout(queue_size=2)

    async def scenario() -> int:
        subscription = fanout.subscribe("sensor-1")
        for i in range(5):
            fanout.publish("sensor-1", _record("sensor-1", str(i)))
        await asyncio.sleep(0)
        return subscription.dropped

    assert asyncio.run(scenario()) == 3


def test_unsubscribe_removes_listener() -> None:
    fanout = LiveFanout()

    async def scenario() -> None:
        subscription = fanout.subscribe("sensor-1")
        assert fanout.subscriber_count("sensor-1") == 1
        fanout.unsubscribe(subscription)
        fanout.unsubscribe(subscription)

    asyncio.run(scenario())

    assert fanout.subscriber_count("sensor-1") == 0
    assert fanout.publish("sensor-1", _record("sensor-1")) == 0


def test_publish_after_loop_closed_is_dropped() -> None:
    fanout = LiveFanout()

    async def scenario():
        return fanout.subscribe("sensor-1")

    subscription = asyncio.run(scenario())

    assert fanout.publish("sensor-1", _record("sensor-1")) == 1
    assert subscription.dropped == 1


def test_latest_value_cache() -> None:
    cache = LatestValueCache()

    assert cache.get("lab/sensor-1") is None
    cache.update("lab/sensor-1", payload="a", timestamp=T0)
    cache.update("lab/sensor-2", payload="b", timestamp=T0)

    assert cache.get("lab/sensor-1").payload == "a"
    assert set(cache.snapshot()) == {"lab/sensor-1", "lab/sensor-2"}
    cache.clear()
    assert len(cache) == 0


def test_drop_counter_is_exact_across_publisher_threads() -> None:
    fanout = LiveFanout()

    async def scenario():
        return fanout.subscribe("sensor-1")

    subscription = asyncio.run(scenario())
    record = _record("sensor-1")
    threads = [
        threading.Thread(target=lambda: [fanout.publish("sensor-1", record) for _ in range(200)])
        for _ in range(8)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert subscription.dropped == 8 * 200
