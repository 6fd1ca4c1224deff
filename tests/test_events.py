"""Tests for the event bus fan-out."""

import asyncio

import pytest

from btspeaker.lib.events import EventBus
from btspeaker.lib.models import DeviceConnected, TrackChanged, TrackMetadata


async def test_typed_subscription_and_order():
    bus = EventBus()
    tracks, everything = [], []
    bus.subscribe(tracks.append, TrackChanged, name="tracks")
    bus.subscribe(everything.append, name="all")

    first = TrackChanged("AA", TrackMetadata("A", "1"), None)
    second = TrackChanged("AA", TrackMetadata("A", "2"), first.current)
    bus.publish(DeviceConnected("AA"))
    bus.publish(first)
    bus.publish(second)
    await bus.join()

    assert tracks == [first, second]
    assert len(everything) == 3
    assert bus.published == 3
    await bus.close()


async def test_slow_subscriber_does_not_block_publish():
    bus = EventBus()
    release = asyncio.Event()
    handled = []

    async def slow(event):
        await release.wait()
        handled.append(event)

    bus.subscribe(slow, name="slow")
    bus.publish(DeviceConnected("AA"))
    bus.publish(DeviceConnected("BB"))
    assert handled == []

    release.set()
    await bus.join()
    assert [e.device_id for e in handled] == ["AA", "BB"]
    await bus.close()


async def test_failing_handler_keeps_subscription_alive():
    bus = EventBus()
    seen = []

    def picky(event):
        if event.device_id == "bad":
            raise ValueError("nope")
        seen.append(event.device_id)

    sub = bus.subscribe(picky, name="picky")
    bus.publish(DeviceConnected("bad"))
    bus.publish(DeviceConnected("good"))
    await bus.join()

    assert seen == ["good"]
    assert sub.failed == 1
    assert sub.delivered == 1
    await bus.close()


async def test_close_unsubscribes_everyone():
    bus = EventBus()
    bus.subscribe(lambda e: None, name="a")
    sub = bus.subscribe(lambda e: None, name="b")
    await bus.unsubscribe(sub)
    assert bus.subscriber_count == 1

    await bus.close()
    assert bus.subscriber_count == 0
    bus.publish(DeviceConnected("AA"))
    assert bus.published == 0
    with pytest.raises(RuntimeError):
        bus.subscribe(lambda e: None)
