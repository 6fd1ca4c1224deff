"""End-to-end tests for SpeakerMonitor wired to fake sources and engines."""

import asyncio

import pytest

from btspeaker.lib.models import Candidate, DeviceInfo, PlaybackState, TrackMetadata
from btspeaker.monitor import SpeakerMonitor, main

MAC = "AA:BB:CC:DD:EE:FF"
SONG = TrackMetadata("Rick Astley", "Never Gonna Give You Up", "Whenever You Need Somebody")


async def wait_until(predicate, timeout=2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def event_source(fake_source):
    class EventSource(fake_source):
        event_driven = True

        def __init__(self, **kwargs):
            super().__init__("bluez", priority=0, **kwargs)
            self.emit = None
            self.stopped = False

        async def start(self, emit, release=None):
            self.emit = emit

        async def stop(self):
            self.stopped = True

    return EventSource


async def test_initialize_drops_unavailable_sources(fake_source):
    monitor = SpeakerMonitor(sources=[fake_source("bluetoothctl", priority=10),
                                      fake_source("mpris", priority=30, available=False)])
    await monitor.initialize()

    assert [s.id for s in monitor.sources] == ["bluetoothctl"]
    assert monitor.mode == "polling-only"
    assert monitor.poller.presence_interval == pytest.approx(0.05)


async def test_bus_source_selects_bus_mode(fake_source, event_source):
    monitor = SpeakerMonitor(sources=[event_source(), fake_source("bluetoothctl", priority=10)])
    await monitor.initialize()

    assert monitor.mode == "bus+polling"
    assert monitor.poller.presence_interval == 5.0
    assert [s.id for s in monitor.poller.metadata_sources] == ["bluetoothctl"]


async def test_polled_track_reaches_speech(fake_source, recording_engine):
    phone = fake_source("bluetoothctl", priority=10, devices=[DeviceInfo(MAC, "Pixel")],
                        candidates=[Candidate("bluetoothctl", MAC, track=SONG,
                                              state=PlaybackState.PLAYING)])
    engine = recording_engine()
    monitor = SpeakerMonitor(sources=[phone], speech_engine=engine,
                             enable_commentary=True, http_port=0)

    await monitor.start_monitoring()
    try:
        await wait_until(lambda: monitor.get_current_track() == SONG)
        assert monitor.current_device == MAC
        assert monitor.get_current_state() is PlaybackState.PLAYING
        assert monitor.get_connected_devices() == [MAC]

        # welcome line; the track comment lands inside the throttle window
        await wait_until(lambda: engine.spoken)
        assert monitor.commentary.comments == 1
    finally:
        await monitor.stop_monitoring()

    assert not monitor.running
    assert monitor.arbiter.pending() == []


async def test_bus_events_and_status(fake_source, event_source):
    bluez = event_source()
    monitor = SpeakerMonitor(sources=[bluez, fake_source("bluetoothctl", priority=10)])
    await monitor.start_monitoring()
    try:
        await bluez.emit(Candidate("bluez", MAC, track=SONG, state=PlaybackState.PAUSED,
                                   event_driven=True, name="Pixel"))
        status = monitor.status()
    finally:
        await monitor.stop_monitoring()

    assert bluez.stopped
    assert status["mode"] == "bus+polling"
    assert status["running"] is True
    assert status["current_device"] == MAC
    assert status["sources"] == ["bluez", "bluetoothctl"]
    device = status["devices"][0]
    assert device["name"] == "Pixel"
    assert device["state"] == "paused"
    assert device["track_source"] == "bluez"
    assert status["commentary"]["enabled"] is False
    assert status["speech"]["engine"] == "none"


async def test_stop_is_idempotent(fake_source):
    monitor = SpeakerMonitor(sources=[fake_source("bluetoothctl")])
    await monitor.stop_monitoring()
    await monitor.start_monitoring()
    await monitor.stop_monitoring()
    await monitor.stop_monitoring()
    assert not monitor.running


def test_main_parses_flags(mocker):
    run = mocker.patch("btspeaker.monitor.asyncio.run")
    created = mocker.patch("btspeaker.monitor.SpeakerMonitor")

    main(["--no-speech", "--no-http"])

    kwargs = created.call_args.kwargs
    assert kwargs["enable_speech"] is False
    assert kwargs["http_port"] == 0
    assert kwargs["speech_engine"].name == "none"
    run.assert_called_once()
    run.call_args.args[0].close()


async def test_dead_bus_listener_falls_back_to_polling(fake_source, event_source):
    class DeadBus(event_source):
        async def start(self, emit, release=None):
            raise RuntimeError("system bus refused the connection")

    monitor = SpeakerMonitor(sources=[DeadBus(), fake_source("bluetoothctl", priority=10)])
    await monitor.start_monitoring()
    try:
        assert monitor.mode == "polling-only"
        assert monitor.poller.presence_interval == pytest.approx(0.05)
        assert monitor.status()["sources"] == ["bluetoothctl"]
    finally:
        await monitor.stop_monitoring()
