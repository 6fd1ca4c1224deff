"""Tests for the polling coordinator."""

import asyncio

from btspeaker.lib.models import (Candidate, DeviceInfo, PlaybackState, TrackChanged,
                                  TrackMetadata)
from btspeaker.lib.poller import PollingLoop
from btspeaker.sources import bluetoothctl
from btspeaker.sources.bluetoothctl import BluetoothctlSource

MAC = "AA:BB:CC:DD:EE:FF"


async def test_first_valid_track_in_priority_order_wins(reconciler, fake_source):
    low = fake_source("playerctl", priority=20,
                      candidates=[Candidate("playerctl", track=TrackMetadata("B", "Low"))])
    high = fake_source("bluetoothctl", priority=10, candidates=[
        Candidate("bluetoothctl", MAC, track=TrackMetadata("A", "High"),
                  state=PlaybackState.PLAYING)])
    poller = PollingLoop(reconciler, [low, high])

    await poller.metadata_cycle()

    assert reconciler.get_track(MAC) == TrackMetadata("A", "High")
    assert reconciler.get_state(MAC) is PlaybackState.PLAYING


async def test_states_from_lower_sources_still_apply(reconciler, fake_source):
    high = fake_source("bluetoothctl", priority=10,
                       candidates=[Candidate("bluetoothctl", MAC, track=TrackMetadata("A", "T"))])
    low = fake_source("playerctl", priority=20, candidates=[
        Candidate("playerctl", track=TrackMetadata("B", "X"), state=PlaybackState.PAUSED)])
    poller = PollingLoop(reconciler, [high, low])

    await poller.metadata_cycle()

    assert reconciler.get_track(MAC) == TrackMetadata("A", "T")
    assert reconciler.get_state(MAC) is PlaybackState.PAUSED


async def test_failing_source_does_not_spoil_the_cycle(reconciler, fake_source):
    broken = fake_source("mpris", priority=30, fail=True)
    good = fake_source("bluetoothctl", priority=10,
                       candidates=[Candidate("bluetoothctl", MAC, track=TrackMetadata("A", "T"))])
    poller = PollingLoop(reconciler, [broken, good])

    await poller.metadata_cycle()

    assert broken.polls == 1
    assert reconciler.get_track(MAC) == TrackMetadata("A", "T")


async def test_slow_source_is_bounded(reconciler, fake_source):
    class Slow(fake_source):
        async def poll(self):
            await asyncio.sleep(5)
            return []

    poller = PollingLoop(reconciler, [Slow("slow")], source_timeout=0.05)
    await asyncio.wait_for(poller.metadata_cycle(), timeout=1)


async def test_presence_uses_first_enumerating_source(reconciler, fake_source):
    silent = fake_source("playerctl", priority=20, devices=None)
    enumerating = fake_source("bluetoothctl", priority=10, devices=[DeviceInfo(MAC, "Phone")])
    poller = PollingLoop(reconciler, [silent, enumerating])

    await poller.presence_cycle()
    assert reconciler.store.ids() == [MAC]

    enumerating.devices = []
    await poller.presence_cycle()
    assert reconciler.store.ids() == []


async def test_audio_cycle_drives_state(reconciler, fake_source):
    await reconciler.submit_devices("bluetoothctl", [DeviceInfo(MAC)])
    meter = fake_source("audio", priority=90, cadence="audio",
                        candidates=[Candidate("audio", audio_active=True)])
    poller = PollingLoop(reconciler, [meter])
    assert poller.metadata_sources == []

    await poller.audio_cycle()
    assert reconciler.get_state(MAC) is PlaybackState.PLAYING


async def test_run_stops_promptly_and_survives_errors(reconciler, fake_source, bus):
    seen = []
    bus.subscribe(seen.append, TrackChanged, name="test")
    flaky = fake_source("bluetoothctl", priority=10, devices=[DeviceInfo(MAC)], candidates=[
        Candidate("bluetoothctl", MAC, track=TrackMetadata("A", "T"))])
    poller = PollingLoop(reconciler, [flaky], poll_interval=0.01, presence_interval=0.01,
                         error_backoff=0.01)
    stop = asyncio.Event()
    task = asyncio.create_task(poller.run(stop))

    await asyncio.sleep(0.1)
    flaky.fail = True
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    await bus.join()
    assert len(seen) == 1
    assert poller.cycles["metadata"] >= 1
    await bus.close()


async def test_failed_enumeration_keeps_devices_and_state(reconciler, mocker):
    mocker.patch.object(bluetoothctl, "have_binary", return_value=True)
    run = mocker.patch.object(bluetoothctl, "run_output", autospec=True,
                              return_value=f"Device {MAC} Phone\n")
    poller = PollingLoop(reconciler, [BluetoothctlSource()])
    await poller.presence_cycle()
    await reconciler.submit(Candidate("bluetoothctl", MAC, track=TrackMetadata("A", "T"),
                                      state=PlaybackState.PLAYING))

    run.return_value = None  # timeout / non-zero exit
    await poller.presence_cycle()

    assert reconciler.store.ids() == [MAC]
    assert reconciler.get_track(MAC) == TrackMetadata("A", "T")
    assert reconciler.get_state(MAC) is PlaybackState.PLAYING

    run.return_value = ""
    await poller.presence_cycle()
    assert reconciler.store.ids() == []


async def test_other_sources_vouch_for_a_device(reconciler, clock, mocker):
    mocker.patch.object(bluetoothctl, "have_binary", return_value=True)
    run = mocker.patch.object(bluetoothctl, "run_output", autospec=True,
                              return_value=f"Device {MAC} Phone\n")
    poller = PollingLoop(reconciler, [BluetoothctlSource()])
    await poller.presence_cycle()
    await reconciler.submit(Candidate("playerctl", track=TrackMetadata("A", "T")))

    run.return_value = ""
    await poller.presence_cycle()
    assert reconciler.get_track(MAC) == TrackMetadata("A", "T")

    clock.advance(reconciler.corroboration_window + 1)
    await poller.presence_cycle()
    assert reconciler.store.ids() == []
