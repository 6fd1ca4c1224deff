"""Shared fixtures: isolated config, a controllable clock, fake sources and engines."""

import asyncio
import json

import pytest

from btspeaker.lib import config as config_module
from btspeaker.lib.errors import SpeechError
from btspeaker.lib.events import EventBus
from btspeaker.lib.reconciler import Reconciler
from btspeaker.lib.store import DeviceStateStore
from btspeaker.outputs.speech import SpeechEngine
from btspeaker.sources.base import MetadataSource

TEST_CONFIG = {
    "device": "Test Speaker",
    "sources": {"enabled": ["bluetoothctl", "playerctl"]},
    "timing": {
        "poll_interval": 0.05,
        "presence_interval": 0.05,
        "audio_check_interval": 0.05,
        "transition_window": 5,
        "error_backoff": 0.05,
        "source_timeout": 1,
    },
    "commentary": {"enabled": False, "throttle": 10},
    "speech": {"enabled": False, "queue_size": 2},
    "audio_routing": {"command": "", "cooldown": 15},
    "http": {"port": 0},
}


@pytest.fixture(autouse=True)
def test_config(tmp_path, monkeypatch):
    """Point the loader at a throwaway config.json for every test."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps(TEST_CONFIG))
    monkeypatch.setenv("BTSPEAKER_CONFIG", str(path))
    monkeypatch.delenv("OLLAMA_URL", raising=False)
    monkeypatch.delenv("BTSPEAKER_TTS_ENGINE", raising=False)
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    config_module.reload_config()
    yield path
    config_module._config = None


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def reconciler(bus, clock):
    return Reconciler(DeviceStateStore(), bus, transition_window=5.0, clock=clock)


class FakeSource(MetadataSource):
    """Polling source returning whatever the test queued up."""

    def __init__(self, id="fake", priority=50, candidates=None, devices=None,
                 cadence="metadata", available=True, fail=False):
        self.id = id
        self.name = id
        self.priority = priority
        self.cadence = cadence
        self.candidates = list(candidates or [])
        self.devices = devices
        self.is_available = available
        self.fail = fail
        self.polls = 0

    async def available(self):
        return self.is_available

    async def poll(self):
        self.polls += 1
        if self.fail:
            raise RuntimeError("tool exploded")
        return list(self.candidates)

    async def list_devices(self):
        return self.devices


@pytest.fixture
def fake_source():
    return FakeSource


class RecordingEngine(SpeechEngine):
    """Speech engine that records lines, optionally slowly or failing."""

    def __init__(self, name="recording", delay=0.0, fail=False):
        self.name = name
        self.delay = delay
        self.fail = fail
        self.spoken = []
        self.started = []

    async def speak(self, text):
        self.started.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise SpeechError(f"{self.name} broke")
        self.spoken.append(text)


@pytest.fixture
def recording_engine():
    return RecordingEngine
