#!/usr/bin/env python3
# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
BT Speaker monitor service.

Watches whatever phone is connected to the speaker over Bluetooth, works out
what it is playing from every signal available (BlueZ D-Bus events,
bluetoothctl, playerctl, MPRIS, raw audio activity), and reacts to track and
playback changes with spoken commentary.

Usage (foreground, log what would be said):
    python3 -m btspeaker --no-speech --verbose

Usage (normal):
    btspeaker

As systemd service:
    Type=notify with WatchdogSec=60; see README for the unit file.
"""

import argparse
import asyncio
import logging
import signal
import time

from .http_api import start_http
from .lib.config import cfg
from .lib.events import EventBus
from .lib.models import (DeviceConnected, DeviceDisconnected, PlaybackState,
                         PlaybackStateChanged, TrackChanged, TrackMetadata)
from .lib.poller import PollingLoop
from .lib.reconciler import Reconciler
from .lib.store import DeviceRecord, DeviceStateStore
from .lib.systemd import notify_ready, notify_status, notify_stopping, watchdog_loop
from .outputs.arbiter import OutputArbiter
from .outputs.commentary import (DEFAULT_MODEL, DEFAULT_URL, CommentaryGenerator,
                                 CommentaryService, OllamaClient)
from .outputs.routing import AudioRouting
from .outputs.speech import SpeechEngine, create_speech_engine
from .sources import MetadataSource, create_sources

logger = logging.getLogger("btspeaker")


class SpeakerMonitor:
    """Wires sources -> reconciler -> event bus -> commentary / routing -> speech."""

    def __init__(self, *, sources: list[MetadataSource] | None = None,
                 speech_engine: SpeechEngine | None = None,
                 fallback_engine: SpeechEngine | None = None,
                 ollama: OllamaClient | None = None,
                 enable_speech: bool | None = None,
                 enable_commentary: bool | None = None,
                 http_port: int | None = None,
                 clock=time.monotonic):
        self.device_name = cfg("device", default="BT Speaker")
        self.poll_interval = float(cfg("timing", "poll_interval", default=3))

        self.bus = EventBus()
        self.store = DeviceStateStore()
        self.reconciler = Reconciler(
            self.store, self.bus,
            transition_window=float(cfg("timing", "transition_window", default=5)),
            corroboration_window=float(cfg("timing", "corroboration_window", default=10)),
            clock=clock)
        self.sources = sources if sources is not None else create_sources()
        self.poller: PollingLoop | None = None

        if enable_speech is None:
            enable_speech = bool(cfg("speech", "enabled", default=True))
        voice = cfg("speech", "voice")
        if speech_engine is None:
            speech_engine = create_speech_engine(
                cfg("speech", "engine", default="piper") if enable_speech else "none", voice)
        if fallback_engine is None and enable_speech:
            fallback_name = cfg("speech", "fallback", default="espeak")
            if fallback_name and fallback_name != speech_engine.name:
                fallback_engine = create_speech_engine(fallback_name, voice)
        self.arbiter = OutputArbiter(
            speech_engine, fallback_engine,
            capacity=int(cfg("speech", "queue_size", default=2)))

        if enable_commentary is None:
            enable_commentary = bool(cfg("commentary", "enabled", default=True))
        self.commentary_enabled = enable_commentary
        if ollama is None and enable_commentary:
            ollama = OllamaClient(
                cfg("commentary", "ollama_url", default=DEFAULT_URL),
                cfg("commentary", "model", default=DEFAULT_MODEL),
                timeout=float(cfg("commentary", "timeout", default=30)))
        self.ollama = ollama
        self.generator = CommentaryGenerator(None, self.device_name)
        self.commentary = CommentaryService(
            self.generator, self.say,
            throttle=float(cfg("commentary", "throttle", default=10)),
            device_names=self._device_label, clock=clock)
        self.routing = AudioRouting(
            cfg("audio_routing", "command"),
            cooldown=float(cfg("audio_routing", "cooldown", default=15)),
            current_device=lambda: self.reconciler.current_device, clock=clock)

        self.http_port = http_port if http_port is not None else int(cfg("http", "port", default=8780))
        self.mode = "uninitialized"
        self.running = False
        self._initialized = False
        self._stop: asyncio.Event | None = None
        self._tasks: list[asyncio.Task] = []
        self._runner = None
        self._bus_source: MetadataSource | None = None
        self._presence_interval = 2.0

    # -- lifecycle -----------------------------------------------------------

    async def initialize(self) -> bool:
        """Probe sources, the commentary backend and speech engines."""
        if self._initialized:
            return True

        active = []
        for source in self.sources:
            try:
                ok = await source.available()
            except Exception as e:
                logger.warning("Source %s probe failed: %s", source.id, e)
                ok = False
            if not ok:
                logger.warning("Source %s unavailable, skipping", source.id)
                continue
            active.append(source)
        self.sources = active
        self._bus_source = next((s for s in active if s.event_driven), None)
        self.mode = "bus+polling" if self._bus_source else "polling-only"
        logger.info("Using %s metadata detection (%s)", self.mode,
                    ", ".join(s.id for s in active) or "no sources")

        presence = float(cfg("timing", "presence_interval", default=2))
        self._presence_interval = presence
        self.poller = PollingLoop(
            self.reconciler, active,
            poll_interval=self.poll_interval,
            presence_interval=presence if self._bus_source is None else max(presence, 5.0),
            audio_check_interval=float(cfg("timing", "audio_check_interval", default=10)),
            source_timeout=float(cfg("timing", "source_timeout", default=5)),
            error_backoff=float(cfg("timing", "error_backoff", default=5)))

        if self.commentary_enabled and self.ollama is not None:
            if await self.ollama.available() and await self.ollama.ensure_model():
                self.generator.client = self.ollama
                logger.info("Commentary via Ollama (%s)", self.ollama.model)
            else:
                logger.warning("Ollama not available, using fallback lines")

        for engine in (self.arbiter.engine, self.arbiter.fallback):
            if engine is not None and not engine.available():
                logger.warning("Speech engine %s not installed", engine.name)

        self._initialized = True
        return True

    async def start_monitoring(self):
        if self.running:
            return
        await self.initialize()
        self._stop = asyncio.Event()

        if self.commentary_enabled:
            self.bus.subscribe(self.commentary.handle, DeviceConnected, TrackChanged,
                               PlaybackStateChanged, name="commentary")
        if self.routing.enabled:
            self.bus.subscribe(self.routing.handle, DeviceConnected, PlaybackStateChanged,
                               name="audio-routing")
        self.bus.subscribe(self._on_lifecycle, DeviceConnected, DeviceDisconnected,
                           name="status")
        self.arbiter.start()

        if self._bus_source is not None:
            try:
                await self._bus_source.start(self.reconciler.submit, self.reconciler.release)
            except Exception as e:
                logger.warning("BlueZ listener failed (%s), falling back to polling-only", e)
                self.sources = [s for s in self.sources if s is not self._bus_source]
                self._bus_source = None
                self.mode = "polling-only"
                self.poller.presence_interval = self._presence_interval

        self._tasks = [
            asyncio.create_task(self.poller.run(self._stop), name="polling"),
            asyncio.create_task(self.reconciler.run_timer(self._stop), name="silence-timer"),
            asyncio.create_task(watchdog_loop(self._stop), name="watchdog"),
        ]

        if self.http_port:
            try:
                self._runner = await start_http(self, self.http_port)
            except OSError as e:
                logger.warning("HTTP API disabled, port %d: %s", self.http_port, e)

        self.running = True
        notify_ready(self._status_line())
        logger.info("%s monitoring started", self.device_name)

    async def stop_monitoring(self):
        if not self.running:
            return
        self.running = False
        notify_stopping()
        logger.info("Stopping...")
        self._stop.set()

        _, still_running = await asyncio.wait(self._tasks, timeout=self.poll_interval + 1)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        self._tasks = []

        if self._bus_source is not None:
            await self._bus_source.stop()
        await self.arbiter.stop()
        await self.bus.close()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        if self.ollama is not None:
            await self.ollama.close()
        logger.info("Stopped")

    async def run(self):
        """initialize + start + wait for SIGINT/SIGTERM + stop."""
        loop = asyncio.get_running_loop()
        shutdown = asyncio.Event()

        def handle_signal():
            logger.info("Signal received, shutting down")
            shutdown.set()

        loop.add_signal_handler(signal.SIGINT, handle_signal)
        loop.add_signal_handler(signal.SIGTERM, handle_signal)
        try:
            await self.start_monitoring()
            await shutdown.wait()
        finally:
            await self.stop_monitoring()

    # -- queries -------------------------------------------------------------

    @property
    def current_device(self) -> str | None:
        return self.reconciler.current_device

    def get_current_track(self, device_id: str | None = None) -> TrackMetadata | None:
        return self.reconciler.get_track(device_id)

    def get_current_state(self, device_id: str | None = None) -> PlaybackState:
        return self.reconciler.get_state(device_id)

    def get_connected_devices(self) -> list[str]:
        return self.store.ids()

    def device_records(self) -> list[DeviceRecord]:
        return self.store.records()

    def say(self, text: str) -> bool:
        return self.arbiter.enqueue(text)

    def status(self) -> dict:
        return {
            "device": self.device_name,
            "mode": self.mode,
            "running": self.running,
            "current_device": self.current_device,
            "devices": [r.to_dict() for r in self.store.records()],
            "sources": [s.id for s in self.sources],
            "commentary": {
                "enabled": self.commentary_enabled,
                "backend": "ollama" if self.generator.client else "fallback",
                "comments": self.commentary.comments,
                "throttled": self.commentary.throttled,
            },
            "speech": {
                "engine": self.arbiter.engine.name,
                "fallback": self.arbiter.fallback.name if self.arbiter.fallback else None,
                "speaking": self.arbiter.speaking,
                "pending": [r.text for r in self.arbiter.pending()],
                "spoken": self.arbiter.spoken,
                "dropped": self.arbiter.dropped,
            },
            "events_published": self.bus.published,
            "poll_cycles": dict(self.poller.cycles) if self.poller else {},
        }

    # -- internals -----------------------------------------------------------

    def _device_label(self, device_id: str) -> str:
        record = self.store.get(device_id)
        return record.name if record and record.name else device_id

    def _status_line(self) -> str:
        count = len(self.store)
        return f"{self.mode}, {count} device{'s' if count != 1 else ''} connected"

    def _on_lifecycle(self, event):
        notify_status(self._status_line())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main(argv=None):
    parser = argparse.ArgumentParser(description="Bluetooth speaker monitor with commentary")
    parser.add_argument("--no-speech", action="store_true", help="log comments instead of speaking")
    parser.add_argument("--voice", help="speech voice (piper model or espeak voice)")
    parser.add_argument("--engine", help="speech engine: piper, espeak, edge, none")
    parser.add_argument("--no-http", action="store_true", help="disable the HTTP status API")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    speech_engine = None
    if args.no_speech:
        speech_engine = create_speech_engine("none")
    elif args.engine or args.voice:
        speech_engine = create_speech_engine(
            args.engine or cfg("speech", "engine", default="piper"),
            args.voice or cfg("speech", "voice"))

    monitor = SpeakerMonitor(
        speech_engine=speech_engine,
        enable_speech=False if args.no_speech else None,
        http_port=0 if args.no_http else None,
    )
    try:
        asyncio.run(monitor.run())
    except KeyboardInterrupt:
        pass
    logger.info("Done.")


if __name__ == "__main__":
    main()
