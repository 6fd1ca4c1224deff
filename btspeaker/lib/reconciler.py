# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Reconciler: turns candidates from every source into canonical events.

Rules, per device:
  track   accepted iff valid and different from the stored one
  state   accepted iff known and different from the stored one
  authority
          once the event-driven source has supplied a field, polling
          candidates for that field are ignored until the device is
          released (the bus lost its player) or disconnected
  audio   the binary audio-activity flag only drives the state while no
          source has reported a real playback status.  Going quiet arms a
          silence deadline at max(inactive_since, last_track_change) +
          transition_window; audio coming back before the deadline cancels
          it silently, reaching it emits STOPPED.

All store mutation happens under ``store.lock``.  Events are published on the
bus before the lock is released, so per-device event order is acceptance
order; subscribers run in their own tasks and never under the lock.
"""

import asyncio
import logging
import time

from .events import EventBus
from .lifecycle import DeviceLifecycleTracker
from .models import (Candidate, DeviceInfo, PlaybackState, PlaybackStateChanged,
                     TrackChanged, TrackMetadata)
from .store import DeviceRecord, DeviceStateStore

log = logging.getLogger(__name__)

DEFAULT_TRANSITION_WINDOW = 5.0
DEFAULT_CORROBORATION_WINDOW = 10.0


class Reconciler:

    def __init__(self, store: DeviceStateStore, bus: EventBus, *,
                 transition_window: float = DEFAULT_TRANSITION_WINDOW,
                 corroboration_window: float = DEFAULT_CORROBORATION_WINDOW,
                 clock=time.monotonic):
        self.store = store
        self.bus = bus
        self.transition_window = transition_window
        self.corroboration_window = corroboration_window
        self._clock = clock
        self.lifecycle = DeviceLifecycleTracker(store, clock)

    @property
    def current_device(self) -> str | None:
        return self.lifecycle.current

    # -- public operations ---------------------------------------------------

    async def submit(self, candidate: Candidate) -> list:
        async with self.store.lock:
            events = self._apply(candidate)
            self._publish(events)
        return events

    async def submit_devices(self, source: str, devices: list[DeviceInfo]) -> list:
        async with self.store.lock:
            protected = {r.device_id for r in self.store.records()
                         if r.bus_attached or self._corroborated(r, source)}
            events = self.lifecycle.reconcile(devices, protected)
            if events:
                log.debug("Enumeration from %s: %d device(s), %d event(s)",
                          source, len(devices), len(events))
            self._publish(events)
        return events

    async def disconnect(self, device_id: str) -> list:
        async with self.store.lock:
            events = self.lifecycle.disconnect(device_id)
            self._publish(events)
        return events

    async def release(self, device_id: str) -> None:
        """The event-driven source lost its player; polling may fill gaps again."""
        async with self.store.lock:
            record = self.store.get(device_id)
            if record is None:
                return
            record.bus_attached = False
            record.track_authoritative = False
            record.state_authoritative = False
            log.info("Released %s to polling sources", device_id)

    async def check_transitions(self) -> list:
        """Fire every silence deadline that has passed."""
        async with self.store.lock:
            now = self._clock()
            events = []
            for record in self.store.records():
                deadline = record.silence_deadline
                if deadline is None or now < deadline:
                    continue
                record.silence_deadline = None
                if record.audio_active or record.state_observed:
                    continue
                if record.state is not PlaybackState.STOPPED:
                    log.info("%s: silent for %.0fs, stopped", record.device_id,
                             now - (record.inactive_since or now))
                    events.append(self._set_state(record, PlaybackState.STOPPED, "audio"))
            self._publish(events)
        return events

    async def run_timer(self, stop: asyncio.Event, interval: float = 0.5):
        """Drive check_transitions() until *stop* is set."""
        while not stop.is_set():
            try:
                await self.check_transitions()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Silence timer failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def get_track(self, device_id: str | None = None) -> TrackMetadata | None:
        record = self._record(device_id)
        return record.track if record else None

    def get_state(self, device_id: str | None = None) -> PlaybackState:
        record = self._record(device_id)
        return record.state if record else PlaybackState.UNKNOWN

    # -- internals -----------------------------------------------------------

    def _corroborated(self, record: DeviceRecord, enumerator: str) -> bool:
        """Another source saw the device recently, so a missing entry in
        *enumerator*'s list is not enough to drop it."""
        now = self._clock()
        return any(now - seen <= self.corroboration_window
                   for source, seen in record.seen_by.items() if source != enumerator)

    def _record(self, device_id: str | None) -> DeviceRecord | None:
        return self.store.get(device_id or self.lifecycle.current or "")

    def _publish(self, events: list) -> None:
        for event in events:
            self.bus.publish(event)

    def _apply(self, c: Candidate) -> list:
        events = []
        if c.device_id is None:
            device_id = self.lifecycle.current
            if device_id is None:
                log.debug("Dropping %s candidate, no current device", c.source)
                return events
        else:
            device_id = c.device_id
            events += self.lifecycle.observe(device_id, c.name)

        record = self.store.get(device_id)
        if c.event_driven:
            record.bus_attached = True
        now = self._clock()
        if not c.event_driven and ((c.track is not None and c.track.is_valid) or c.audio_active
                                   or c.state not in (None, PlaybackState.UNKNOWN)):
            record.seen_by[c.source] = now

        if c.track is not None:
            events += self._apply_track(record, c, now)
        if c.state is not None and c.state is not PlaybackState.UNKNOWN:
            events += self._apply_state(record, c)
        if c.audio_active is not None:
            events += self._apply_audio(record, c, now)
        return events

    def _apply_track(self, record: DeviceRecord, c: Candidate, now: float) -> list:
        track = c.track
        if not track.is_valid:
            return []
        if record.track_authoritative and not c.event_driven:
            return []
        if c.event_driven:
            record.track_authoritative = True
        if track == record.track:
            return []

        previous = record.track
        record.track = track
        record.track_source = c.source
        record.last_track_change = now
        if record.silence_deadline is not None:
            record.silence_deadline = now + self.transition_window

        if previous:
            log.info("%s: track %s -> %s (%s)", record.device_id,
                     previous.formatted, track.formatted, c.source)
        else:
            log.info("%s: track %s (%s)", record.device_id, track.detailed, c.source)
        return [TrackChanged(record.device_id, track, previous)]

    def _apply_state(self, record: DeviceRecord, c: Candidate) -> list:
        if record.state_authoritative and not c.event_driven:
            return []
        if c.event_driven:
            record.state_authoritative = True
        record.state_observed = True
        record.silence_deadline = None
        if c.state is record.state:
            return []
        return [self._set_state(record, c.state, c.source)]

    def _apply_audio(self, record: DeviceRecord, c: Candidate, now: float) -> list:
        record.audio_active = c.audio_active
        if record.state_observed:
            return []

        if c.audio_active:
            record.inactive_since = None
            if record.silence_deadline is not None:
                log.debug("%s: audio back before deadline", record.device_id)
                record.silence_deadline = None
            if record.state is not PlaybackState.PLAYING:
                return [self._set_state(record, PlaybackState.PLAYING, c.source)]
            return []

        if record.inactive_since is None:
            record.inactive_since = now
        if record.state is PlaybackState.PLAYING and record.silence_deadline is None:
            record.silence_deadline = (max(record.inactive_since, record.last_track_change or 0.0)
                                       + self.transition_window)
            log.debug("%s: audio stopped, deadline in %.1fs", record.device_id,
                      record.silence_deadline - now)
        return []

    def _set_state(self, record: DeviceRecord, state: PlaybackState,
                   source: str) -> PlaybackStateChanged:
        previous = record.state
        record.state = state
        record.state_source = source
        log.info("%s: %s -> %s (%s)", record.device_id, previous.value, state.value, source)
        return PlaybackStateChanged(record.device_id, state, previous, record.track)
