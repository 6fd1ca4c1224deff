# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Per-device state store.

Holds the last accepted track and playback state for every connected device,
plus the bookkeeping the reconciler needs to arbitrate between sources.
Records are kept in first-seen order, which is what current-device promotion
relies on.

The store is the only shared mutable state in the service.  Callers that
read-modify-write must hold ``store.lock`` and must not await any external
I/O while holding it.
"""

import asyncio
from dataclasses import dataclass, field

from .models import PlaybackState, TrackMetadata


@dataclass
class DeviceRecord:
    device_id: str
    name: str = ""
    track: TrackMetadata | None = None
    state: PlaybackState = PlaybackState.UNKNOWN
    # Which source supplied the current values, and whether it was the
    # event-driven one (polling may then only fill gaps)
    track_source: str | None = None
    state_source: str | None = None
    track_authoritative: bool = False
    state_authoritative: bool = False
    # A source reported a real playback status (audio activity then stops
    # driving the state)
    state_observed: bool = False
    # Event-driven source currently has a live player for this device
    bus_attached: bool = False
    last_track_change: float | None = None
    # Binary audio-activity flag and the pending "stopped" deadline
    audio_active: bool | None = None
    inactive_since: float | None = None
    silence_deadline: float | None = None
    connected_at: float = 0.0
    # source id -> last time it reported something real for this device
    seen_by: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "address": self.device_id,
            "name": self.name,
            "state": self.state.value,
            "track": self.track.to_dict() if self.track else None,
            "track_source": self.track_source,
            "state_source": self.state_source,
            "audio_active": self.audio_active,
        }


class DeviceStateStore:

    def __init__(self):
        self.lock = asyncio.Lock()
        self._devices: dict[str, DeviceRecord] = {}

    def get(self, device_id: str) -> DeviceRecord | None:
        return self._devices.get(device_id)

    def create(self, device_id: str, name: str = "", now: float = 0.0) -> DeviceRecord:
        record = DeviceRecord(device_id=device_id, name=name, connected_at=now)
        self._devices[device_id] = record
        return record

    def remove(self, device_id: str) -> DeviceRecord | None:
        return self._devices.pop(device_id, None)

    def ids(self) -> list[str]:
        return list(self._devices)

    def records(self) -> list[DeviceRecord]:
        return list(self._devices.values())

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)
