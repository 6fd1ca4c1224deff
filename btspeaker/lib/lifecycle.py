# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Device lifecycle: connect / disconnect transitions and current-device promotion.

Every method here mutates the store, so callers must hold ``store.lock``.
Methods return the events they produced; publishing is the caller's job.
"""

import logging
import time

from .models import DeviceConnected, DeviceDisconnected, DeviceInfo
from .store import DeviceStateStore

log = logging.getLogger(__name__)


class DeviceLifecycleTracker:

    def __init__(self, store: DeviceStateStore, clock=time.monotonic):
        self.store = store
        self._clock = clock
        self.current: str | None = None

    def observe(self, device_id: str, name: str = "") -> list:
        """Connection evidence for *device_id*; creates the record if new."""
        record = self.store.get(device_id)
        if record is not None:
            if name and not record.name:
                record.name = name
            return []

        self.store.create(device_id, name, self._clock())
        log.info("Device connected: %s%s", device_id, f" ({name})" if name else "")
        if self.current is None:
            self.current = device_id
            log.info("Current device: %s", device_id)
        return [DeviceConnected(device_id, name)]

    def reconcile(self, devices: list[DeviceInfo], protected=()) -> list:
        """Apply a full enumeration of connected devices.

        Tracked devices missing from *devices* are disconnected unless they
        are in *protected* (an event-driven source still holds a player).
        """
        events = []
        present = set()
        for device in devices:
            present.add(device.address)
            events += self.observe(device.address, device.name)
        for device_id in self.store.ids():
            if device_id not in present and device_id not in protected:
                events += self.disconnect(device_id)
        return events

    def disconnect(self, device_id: str) -> list:
        record = self.store.remove(device_id)
        if record is None:
            return []
        log.info("Device disconnected: %s%s", device_id,
                 f" ({record.name})" if record.name else "")
        if self.current == device_id:
            remaining = self.store.ids()
            self.current = remaining[0] if remaining else None
            if self.current:
                log.info("Current device: %s", self.current)
        return [DeviceDisconnected(device_id, record.name)]
