# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
bluetoothctl source: device presence plus per-device track and status.

`bluetoothctl devices Connected` is the primary enumeration of connected
devices; `bluetoothctl info <mac>` carries the AVRCP track fields when the
phone exposes them.  Output varies between BlueZ versions, so parsing is
line-oriented and ignores anything it doesn't recognise.
"""

import logging
import re

from ..lib.models import Candidate, DeviceInfo, PlaybackState, TrackMetadata
from ..lib.shell import have_binary, run_command, run_output
from .base import MetadataSource

log = logging.getLogger(__name__)

MAC_RE = re.compile(r"([0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5})")
_DEVICE_RE = re.compile(r"^\s*Device\s+([0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5})\s*(.*?)\s*$")
_INFO_RE = re.compile(
    r"^\s*(?:Track\.)?(?P<key>Artist|Title|Album|Genre|TrackNumber|NumberOfTracks|Track"
    r"|Duration|Status|Name|Alias)\s*:\s*(?P<value>.*?)\s*$")
_INT_RE = re.compile(r"\((\d+)\)\s*$|^(\d+)$")


def parse_devices(output: str) -> list[DeviceInfo]:
    """`Device AA:BB:CC:DD:EE:FF Phone name` lines -> DeviceInfo list."""
    devices = []
    seen = set()
    for line in output.splitlines():
        m = _DEVICE_RE.match(line)
        if not m:
            continue
        address = m.group(1).upper()
        if address in seen:
            continue
        seen.add(address)
        devices.append(DeviceInfo(address, m.group(2)))
    return devices


def _int_value(value: str) -> int | None:
    # "240000" or "0x0003a980 (240000)"
    m = _INT_RE.search(value)
    if not m:
        return None
    return int(m.group(1) or m.group(2))


def parse_info(output: str) -> dict:
    """`bluetoothctl info` / `player.show` text -> {track, state, name}.

    Duration is reported in milliseconds and returned in microseconds.
    Missing pieces come back as None.
    """
    fields = {}
    status = None
    name = ""
    for line in output.splitlines():
        m = _INFO_RE.match(line)
        if not m:
            continue
        key, value = m.group("key"), m.group("value")
        if key == "Status":
            status = value
        elif key == "Name":
            name = value
        elif key == "Alias":
            name = name or value
        elif key in ("Track", "TrackNumber"):
            fields["track_number"] = _int_value(value)
        elif key == "Duration":
            ms = _int_value(value)
            fields["duration"] = ms * 1000 if ms else None
        elif key == "NumberOfTracks":
            continue
        else:
            fields[key.lower()] = value

    state = PlaybackState.from_status(status)
    return {
        "track": TrackMetadata.from_fields(fields),
        "state": state if state is not PlaybackState.UNKNOWN else None,
        "name": name,
    }


class BluetoothctlSource(MetadataSource):
    id = "bluetoothctl"
    name = "bluetoothctl"
    priority = 10

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._devices: list[DeviceInfo] = []

    async def available(self) -> bool:
        return have_binary("bluetoothctl")

    async def list_devices(self) -> list[DeviceInfo] | None:
        if not have_binary("bluetoothctl"):
            return None
        output = await run_output("bluetoothctl", "devices", "Connected", timeout=self.timeout)
        if output is None:
            log.debug("bluetoothctl enumeration failed, keeping known devices")
            return None
        self._devices = parse_devices(output)
        return self._devices

    async def poll(self) -> list[Candidate]:
        candidates = []
        devices = self._devices or (await self.list_devices() or [])
        for device in devices:
            output = await run_command("bluetoothctl", "info", device.address,
                                       timeout=self.timeout)
            if not output:
                continue
            info = parse_info(output)
            if info["track"] is None and info["state"] is None:
                continue
            candidates.append(Candidate(
                source=self.id,
                device_id=device.address,
                track=info["track"],
                state=info["state"],
                name=device.name or info["name"],
            ))
        return candidates
