# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
MPRIS source: asks each org.mpris.MediaPlayer2.* bus name directly via
dbus-send.  Covers players playerctl misses (or hosts without playerctl).

dbus-send --print-reply prints dict entries as

    dict entry(
       string "xesam:artist"
       variant             array [
             string "Artist"
          ]
    )

so values are picked up from the first `string "..."` within a few lines
after the key.
"""

import logging
import re

from ..lib.models import Candidate, PlaybackState, TrackMetadata
from ..lib.shell import have_binary, run_command
from .base import MetadataSource

log = logging.getLogger(__name__)

_PLAYER_RE = re.compile(r'"org\.mpris\.MediaPlayer2\.([\w.\-]+)"')
_STRING_RE = re.compile(r'string\s+"([^"]*)"')
_NUMBER_RE = re.compile(r'(?:u?int(?:32|64)|double)\s+(\d+)')
_KEYS = {
    "xesam:artist": "artist",
    "xesam:title": "title",
    "xesam:album": "album",
    "xesam:genre": "genre",
    "xesam:trackNumber": "track_number",
    "mpris:length": "duration",
}
_LOOKAHEAD = 5


def parse_player_names(output: str) -> list[str]:
    """ListNames reply -> MPRIS player suffixes (e.g. "spotify")."""
    names = []
    for m in _PLAYER_RE.finditer(output):
        if m.group(1) not in names:
            names.append(m.group(1))
    return names


def _value_after(lines: list[str], index: int, pattern: re.Pattern) -> str | None:
    for line in lines[index + 1:index + 1 + _LOOKAHEAD]:
        m = pattern.search(line)
        if m:
            return m.group(1)
        if "dict entry(" in line:
            break
    return None


def parse_metadata(output: str) -> TrackMetadata | None:
    lines = output.splitlines()
    fields = {}
    for i, line in enumerate(lines):
        m = _STRING_RE.search(line)
        if not m or m.group(1) not in _KEYS:
            continue
        key = _KEYS[m.group(1)]
        pattern = _NUMBER_RE if key in ("track_number", "duration") else _STRING_RE
        value = _value_after(lines, i, pattern)
        if value is not None and key not in fields:
            fields[key] = value
    return TrackMetadata.from_fields(fields)


def parse_playback_status(output: str) -> PlaybackState | None:
    m = _STRING_RE.search(output)
    if not m:
        return None
    state = PlaybackState.from_status(m.group(1))
    return state if state is not PlaybackState.UNKNOWN else None


class MprisSource(MetadataSource):
    id = "mpris"
    name = "MPRIS"
    priority = 30

    def __init__(self, timeout: float = 5.0, bus: str = "--session"):
        self.timeout = timeout
        self.bus = bus

    async def available(self) -> bool:
        return have_binary("dbus-send")

    async def _dbus_send(self, dest: str, path: str, method: str, *args: str) -> str:
        return await run_command(
            "dbus-send", self.bus, "--print-reply", f"--dest={dest}", path, method, *args,
            timeout=self.timeout)

    async def _get_property(self, player: str, prop: str) -> str:
        return await self._dbus_send(
            f"org.mpris.MediaPlayer2.{player}", "/org/mpris/MediaPlayer2",
            "org.freedesktop.DBus.Properties.Get",
            "string:org.mpris.MediaPlayer2.Player", f"string:{prop}")

    async def poll(self) -> list[Candidate]:
        output = await self._dbus_send(
            "org.freedesktop.DBus", "/org/freedesktop/DBus", "org.freedesktop.DBus.ListNames")
        candidates = []
        for player in parse_player_names(output):
            track = parse_metadata(await self._get_property(player, "Metadata"))
            state = parse_playback_status(await self._get_property(player, "PlaybackStatus"))
            if track is None and state is None:
                continue
            candidates.append(Candidate(source=self.id, track=track, state=state))
        return candidates
