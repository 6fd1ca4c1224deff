# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
playerctl source: track and status for every MPRIS player playerctl sees.

playerctl doesn't know which Bluetooth device a player belongs to, so its
candidates carry no device id and land on the current device.
"""

import logging
import re

from ..lib.models import Candidate, PlaybackState, TrackMetadata
from ..lib.shell import have_binary, run_command
from .base import MetadataSource

log = logging.getLogger(__name__)

# Matches both `playerctl metadata` table rows ("spotify xesam:artist  Foo")
# and plain "artist: Foo" lines.
_FIELD_RE = re.compile(
    r"^\s*(?:\S+\s+)?(?:xesam:|mpris:)?(?P<key>artist|albumArtist|title|album|genre"
    r"|trackNumber|length)\s*:?\s+(?P<value>.+?)\s*$",
    re.IGNORECASE,
)


def parse_players(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


def parse_metadata(output: str) -> TrackMetadata | None:
    """`playerctl metadata` output -> TrackMetadata, or None if incomplete.

    mpris:length is already in microseconds.  albumArtist only fills in
    when no artist line was seen.
    """
    fields = {}
    album_artist = None
    for line in output.splitlines():
        m = _FIELD_RE.match(line)
        if not m:
            continue
        key, value = m.group("key").lower(), m.group("value")
        if key == "albumartist":
            album_artist = album_artist or value
        elif key == "tracknumber":
            fields["track_number"] = value
        elif key == "length":
            fields["duration"] = value
        else:
            fields.setdefault(key, value)
    if "artist" not in fields and album_artist:
        fields["artist"] = album_artist
    return TrackMetadata.from_fields(fields)


def parse_status(output: str) -> PlaybackState | None:
    state = PlaybackState.from_status(output.strip())
    return state if state is not PlaybackState.UNKNOWN else None


class PlayerctlSource(MetadataSource):
    id = "playerctl"
    name = "playerctl"
    priority = 20

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def available(self) -> bool:
        return have_binary("playerctl")

    async def poll(self) -> list[Candidate]:
        output = await run_command("playerctl", "--list-all", timeout=self.timeout)
        candidates = []
        for player in parse_players(output):
            track = parse_metadata(await run_command(
                "playerctl", f"--player={player}", "metadata", timeout=self.timeout))
            if track is None:
                track = await self._single_fields(player)
            state = parse_status(await run_command(
                "playerctl", f"--player={player}", "status", timeout=self.timeout))
            if track is None and state is None:
                continue
            log.debug("playerctl %s: %s / %s", player,
                      track.formatted if track else "-", state.value if state else "-")
            candidates.append(Candidate(source=self.id, track=track, state=state))
        return candidates

    async def _single_fields(self, player: str) -> TrackMetadata | None:
        # Some players only answer per-field queries
        fields = {}
        for key in ("artist", "title", "album"):
            fields[key] = (await run_command(
                "playerctl", f"--player={player}", "metadata", key,
                timeout=self.timeout)).strip()
        return TrackMetadata.from_fields(fields)
