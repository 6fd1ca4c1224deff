# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Core data model shared by sources, the reconciler and event consumers.

TrackMetadata    immutable track description; equality is (artist, title, album)
PlaybackState    AVRCP-style playback status
Candidate        one unvalidated observation from one source
DeviceInfo       a connected device as reported by an enumerating source
TrackChanged / PlaybackStateChanged / DeviceConnected / DeviceDisconnected
                 canonical events emitted by the reconciler
"""

import time
from dataclasses import dataclass, field
from enum import Enum

# Values sources use when they don't actually know the field
PLACEHOLDERS = {"", "unknown", "unknown artist", "unknown track", "unknown title",
                "unknown album", "n/a", "none", "null", "(null)"}


def is_placeholder(value: str | None) -> bool:
    return value is None or value.strip().lower() in PLACEHOLDERS


def format_duration(micros: int | None) -> str:
    """Microseconds -> M:SS (or H:MM:SS)."""
    if not micros or micros <= 0:
        return "0:00"
    total = micros // 1_000_000
    if total >= 3600:
        return f"{total // 3600}:{(total % 3600) // 60:02d}:{total % 60:02d}"
    return f"{total // 60}:{total % 60:02d}"


class PlaybackState(Enum):
    UNKNOWN = "unknown"
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"
    SEEKING_FORWARD = "forward-seek"
    SEEKING_REVERSE = "reverse-seek"

    @classmethod
    def from_status(cls, status: str | None) -> "PlaybackState":
        """Map a status string from BlueZ / playerctl / MPRIS to a state."""
        if not status:
            return cls.UNKNOWN
        try:
            return cls(status.strip().lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class TrackMetadata:
    artist: str
    title: str
    album: str = ""
    genre: str = field(default="", compare=False)
    track_number: int | None = field(default=None, compare=False)
    duration: int | None = field(default=None, compare=False)  # microseconds

    @property
    def is_valid(self) -> bool:
        return not is_placeholder(self.artist) and not is_placeholder(self.title)

    @property
    def formatted(self) -> str:
        return f"{self.artist} - {self.title}"

    @property
    def detailed(self) -> str:
        parts = [self.formatted]
        if not is_placeholder(self.album):
            parts.append(f"album: {self.album}")
        if self.genre:
            parts.append(f"genre: {self.genre}")
        if self.duration:
            parts.append(f"length: {format_duration(self.duration)}")
        return ", ".join(parts)

    def to_dict(self) -> dict:
        return {
            "artist": self.artist,
            "title": self.title,
            "album": self.album,
            "genre": self.genre,
            "track_number": self.track_number,
            "duration": self.duration,
        }

    @classmethod
    def from_fields(cls, fields: dict) -> "TrackMetadata | None":
        """Build from a loose {artist, title, album, ...} dict, or None if invalid.

        Placeholder values are dropped, so a half-filled dict never produces
        a track that could overwrite a real one.
        """
        def _clean(key):
            value = fields.get(key)
            if value is None:
                return ""
            value = str(value).strip().strip("\"'")
            return "" if is_placeholder(value) else value

        track = cls(
            artist=_clean("artist"),
            title=_clean("title"),
            album=_clean("album"),
            genre=_clean("genre"),
            track_number=_to_int(fields.get("track_number")),
            duration=_to_int(fields.get("duration")),
        )
        return track if track.is_valid else None

    @classmethod
    def from_bluez(cls, track: dict) -> "TrackMetadata | None":
        """Build from a BlueZ MediaPlayer1 ``Track`` dictionary.

        BlueZ reports Duration in milliseconds.
        """
        duration_ms = _to_int(track.get("Duration"))
        return cls.from_fields({
            "artist": track.get("Artist"),
            "title": track.get("Title"),
            "album": track.get("Album"),
            "genre": track.get("Genre"),
            "track_number": track.get("TrackNumber"),
            "duration": duration_ms * 1000 if duration_ms else None,
        })


def _to_int(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class DeviceInfo:
    address: str
    name: str = ""


@dataclass(frozen=True)
class Candidate:
    """An observation from one source, not yet accepted.

    device_id None means "whatever device is current", used by sources that
    see players or audio streams but not the Bluetooth address behind them.
    """
    source: str
    device_id: str | None = None
    track: TrackMetadata | None = None
    state: PlaybackState | None = None
    audio_active: bool | None = None
    event_driven: bool = False
    name: str = ""


# ---------------------------------------------------------------------------
# Canonical events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TrackChanged:
    device_id: str
    current: TrackMetadata
    previous: TrackMetadata | None
    at: float = field(default_factory=time.time, compare=False)


@dataclass(frozen=True)
class PlaybackStateChanged:
    device_id: str
    current: PlaybackState
    previous: PlaybackState
    track: TrackMetadata | None
    at: float = field(default_factory=time.time, compare=False)


@dataclass(frozen=True)
class DeviceConnected:
    device_id: str
    name: str = ""
    at: float = field(default_factory=time.time, compare=False)


@dataclass(frozen=True)
class DeviceDisconnected:
    device_id: str
    name: str = ""
    at: float = field(default_factory=time.time, compare=False)


Event = TrackChanged | PlaybackStateChanged | DeviceConnected | DeviceDisconnected
