"""
Metadata sources for BT Speaker.

Each source observes one signal about the connected phone (its AVRCP player
on D-Bus, a CLI tool's view of it, or raw audio activity) and turns it into
Candidates for the reconciler.  The factory ``create_sources`` reads
config.json and returns the enabled ones, most authoritative first.

Supported sources (lower priority wins):
  - ``bluez``         (0)  – BlueZ MediaPlayer1 signals, event-driven
  - ``bluetoothctl``  (10) – connected devices + `bluetoothctl info`
  - ``playerctl``     (20) – playerctl metadata / status
  - ``mpris``         (30) – dbus-send against org.mpris.MediaPlayer2.*
  - ``audio``         (90) – ps / pactl / ALSA activity flag
"""

import logging

from ..lib.config import KNOWN_SOURCES, cfg
from .audio import AudioActivitySource
from .base import MetadataSource
from .bluetoothctl import BluetoothctlSource
from .bluez import BluezSource
from .mpris import MprisSource
from .playerctl import PlayerctlSource

logger = logging.getLogger(__name__)

__all__ = [
    "MetadataSource",
    "AudioActivitySource",
    "BluetoothctlSource",
    "BluezSource",
    "MprisSource",
    "PlayerctlSource",
    "create_sources",
]


def create_sources(enabled: list[str] | None = None) -> list[MetadataSource]:
    """Build the enabled sources, ordered by priority.

    Reads from config.json:
      sources.enabled        – list of source names (default: all of them)
      timing.source_timeout  – per-command timeout in seconds (default 5)
    """
    if enabled is None:
        enabled = cfg("sources", "enabled", default=list(KNOWN_SOURCES))
    timeout = float(cfg("timing", "source_timeout", default=5))

    sources: list[MetadataSource] = []
    for name in enabled:
        name = str(name).lower()
        if name == "bluez":
            sources.append(BluezSource())
        elif name == "bluetoothctl":
            sources.append(BluetoothctlSource(timeout=timeout))
        elif name == "playerctl":
            sources.append(PlayerctlSource(timeout=timeout))
        elif name == "mpris":
            sources.append(MprisSource(timeout=timeout))
        elif name == "audio":
            sources.append(AudioActivitySource(timeout=timeout))
        else:
            logger.warning("Unknown source '%s', skipping", name)

    sources.sort(key=lambda s: s.priority)
    logger.info("Sources: %s", ", ".join(s.id for s in sources) or "none")
    return sources
