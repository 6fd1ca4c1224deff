# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Audio routing: make sure the phone's A2DP stream actually reaches the DAC.

Runs the configured ``audio_routing.command`` (e.g. a script restarting
bluealsa-aplay for the device) when the current device connects and when
playback starts from STOPPED.  ``{address}`` in the command is replaced with
the device's MAC.  Runs at most once per cooldown.
"""

import logging
import shlex
import time

from ..lib.models import DeviceConnected, PlaybackState, PlaybackStateChanged
from ..lib.shell import run_checked

log = logging.getLogger(__name__)


class AudioRouting:

    def __init__(self, command, *, cooldown: float = 15.0, timeout: float = 30.0,
                 current_device=None, clock=time.monotonic):
        if isinstance(command, str):
            command = shlex.split(command)
        self.command: list[str] = list(command or [])
        self.cooldown = cooldown
        self.timeout = timeout
        self._current_device = current_device or (lambda: None)
        self._clock = clock
        self._last_run: float | None = None
        self.runs = 0

    @property
    def enabled(self) -> bool:
        return bool(self.command)

    async def handle(self, event):
        if isinstance(event, DeviceConnected):
            current = self._current_device()
            if current is None or current == event.device_id:
                await self.ensure(event.device_id)
        elif isinstance(event, PlaybackStateChanged):
            if event.current is PlaybackState.PLAYING and event.previous is PlaybackState.STOPPED:
                await self.ensure(event.device_id)

    async def ensure(self, address: str) -> bool:
        """Run the routing command unless it ran within the cooldown."""
        if not self.enabled:
            return False
        now = self._clock()
        if self._last_run is not None and now - self._last_run < self.cooldown:
            log.debug("Audio routing ran %.0fs ago, skipping", now - self._last_run)
            return False
        self._last_run = now
        args = [part.replace("{address}", address) for part in self.command]
        log.info("Routing audio for %s: %s", address, " ".join(args))
        try:
            await run_checked(*args, timeout=self.timeout)
        except OSError as e:
            log.warning("Audio routing failed: %s", e)
            return False
        self.runs += 1
        return True
