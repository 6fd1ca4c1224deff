# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
PollingLoop: drives the polling sources on their fixed cadences.

Three loops share one stop event:
  presence   every presence_interval   first enumerating source that
                                       answers decides who is connected
  metadata   every poll_interval       all metadata sources in parallel,
                                       applied in priority order
  audio      every audio_check_interval
                                       audio-activity flag

A broken source only costs its own contribution to a cycle.  A cycle that
blows up as a whole waits error_backoff before the next attempt.
"""

import asyncio
import logging
from dataclasses import replace

from ..sources.base import MetadataSource
from .models import Candidate
from .reconciler import Reconciler

log = logging.getLogger(__name__)


class PollingLoop:

    def __init__(self, reconciler: Reconciler, sources: list[MetadataSource], *,
                 poll_interval: float = 3.0, presence_interval: float = 2.0,
                 audio_check_interval: float = 10.0, source_timeout: float = 5.0,
                 error_backoff: float = 5.0):
        self.reconciler = reconciler
        polling = sorted((s for s in sources if not s.event_driven), key=lambda s: s.priority)
        self.metadata_sources = [s for s in polling if s.cadence == "metadata"]
        self.audio_sources = [s for s in polling if s.cadence == "audio"]
        self.presence_sources = polling
        self.poll_interval = poll_interval
        self.presence_interval = presence_interval
        self.audio_check_interval = audio_check_interval
        self.source_timeout = source_timeout
        self.error_backoff = error_backoff
        self.cycles = {"presence": 0, "metadata": 0, "audio": 0}

    async def run(self, stop: asyncio.Event):
        loops = [self._loop("presence", self.presence_interval, self.presence_cycle, stop)]
        if self.metadata_sources:
            loops.append(self._loop("metadata", self.poll_interval, self.metadata_cycle, stop))
        if self.audio_sources:
            loops.append(self._loop("audio", self.audio_check_interval, self.audio_cycle, stop))
        await asyncio.gather(*loops)

    async def _loop(self, name: str, interval: float, cycle, stop: asyncio.Event):
        log.info("%s loop started (every %.0fs)", name.capitalize(), interval)
        while not stop.is_set():
            delay = interval
            try:
                await cycle()
                self.cycles[name] += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("%s cycle failed, retrying in %.0fs", name.capitalize(),
                              self.error_backoff)
                delay = self.error_backoff
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        log.info("%s loop stopped", name.capitalize())

    async def _bounded(self, source: MetadataSource, coro, empty):
        try:
            return await asyncio.wait_for(coro, timeout=self.source_timeout)
        except asyncio.TimeoutError:
            log.debug("%s timed out after %.0fs", source.id, self.source_timeout)
        except Exception as e:
            log.warning("%s failed: %s", source.id, e)
        return empty

    # -- cycles --------------------------------------------------------------

    async def presence_cycle(self):
        for source in self.presence_sources:
            devices = await self._bounded(source, source.list_devices(), None)
            if devices is None:
                continue
            await self.reconciler.submit_devices(source.id, devices)
            return

    async def metadata_cycle(self):
        results = await asyncio.gather(
            *(self._bounded(s, s.poll(), []) for s in self.metadata_sources))
        claimed = set()
        for source, candidates in zip(self.metadata_sources, results):
            for candidate in candidates:
                await self._submit(candidate, claimed)

    async def audio_cycle(self):
        for source in self.audio_sources:
            for candidate in await self._bounded(source, source.poll(), []):
                await self._submit(candidate, set())

    async def _submit(self, candidate: Candidate, claimed: set):
        # First valid track per device wins the cycle; states always go through
        if candidate.track is not None:
            key = candidate.device_id or self.reconciler.current_device
            if not candidate.track.is_valid or key in claimed:
                candidate = replace(candidate, track=None)
            else:
                claimed.add(key)
        if candidate.device_id is None and candidate.track is None \
                and candidate.state is None and candidate.audio_active is None:
            return
        await self.reconciler.submit(candidate)
