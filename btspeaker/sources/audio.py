# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Audio-activity source: a yes/no "is sound coming out" flag.

Used when no source reports a playback status (phones without AVRCP
metadata).  Three checks, any one positive wins:
  - bluealsa-aplay using more than a trickle of CPU (`ps aux`)
  - a PulseAudio / PipeWire sink input exists (`pactl list sink-inputs short`)
  - an ALSA playback substream is RUNNING (/proc/asound)
"""

import glob
import logging

from ..lib.models import Candidate
from ..lib.shell import have_binary, read_file, run_command
from .base import MetadataSource

log = logging.getLogger(__name__)

CPU_THRESHOLD = 0.5
PCM_STATUS_GLOB = "/proc/asound/card*/pcm*p/sub*/status"


def parse_ps_cpu(output: str, process: str = "bluealsa-aplay",
                 threshold: float = CPU_THRESHOLD) -> bool:
    """True when any *process* line in `ps aux` output is above *threshold* %CPU."""
    for line in output.splitlines():
        if process not in line:
            continue
        parts = line.split()
        if len(parts) < 11:
            continue
        try:
            cpu = float(parts[2])
        except ValueError:
            continue
        if cpu > threshold:
            return True
    return False


def parse_sink_inputs(output: str) -> bool:
    return bool(output.strip())


def parse_pcm_status(text: str) -> bool:
    return "RUNNING" in text


class AudioActivitySource(MetadataSource):
    id = "audio"
    name = "Audio activity"
    priority = 90
    cadence = "audio"

    def __init__(self, timeout: float = 5.0, pcm_glob: str = PCM_STATUS_GLOB):
        self.timeout = timeout
        self.pcm_glob = pcm_glob

    async def available(self) -> bool:
        return have_binary("ps") or have_binary("pactl")

    async def is_active(self) -> bool:
        if parse_ps_cpu(await run_command("ps", "aux", timeout=self.timeout)):
            log.debug("Audio activity: bluealsa-aplay busy")
            return True
        if parse_sink_inputs(await run_command("pactl", "list", "sink-inputs", "short",
                                               timeout=self.timeout)):
            log.debug("Audio activity: sink input present")
            return True
        for path in glob.glob(self.pcm_glob):
            if parse_pcm_status(await read_file(path)):
                log.debug("Audio activity: %s running", path)
                return True
        return False

    async def poll(self) -> list[Candidate]:
        return [Candidate(source=self.id, audio_active=await self.is_active())]
