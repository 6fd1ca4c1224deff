# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
MetadataSource: interface every track / state / presence source implements.

Subclass contract:

    class MySource(MetadataSource):
        id       = "demo"      # config name, also stamped on candidates
        name     = "Demo"      # log display name
        priority = 50          # lower wins a metadata cycle

        async def poll(self) -> list[Candidate]: ...

Optional overrides:
    list_devices()   return connected devices, or None if not enumerating
    available()      False when the backing tool is missing
    start(emit, release)
                     event-driven sources register and push candidates via
                       emit(), and hand back devices they lost via release()
    stop()
"""

from abc import ABC, abstractmethod

from ..lib.models import Candidate, DeviceInfo


class MetadataSource(ABC):
    id: str = ""
    name: str = ""
    priority: int = 100
    event_driven: bool = False
    # Which polling loop drives poll(): "metadata" or "audio"
    cadence: str = "metadata"

    @abstractmethod
    async def poll(self) -> list[Candidate]:
        """Return this cycle's candidates. Never raises for a broken tool."""

    async def list_devices(self) -> list[DeviceInfo] | None:
        return None  # not an enumerating source

    async def available(self) -> bool:
        return True

    async def start(self, emit, release=None) -> None:
        pass  # polling sources have nothing to start

    async def stop(self) -> None:
        pass

    def __repr__(self):
        return f"<{type(self).__name__} {self.id} priority={self.priority}>"
