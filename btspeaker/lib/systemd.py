# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""systemd notify protocol: readiness, status line and watchdog heartbeat.

Every call silently no-ops when NOTIFY_SOCKET is unset (dev mode, tests).

Usage:
    from btspeaker.lib.systemd import notify_ready, watchdog_loop
    notify_ready("Monitoring 1 device")
    asyncio.create_task(watchdog_loop(stop_event))
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def sd_notify(msg: str) -> bool:
    """Send *msg* to the notify socket. Returns False when there is none."""
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.debug("sd_notify(%r) failed: %s", msg, e)
        return False
    finally:
        sock.close()
    return True


def notify_ready(status: str = "") -> None:
    sd_notify(f"READY=1\nSTATUS={status}" if status else "READY=1")


def notify_status(status: str) -> None:
    sd_notify(f"STATUS={status}")


def notify_stopping() -> None:
    sd_notify("STOPPING=1")


async def watchdog_loop(stop: asyncio.Event, interval: float = 20):
    """Send WATCHDOG=1 every *interval* seconds until *stop* is set."""
    logger.info("Watchdog started (interval=%ds)", interval)
    while not stop.is_set():
        sd_notify("WATCHDOG=1")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
