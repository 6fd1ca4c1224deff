# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
BlueZ D-Bus source: event-driven track and status from org.bluez.MediaPlayer1.

Listens on the system bus for:
  InterfacesAdded    a phone exposed an AVRCP player -> watch it
  InterfacesRemoved  the player went away -> release the device to polling
  PropertiesChanged  Track / Status changed on a watched player

dbus-python delivers signals on a GLib main loop, which runs in a daemon
thread here.  Each observation crosses into asyncio via
loop.call_soon_threadsafe() onto a queue drained by a task in the service
loop, so nothing from the GLib thread touches the store directly.

dbus-python and PyGObject are optional: without them (or without a reachable
system bus) available() is False and the service runs polling-only.
"""

import asyncio
import logging
import re
import threading

from ..lib.errors import BtSpeakerError
from ..lib.models import Candidate, PlaybackState, TrackMetadata
from .base import MetadataSource

try:
    import dbus
    from dbus.mainloop.glib import DBusGMainLoop
    from gi.repository import GLib
    HAS_DBUS = True
except ImportError:
    HAS_DBUS = False

log = logging.getLogger(__name__)

BLUEZ = "org.bluez"
PLAYER_IFACE = "org.bluez.MediaPlayer1"
DEVICE_IFACE = "org.bluez.Device1"
PROPS_IFACE = "org.freedesktop.DBus.Properties"
OBJECT_MANAGER_IFACE = "org.freedesktop.DBus.ObjectManager"

_PATH_RE = re.compile(r"dev_([0-9A-Fa-f]{2}(?:_[0-9A-Fa-f]{2}){5})")


def address_from_path(path: str) -> str | None:
    """/org/bluez/hci0/dev_AA_BB_CC_DD_EE_FF/player0 -> AA:BB:CC:DD:EE:FF"""
    m = _PATH_RE.search(str(path))
    return m.group(1).replace("_", ":").upper() if m else None


def candidate_from_properties(address: str, props: dict, name: str = "") -> Candidate:
    """MediaPlayer1 properties (full or a PropertiesChanged delta) -> Candidate.

    Always returns a candidate so that merely seeing a player attaches the
    device to the bus; track / state stay None when not present.
    """
    track = None
    if "Track" in props:
        track = TrackMetadata.from_bluez(dict(props["Track"]))
    state = None
    if "Status" in props:
        state = PlaybackState.from_status(str(props["Status"]))
        if state is PlaybackState.UNKNOWN:
            state = None
    return Candidate(source=BluezSource.id, device_id=address, track=track, state=state,
                     event_driven=True, name=name)


class BluezSource(MetadataSource):
    id = "bluez"
    name = "BlueZ D-Bus"
    priority = 0
    event_driven = True

    def __init__(self):
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue | None = None
        self._pump: asyncio.Task | None = None
        self._emit = None
        self._release = None
        self._bus = None
        self._glib_loop = None
        self._thread: threading.Thread | None = None
        # address -> PropertiesChanged signal match, one per device
        self._watchers: dict[str, object] = {}
        self._ready = threading.Event()
        self._error: Exception | None = None

    async def available(self) -> bool:
        if not HAS_DBUS:
            log.info("dbus-python / PyGObject not installed, BlueZ events disabled")
            return False
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._probe)
        except dbus.exceptions.DBusException as e:
            log.warning("BlueZ not reachable on the system bus: %s", e)
            return False
        return True

    def _probe(self):
        bus = dbus.SystemBus()
        try:
            manager = dbus.Interface(bus.get_object(BLUEZ, "/"), OBJECT_MANAGER_IFACE)
            manager.GetManagedObjects()
        finally:
            bus.close()

    async def poll(self) -> list[Candidate]:
        return []  # everything arrives through start()

    @property
    def watched(self) -> list[str]:
        return list(self._watchers)

    async def start(self, emit, release=None) -> None:
        """Begin listening. *emit* receives Candidates, *release* device ids."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._emit = emit
        self._release = release
        self._pump = asyncio.create_task(self._drain(), name="bluez-pump")
        self._thread = threading.Thread(target=self._run_glib, name="bluez-glib", daemon=True)
        self._thread.start()
        started = await self._loop.run_in_executor(None, self._ready.wait, 5.0)
        if self._error is not None or not started:
            reason = self._error or "GLib loop did not come up within 5s"
            await self.stop()
            raise BtSpeakerError(f"BlueZ listener failed to start: {reason}")
        log.info("BlueZ listener started (%d player(s))", len(self._watchers))

    async def stop(self) -> None:
        if self._glib_loop is not None:
            self._glib_loop.quit()
        if self._thread is not None:
            await asyncio.get_running_loop().run_in_executor(None, self._thread.join, 2.0)
            self._thread = None
        for match in self._watchers.values():
            match.remove()
        self._watchers.clear()
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None
        log.info("BlueZ listener stopped")

    # -- asyncio side --------------------------------------------------------

    def _hand_off(self, kind: str, payload) -> None:
        """Called from the GLib thread."""
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (kind, payload))

    async def _drain(self):
        while True:
            kind, payload = await self._queue.get()
            try:
                if kind == "candidate":
                    await self._emit(payload)
                elif kind == "release" and self._release is not None:
                    await self._release(payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Failed to apply BlueZ %s", kind)

    # -- GLib thread ---------------------------------------------------------

    def _run_glib(self):
        try:
            DBusGMainLoop(set_as_default=True)
            self._bus = dbus.SystemBus()
            self._bus.add_signal_receiver(
                self._on_interfaces_added, dbus_interface=OBJECT_MANAGER_IFACE,
                signal_name="InterfacesAdded", bus_name=BLUEZ)
            self._bus.add_signal_receiver(
                self._on_interfaces_removed, dbus_interface=OBJECT_MANAGER_IFACE,
                signal_name="InterfacesRemoved", bus_name=BLUEZ)
            self._discover()
            self._glib_loop = GLib.MainLoop()
        except dbus.exceptions.DBusException as e:
            self._error = e
            return
        finally:
            self._ready.set()
        self._glib_loop.run()

    def _discover(self):
        manager = dbus.Interface(self._bus.get_object(BLUEZ, "/"), OBJECT_MANAGER_IFACE)
        for path, interfaces in manager.GetManagedObjects().items():
            if PLAYER_IFACE in interfaces:
                self._watch_player(str(path), interfaces[PLAYER_IFACE])

    def _on_interfaces_added(self, path, interfaces):
        if PLAYER_IFACE in interfaces:
            log.info("Media player appeared: %s", path)
            self._watch_player(str(path), interfaces[PLAYER_IFACE])

    def _on_interfaces_removed(self, path, interfaces):
        if PLAYER_IFACE not in interfaces:
            return
        address = address_from_path(path)
        match = self._watchers.pop(address, None) if address else None
        if match is None:
            return
        match.remove()
        log.info("Media player gone: %s", address)
        self._hand_off("release", address)

    def _watch_player(self, path: str, props: dict):
        address = address_from_path(path)
        if not address or address in self._watchers:
            return
        self._watchers[address] = self._bus.add_signal_receiver(
            lambda iface, changed, invalidated: self._on_properties(address, iface, changed),
            dbus_interface=PROPS_IFACE, signal_name="PropertiesChanged",
            path=path, bus_name=BLUEZ)
        self._hand_off("candidate", candidate_from_properties(
            address, props, name=self._device_name(path)))

    def _on_properties(self, address: str, iface, changed):
        if iface != PLAYER_IFACE or not ("Track" in changed or "Status" in changed):
            return
        self._hand_off("candidate", candidate_from_properties(address, changed))

    def _device_name(self, player_path: str) -> str:
        device_path = player_path.rsplit("/", 1)[0]
        try:
            props = dbus.Interface(self._bus.get_object(BLUEZ, device_path), PROPS_IFACE)
            return str(props.Get(DEVICE_IFACE, "Alias"))
        except dbus.exceptions.DBusException:
            return ""
