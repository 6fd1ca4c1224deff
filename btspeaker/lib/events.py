# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
EventBus: typed fan-out of canonical events to consumers.

publish() is synchronous and never waits for a handler: each subscriber owns
an asyncio.Queue drained by its own task, so a slow consumer (an LLM call, a
speech render) never holds up the reconciler that published the event, and
every subscriber sees events in publish order.

Usage:
    bus = EventBus()
    sub = bus.subscribe(on_track, TrackChanged, name="commentary")
    bus.publish(TrackChanged(...))
    await bus.join()      # wait until every subscriber caught up
    await bus.close()     # cancel every subscriber
"""

import asyncio
import inspect
import logging

log = logging.getLogger(__name__)


class Subscription:
    """One consumer of the bus, with its own queue and worker task."""

    def __init__(self, handler, types: tuple, name: str):
        self.handler = handler
        self.types = types
        self.name = name
        self.delivered = 0
        self.failed = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task = asyncio.create_task(self._run(), name=f"bus:{name}")

    def wants(self, event) -> bool:
        return not self.types or isinstance(event, self.types)

    def deliver(self, event) -> None:
        self._queue.put_nowait(event)

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                result = self.handler(event)
                if inspect.isawaitable(result):
                    await result
                self.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                log.exception("Subscriber %s failed on %s", self.name, type(event).__name__)
            finally:
                self._queue.task_done()

    async def join(self):
        await self._queue.join()

    async def cancel(self):
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class EventBus:

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._closed = False
        self.published = 0

    def subscribe(self, handler, *types, name: str | None = None) -> Subscription:
        """Register *handler* for events of *types* (all events if none given).

        Must be called from within the running event loop.
        """
        if self._closed:
            raise RuntimeError("EventBus is closed")
        sub = Subscription(handler, types, name or getattr(handler, "__qualname__", "handler"))
        self._subscriptions.append(sub)
        log.debug("Subscribed %s to %s", sub.name,
                  ", ".join(t.__name__ for t in types) or "all events")
        return sub

    async def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
        await sub.cancel()

    def publish(self, event) -> None:
        if self._closed:
            log.debug("Dropping %s, bus closed", type(event).__name__)
            return
        self.published += 1
        for sub in self._subscriptions:
            if sub.wants(event):
                sub.deliver(event)

    async def join(self) -> None:
        for sub in list(self._subscriptions):
            await sub.join()

    async def close(self) -> None:
        """Unsubscribe everyone, in subscription order."""
        self._closed = True
        subs, self._subscriptions = self._subscriptions, []
        for sub in subs:
            await sub.cancel()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
