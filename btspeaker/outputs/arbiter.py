# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
OutputArbiter: one voice at a time, newest lines win.

enqueue() never blocks: requests go into a small deque (default 2) that
drops the oldest entry when full, so a burst of track skips ends up saying
the latest thing rather than reading out a backlog.  A single worker task
renders one request at a time under a lock; a failed render is retried once
on the fallback engine and then dropped.

    arbiter = OutputArbiter(create_speech_engine("piper"), fallback=EspeakEngine())
    arbiter.start()
    arbiter.enqueue("Oh great, more synth-pop.")
    await arbiter.stop()
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field

from ..lib.errors import SpeechError
from .speech import SpeechEngine

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpeechRequest:
    text: str
    enqueued_at: float = field(default_factory=time.monotonic)


class OutputArbiter:

    def __init__(self, engine: SpeechEngine, fallback: SpeechEngine | None = None, *,
                 capacity: int = 2, stop_timeout: float = 10.0):
        self.engine = engine
        self.fallback = fallback
        self.capacity = max(1, capacity)
        self.stop_timeout = stop_timeout
        self._pending: deque[SpeechRequest] = deque(maxlen=self.capacity)
        self._wakeup = asyncio.Event()
        self._lock = asyncio.Lock()
        self._worker: asyncio.Task | None = None
        self._current: SpeechRequest | None = None
        self._stopping = False
        self.spoken = 0
        self.dropped = 0
        self.failed = 0

    @property
    def speaking(self) -> bool:
        return self._current is not None

    def pending(self) -> list[SpeechRequest]:
        return list(self._pending)

    def enqueue(self, text: str) -> bool:
        """Queue *text* for speaking. Returns False if it was ignored."""
        if not text or not text.strip() or self._stopping:
            return False
        if len(self._pending) == self.capacity:
            evicted = self._pending[0]
            self.dropped += 1
            log.debug("Speech queue full, dropping: %s", evicted.text)
        self._pending.append(SpeechRequest(text.strip()))
        self._wakeup.set()
        return True

    def start(self) -> None:
        if self._worker is None:
            self._stopping = False
            self._worker = asyncio.create_task(self._run(), name="speech-worker")
            log.info("Speech output started (%s%s)", self.engine.name,
                     f", fallback {self.fallback.name}" if self.fallback else "")

    async def stop(self) -> None:
        """Discard pending lines, let the current one finish, stop the worker."""
        self._stopping = True
        discarded = len(self._pending)
        self._pending.clear()
        if discarded:
            log.info("Discarded %d pending speech request(s)", discarded)
        if self._worker is None:
            return
        if self._current is not None:
            try:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.stop_timeout)
                self._lock.release()
            except asyncio.TimeoutError:
                log.warning("Speech still running after %.0fs, cancelling", self.stop_timeout)
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def join(self) -> None:
        """Wait until the queue is empty and nothing is speaking (for tests)."""
        while self._pending or self._current is not None:
            await asyncio.sleep(0.01)

    async def _run(self):
        while True:
            if not self._pending:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            request = self._pending.popleft()
            async with self._lock:
                self._current = request
                try:
                    await self._render(request)
                finally:
                    self._current = None

    async def _render(self, request: SpeechRequest):
        waited = time.monotonic() - request.enqueued_at
        log.info("Speaking (queued %.1fs): %s", waited, request.text)
        try:
            await self.engine.speak(request.text)
            self.spoken += 1
            return
        except SpeechError as e:
            log.warning("%s failed: %s", self.engine.name, e)
        except Exception:
            log.exception("%s crashed", self.engine.name)
        if self.fallback is None or self.fallback is self.engine:
            self.failed += 1
            return
        try:
            await self.fallback.speak(request.text)
            self.spoken += 1
        except SpeechError as e:
            self.failed += 1
            log.error("Fallback %s failed too, dropping line: %s", self.fallback.name, e)
        except Exception:
            self.failed += 1
            log.exception("Fallback %s crashed, dropping line", self.fallback.name)
