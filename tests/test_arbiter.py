"""Tests for the latest-wins speech queue."""

import asyncio

from btspeaker.outputs.arbiter import OutputArbiter


async def wait_until(predicate, timeout=1.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


async def test_burst_keeps_capacity_plus_in_flight(recording_engine):
    engine = recording_engine(delay=0.05)
    arbiter = OutputArbiter(engine, capacity=2)
    arbiter.start()

    arbiter.enqueue("one")
    await wait_until(lambda: arbiter.speaking)
    for text in ("two", "three", "four", "five"):
        assert arbiter.enqueue(text)

    assert [r.text for r in arbiter.pending()] == ["four", "five"]
    assert arbiter.dropped == 2

    await arbiter.join()
    assert engine.spoken == ["one", "four", "five"]
    assert engine.spoken[-1] == "five"
    await arbiter.stop()


async def test_lines_never_overlap(recording_engine):
    active = []
    overlaps = []

    class Tracking(recording_engine):
        async def speak(self, text):
            if active:
                overlaps.append(text)
            active.append(text)
            await asyncio.sleep(0.01)
            active.remove(text)
            self.spoken.append(text)

    engine = Tracking()
    arbiter = OutputArbiter(engine, capacity=2)
    arbiter.start()
    for i in range(6):
        arbiter.enqueue(f"line {i}")
        await asyncio.sleep(0.004)
    await arbiter.join()
    await arbiter.stop()
    assert overlaps == []
    assert engine.spoken[-1] == "line 5"


async def test_blank_text_is_ignored(recording_engine):
    arbiter = OutputArbiter(recording_engine())
    assert not arbiter.enqueue("")
    assert not arbiter.enqueue("   ")
    assert arbiter.pending() == []


async def test_fallback_engine_gets_one_try(recording_engine):
    primary = recording_engine("primary", fail=True)
    fallback = recording_engine("fallback")
    arbiter = OutputArbiter(primary, fallback)
    arbiter.start()

    arbiter.enqueue("hello")
    await arbiter.join()

    assert primary.started == ["hello"]
    assert fallback.spoken == ["hello"]
    assert arbiter.spoken == 1
    await arbiter.stop()


async def test_double_failure_drops_the_line(recording_engine):
    primary = recording_engine("primary", fail=True)
    fallback = recording_engine("fallback", fail=True)
    arbiter = OutputArbiter(primary, fallback)
    arbiter.start()

    arbiter.enqueue("doomed")
    arbiter.enqueue("also doomed")
    await arbiter.join()

    assert primary.started == ["doomed", "also doomed"]
    assert fallback.started == ["doomed", "also doomed"]
    assert arbiter.failed == 2
    assert arbiter.spoken == 0
    await arbiter.stop()


async def test_stop_discards_pending_and_finishes_current(recording_engine):
    engine = recording_engine(delay=0.05)
    arbiter = OutputArbiter(engine, capacity=2, stop_timeout=1)
    arbiter.start()

    arbiter.enqueue("current")
    await wait_until(lambda: arbiter.speaking)
    arbiter.enqueue("pending 1")
    arbiter.enqueue("pending 2")

    await arbiter.stop()

    assert engine.spoken == ["current"]
    assert arbiter.pending() == []
    assert not arbiter.enqueue("after stop")


async def test_stop_cancels_a_hung_engine(recording_engine):
    engine = recording_engine(delay=10)
    arbiter = OutputArbiter(engine, stop_timeout=0.05)
    arbiter.start()
    arbiter.enqueue("forever")
    await wait_until(lambda: arbiter.speaking)

    await asyncio.wait_for(arbiter.stop(), timeout=1)
    assert engine.spoken == []


async def test_crashing_engine_does_not_kill_the_worker(recording_engine):
    class Brittle(recording_engine):
        async def speak(self, text):
            if "\x00" in text:
                raise ValueError("embedded null byte")
            await super().speak(text)

    engine = Brittle()
    arbiter = OutputArbiter(engine)
    arbiter.start()

    arbiter.enqueue("bad\x00text")
    await arbiter.join()
    assert arbiter.enqueue("next line")
    await arbiter.join()

    assert engine.spoken == ["next line"]
    assert arbiter.failed == 1
    await arbiter.stop()


async def test_crash_goes_to_fallback(recording_engine):
    class Broken(recording_engine):
        async def speak(self, text):
            raise RuntimeError("driver gone")

    fallback = recording_engine("fallback")
    arbiter = OutputArbiter(Broken(), fallback)
    arbiter.start()
    arbiter.enqueue("hello")
    await arbiter.join()

    assert fallback.spoken == ["hello"]
    assert arbiter.spoken == 1
    await arbiter.stop()
