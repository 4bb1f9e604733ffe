import asyncio
import time

import pytest

from services.errors import ItemTimeoutError, SchedulerInvariantError
from services.scheduler import RollingWindowScheduler


class Probe:
    """Per-item coroutine that sleeps and records concurrency."""

    def __init__(self, durations=None, default=0.01):
        self.durations = durations or {}
        self.default = default
        self.in_flight = 0
        self.max_in_flight = 0
        self.starts = {}

    async def __call__(self, item):
        self.starts[item] = asyncio.get_running_loop().time()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.durations.get(item, self.default))
            return item
        finally:
            self.in_flight -= 1


def test_rejects_bad_limits():
    with pytest.raises(ValueError):
        RollingWindowScheduler(concurrency=0)
    with pytest.raises(ValueError):
        RollingWindowScheduler(admission_batch_size=0)
    with pytest.raises(ValueError):
        RollingWindowScheduler(admission_delay_seconds=-1)


def test_in_flight_never_exceeds_ceiling():
    items = list(range(30))
    probe = Probe(durations={i: 0.005 * (i % 7) for i in items})
    scheduler = RollingWindowScheduler(concurrency=5, admission_batch_size=5, admission_delay_seconds=0)

    outcome = asyncio.run(scheduler.run(items, probe))

    assert probe.max_in_flight <= 5
    assert outcome.peak_in_flight == 5
    assert sorted(outcome.results) == items
    assert outcome.completed == 30
    assert not outcome.stopped


def test_ramp_up_admits_at_most_b_per_delay():
    items = list(range(25))
    probe = Probe(default=1.0)
    scheduler = RollingWindowScheduler(concurrency=50, admission_batch_size=10, admission_delay_seconds=0.2)

    asyncio.run(scheduler.run(items, probe))

    starts = sorted(probe.starts.values())
    # Any B+1 consecutive admissions span at least D
    for i in range(len(starts) - 10):
        assert starts[i + 10] - starts[i] >= 0.18
    # First burst goes out together
    assert starts[9] - starts[0] < 0.1


def test_freed_slot_refilled_without_throttle_delay():
    items = list(range(6))
    probe = Probe(default=0.02)
    # Never a full burst (C < B), so the 5s delay must never apply
    scheduler = RollingWindowScheduler(concurrency=2, admission_batch_size=5, admission_delay_seconds=5.0)

    start = time.monotonic()
    outcome = asyncio.run(scheduler.run(items, probe))

    assert time.monotonic() - start < 1.0
    assert outcome.completed == 6
    assert probe.max_in_flight == 2


def test_results_arrive_in_completion_order():
    items = ["slow", "medium", "fast"]
    probe = Probe(durations={"slow": 0.3, "medium": 0.15, "fast": 0.01})
    completed = []
    scheduler = RollingWindowScheduler(concurrency=3, admission_batch_size=3, admission_delay_seconds=0)

    outcome = asyncio.run(scheduler.run(items, probe, on_complete=lambda item, result: completed.append(item)))

    assert outcome.results == ["fast", "medium", "slow"]
    assert completed == ["fast", "medium", "slow"]


def test_stop_halts_admission_and_lets_in_flight_finish():
    items = list(range(20))
    probe = Probe(default=0.05)
    scheduler = RollingWindowScheduler(concurrency=2, admission_batch_size=2, admission_delay_seconds=0)
    completed = []

    def on_complete(item, result):
        completed.append(item)
        if len(completed) == 3:
            scheduler.stop()

    outcome = asyncio.run(scheduler.run(items, probe, on_complete=on_complete))

    assert outcome.stopped
    assert outcome.admitted < 20
    # Everything admitted also reported an outcome
    assert outcome.completed == outcome.admitted
    assert sorted(completed) == sorted(probe.starts)
    assert probe.in_flight == 0


def test_stop_interrupts_admission_pause():
    items = list(range(10))
    probe = Probe(default=0.01)
    scheduler = RollingWindowScheduler(concurrency=10, admission_batch_size=2, admission_delay_seconds=5.0)

    async def main():
        asyncio.get_running_loop().call_later(0.1, scheduler.stop)
        return await scheduler.run(items, probe)

    start = time.monotonic()
    outcome = asyncio.run(main())

    assert time.monotonic() - start < 2.0
    assert outcome.stopped
    assert outcome.admitted == 2


def test_timeout_resolves_only_that_item():
    items = ["a", "slow", "b", "c"]
    probe = Probe(durations={"slow": 2.0}, default=0.01)
    errors = {}

    def on_error(item, error):
        errors[item] = error
        return f"error:{item}"

    scheduler = RollingWindowScheduler(
        concurrency=4, admission_batch_size=4, admission_delay_seconds=0,
        item_timeout_seconds=0.1, item_id=str
    )
    outcome = asyncio.run(scheduler.run(items, probe, on_error=on_error))

    assert isinstance(errors["slow"], ItemTimeoutError)
    assert errors["slow"].item_id == "slow"
    assert sorted(outcome.results) == ["a", "b", "c", "error:slow"]
    assert outcome.completed == 4


def test_failure_without_fallback_is_counted():
    async def process(item):
        if item == 2:
            raise RuntimeError("boom")
        return item

    scheduler = RollingWindowScheduler(concurrency=3, admission_batch_size=3, admission_delay_seconds=0)
    outcome = asyncio.run(scheduler.run([1, 2, 3], process))

    assert sorted(outcome.results) == [1, 3]
    assert outcome.failed == 1
    assert outcome.completed == 2


def test_invariant_violation_aborts_run_and_cancels_in_flight():
    cancelled = []

    async def process(item):
        if item == 0:
            raise SchedulerInvariantError("broken")
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(item)
            raise
        return item

    scheduler = RollingWindowScheduler(concurrency=4, admission_batch_size=4, admission_delay_seconds=0)

    start = time.monotonic()
    with pytest.raises(SchedulerInvariantError):
        asyncio.run(scheduler.run([0, 1, 2, 3], process, on_error=lambda item, error: None))

    assert time.monotonic() - start < 5
    assert sorted(cancelled) == [1, 2, 3]
    assert scheduler.in_flight_count == 0


def test_failing_completion_hook_cancels_in_flight():
    cancelled = []

    async def process(item):
        if item == 0:
            return item
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(item)
            raise
        return item

    def on_complete(item, result):
        raise KeyError(item)

    scheduler = RollingWindowScheduler(concurrency=3, admission_batch_size=3, admission_delay_seconds=0)

    start = time.monotonic()
    with pytest.raises(KeyError):
        asyncio.run(scheduler.run([0, 1, 2], process, on_complete=on_complete))

    assert time.monotonic() - start < 5
    assert sorted(cancelled) == [1, 2]
    assert scheduler.in_flight_count == 0


def test_ceiling_check_raises_when_window_overflows():
    scheduler = RollingWindowScheduler(concurrency=1)
    scheduler._in_flight = {object(): 1, object(): 2}

    with pytest.raises(SchedulerInvariantError):
        scheduler._check_invariants()


def test_rolling_window_beats_fixed_batches_on_skewed_work():
    # One slow item per group of four
    durations = {i: (0.4 if i % 4 == 0 else 0.05) for i in range(12)}
    items = list(durations)

    async def process(item):
        await asyncio.sleep(durations[item])
        return item

    async def fixed_batches(concurrency):
        for start in range(0, len(items), concurrency):
            await asyncio.gather(*(process(i) for i in items[start:start + concurrency]))

    start = time.monotonic()
    asyncio.run(fixed_batches(4))
    fixed_elapsed = time.monotonic() - start

    scheduler = RollingWindowScheduler(concurrency=4, admission_batch_size=4, admission_delay_seconds=0)
    start = time.monotonic()
    outcome = asyncio.run(scheduler.run(items, process))
    rolling_elapsed = time.monotonic() - start

    assert outcome.completed == 12
    assert rolling_elapsed < fixed_elapsed
