"""
Rolling-Window Scheduler with Throttled Admission

Runs an injected per-item coroutine over a work list under two independent
limits:

- Concurrency ceiling C: never more than C executions in flight.
- Admission throttle: new work enters in sub-batches of B; after a full
  sub-batch, admission pauses for D seconds. This only bites during ramp-up
  bursts. Once the pool is saturated, a single freed slot is refilled
  immediately.

Unlike fixed batching (start B, wait for all B, start the next B) a slow item
never leaves finished slots idle: the scheduler waits for ANY execution to
finish, not all of them.

Usage:
    scheduler = RollingWindowScheduler(concurrency=50, admission_batch_size=10,
                                       admission_delay_seconds=2.0)
    outcome = await scheduler.run(items, process, on_complete=..., on_error=...)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from services.errors import ItemTimeoutError, MatchingError, SchedulerInvariantError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class SchedulerResult(Generic[R]):
    """Summary of one scheduler run. Results are in completion order."""
    results: List[R] = field(default_factory=list)
    total: int = 0
    admitted: int = 0
    completed: int = 0
    failed: int = 0
    stopped: bool = False
    peak_in_flight: int = 0
    elapsed_seconds: float = 0.0


class RollingWindowScheduler:
    """
    Bounded, throttled, rolling-window executor for independent async jobs.

    A scheduler instance drives a single run; create a new one per batch.
    """

    def __init__(
        self,
        concurrency: int = 50,
        admission_batch_size: int = 10,
        admission_delay_seconds: float = 2.0,
        item_timeout_seconds: Optional[float] = None,
        item_id: Optional[Callable[[Any], str]] = None
    ):
        """
        Initialize scheduler.

        Args:
            concurrency: Max simultaneous in-flight executions (C)
            admission_batch_size: Executions admitted per burst (B)
            admission_delay_seconds: Pause after a full burst (D)
            item_timeout_seconds: Per-execution time budget; None disables it
            item_id: Maps an item to a printable id for logs and errors
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if admission_batch_size < 1:
            raise ValueError("admission_batch_size must be >= 1")
        if admission_delay_seconds < 0:
            raise ValueError("admission_delay_seconds must be >= 0")

        self.concurrency = concurrency
        self.admission_batch_size = admission_batch_size
        self.admission_delay_seconds = admission_delay_seconds
        self.item_timeout_seconds = item_timeout_seconds
        self._item_id = item_id or (lambda item: str(getattr(item, "id", item)))

        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None
        self._in_flight: Dict[asyncio.Task, Any] = {}
        self._peak_in_flight = 0

    # =========================================================================
    # Control
    # =========================================================================

    def stop(self):
        """
        Halt new admissions immediately.

        In-flight executions are allowed to finish and still report outcomes.
        """
        if not self._stop_requested:
            logger.info(f"Stop requested: {len(self._in_flight)} executions still in flight")
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def peak_in_flight(self) -> int:
        return self._peak_in_flight

    # =========================================================================
    # Run
    # =========================================================================

    async def run(
        self,
        items: Sequence[T],
        process: Callable[[T], Awaitable[R]],
        on_complete: Optional[Callable[[T, R], None]] = None,
        on_error: Optional[Callable[[T, Exception], R]] = None
    ) -> SchedulerResult:
        """
        Execute process(item) for every item under the window limits.

        Args:
            items: Work list, admitted in order
            process: Per-item coroutine function (the pipeline strategy)
            on_complete: Called once per finished item, in completion order
            on_error: Turns a failed or timed-out execution into a result.
                Without it, failures are logged and left out of the results.

        Returns:
            SchedulerResult with results in completion order

        Raises:
            SchedulerInvariantError: a concurrency guarantee was broken; all
                in-flight executions are cancelled before it propagates.
                An exception from on_complete or on_error is handled the same way.
        """
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()

        total = len(items)
        outcome: SchedulerResult = SchedulerResult(total=total)
        start = time.monotonic()
        next_index = 0

        logger.info(
            f"Rolling window run: {total} items, max {self.concurrency} in flight, "
            f"adding {self.admission_batch_size} every {self.admission_delay_seconds:g}s"
        )

        try:
            while self._in_flight or (next_index < total and not self._stop_requested):
                # Collect anything that finished during a throttle pause
                finished = {task for task in self._in_flight if task.done()}
                if finished:
                    self._harvest(finished, outcome, on_complete, on_error)

                admitted_this_cycle = 0
                while (
                    next_index < total
                    and not self._stop_requested
                    and len(self._in_flight) < self.concurrency
                    and admitted_this_cycle < self.admission_batch_size
                ):
                    item = items[next_index]
                    next_index += 1
                    admitted_this_cycle += 1
                    task = asyncio.create_task(self._execute(item, process))
                    self._in_flight[task] = item
                    outcome.admitted += 1

                self._check_invariants()

                if (
                    admitted_this_cycle == self.admission_batch_size
                    and next_index < total
                    and not self._stop_requested
                ):
                    logger.debug(
                        f"Added batch of {admitted_this_cycle}, pausing "
                        f"{self.admission_delay_seconds:g}s [Active: {len(self._in_flight)}/{self.concurrency}]"
                    )
                    await self._pause(self.admission_delay_seconds)
                    continue

                if self._in_flight:
                    done, _ = await asyncio.wait(
                        set(self._in_flight), return_when=asyncio.FIRST_COMPLETED
                    )
                    self._harvest(done, outcome, on_complete, on_error)

        except SchedulerInvariantError:
            logger.error("Scheduler invariant violated, aborting run", exc_info=True)
            await self._cancel_all()
            raise
        except asyncio.CancelledError:
            await self._cancel_all()
            raise
        except Exception:
            logger.error("Rolling window run aborted, cancelling in-flight items", exc_info=True)
            await self._cancel_all()
            raise

        outcome.stopped = self._stop_requested and next_index < total
        outcome.peak_in_flight = self._peak_in_flight
        outcome.elapsed_seconds = time.monotonic() - start

        logger.info(
            f"Rolling window run finished: {outcome.completed}/{total} completed, "
            f"{outcome.failed} failed, peak {outcome.peak_in_flight} in flight, "
            f"{outcome.elapsed_seconds:.1f}s{' (stopped early)' if outcome.stopped else ''}"
        )
        return outcome

    # =========================================================================
    # Internals
    # =========================================================================

    async def _execute(self, item: T, process: Callable[[T], Awaitable[R]]) -> R:
        """Run one item, bounded by the per-item timeout."""
        if self.item_timeout_seconds is None:
            return await process(item)
        try:
            return await asyncio.wait_for(process(item), timeout=self.item_timeout_seconds)
        except asyncio.TimeoutError:
            raise ItemTimeoutError(
                f"Timed out after {self.item_timeout_seconds:g}s",
                item_id=self._item_id(item)
            ) from None

    def _harvest(
        self,
        done,
        outcome: SchedulerResult,
        on_complete: Optional[Callable[[T, R], None]],
        on_error: Optional[Callable[[T, Exception], R]]
    ):
        """Remove finished tasks from the window and report them."""
        for task in done:
            item = self._in_flight.pop(task)
            if task.cancelled():
                error = MatchingError("Execution cancelled", item_id=self._item_id(item))
            else:
                error = task.exception()

            if error is None:
                result = task.result()
            elif isinstance(error, SchedulerInvariantError):
                raise error
            elif on_error is not None:
                logger.error(f"Item {self._item_id(item)} failed: {error}")
                result = on_error(item, error)
            else:
                logger.error(f"Item {self._item_id(item)} failed without fallback: {error}")
                outcome.failed += 1
                continue

            outcome.completed += 1
            outcome.results.append(result)
            if on_complete is not None:
                on_complete(item, result)

    def _check_invariants(self):
        in_flight = len(self._in_flight)
        self._peak_in_flight = max(self._peak_in_flight, in_flight)
        if in_flight > self.concurrency:
            raise SchedulerInvariantError(
                f"In-flight count {in_flight} exceeds ceiling {self.concurrency}"
            )

    async def _pause(self, seconds: float):
        """Sleep for the admission delay; a stop request cuts it short."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _cancel_all(self):
        tasks = list(self._in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
