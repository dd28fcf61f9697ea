"""Injectable per-step work for the executor.

The executor never sleeps or does I/O itself.  For every item it asks a
:class:`StepWork` for a :class:`StepPlan`, then calls the plan once per
step.  Swapping the work object changes what "one step" means without
touching step counting or event ordering:

* :class:`SimulatedWork` -- draws a random duration per item and sleeps an
  equal share of it on every step.
* :class:`NoDelayWork` -- finishes every step immediately.
* :class:`FlakyWork` -- wraps another work object and makes a chosen
  fraction of items fail part-way through.

Every plan supports both the async scheduler (:meth:`StepPlan.step`) and
the thread scheduler (:meth:`StepPlan.step_blocking`).
"""

from __future__ import annotations

import asyncio
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable

from .exceptions import ConfigurationError, SimulatedFailure
from .items import WorkItem

DEFAULT_UPPER_BOUND_MS = 10_000
"""Default upper bound of a simulated item duration, in milliseconds."""


class StepPlan(ABC):
    """Per-item work, performed one step at a time."""

    @abstractmethod
    async def step(self, index: int) -> None:
        """Perform step *index* (zero-based) without blocking the loop."""

    @abstractmethod
    def step_blocking(self, index: int) -> None:
        """Perform step *index* (zero-based) on the calling thread."""


class StepWork(ABC):
    """Factory of :class:`StepPlan` objects, one per item."""

    @abstractmethod
    def plan(self, item: WorkItem) -> StepPlan:
        """Prepare the work for *item*.  Called once, before its first step."""

    def validate(self, items: Iterable[WorkItem]) -> None:
        """Check that every item can be planned.

        Schedulers call this before any unit starts.  The default accepts
        everything.

        Raises:
            ConfigurationError: If some item cannot be planned.
        """


class _TimedPlan(StepPlan):
    def __init__(self, delay_ms: int) -> None:
        self.delay_ms = delay_ms

    async def step(self, index: int) -> None:
        await asyncio.sleep(self.delay_ms / 1000)

    def step_blocking(self, index: int) -> None:
        time.sleep(self.delay_ms / 1000)


class SimulatedWork(StepWork):
    """Sleep for a random, evenly split duration per item.

    For each item a total duration is drawn uniformly from
    ``[total_steps, upper_bound_ms]`` milliseconds (both ends inclusive).
    Every step then sleeps ``duration // total_steps`` milliseconds, so a
    step is never shorter than one millisecond.

    Args:
        upper_bound_ms: Longest duration an item may take.
        rng: Random generator to draw durations from.  Pass a seeded
            :class:`random.Random` for reproducible timings.
    """

    def __init__(self, upper_bound_ms: int = DEFAULT_UPPER_BOUND_MS, *, rng: random.Random | None = None) -> None:
        if upper_bound_ms < 1:
            msg = f"upper_bound_ms must be at least 1, got {upper_bound_ms}"
            raise ConfigurationError(msg, field="max_duration_ms")
        self.upper_bound_ms = upper_bound_ms
        self._rng = rng or random.Random()

    def validate(self, items: Iterable[WorkItem]) -> None:
        for item in items:
            self._check_bound(item)

    def draw_duration_ms(self, item: WorkItem) -> int:
        """Draw the total duration of *item* in milliseconds."""
        self._check_bound(item)
        return self._rng.randint(item.total_steps, self.upper_bound_ms)

    def plan(self, item: WorkItem) -> StepPlan:
        return _TimedPlan(self.draw_duration_ms(item) // item.total_steps)

    def _check_bound(self, item: WorkItem) -> None:
        if self.upper_bound_ms < item.total_steps:
            msg = (
                f"upper_bound_ms ({self.upper_bound_ms}) must be at least the "
                f"number of steps ({item.total_steps}) of item {item.id}"
            )
            raise ConfigurationError(msg, field="max_duration_ms")


class _InstantPlan(StepPlan):
    async def step(self, index: int) -> None:
        # Still a suspension point, so other units interleave.
        await asyncio.sleep(0)

    def step_blocking(self, index: int) -> None:
        pass


class NoDelayWork(StepWork):
    """Work whose steps complete immediately."""

    def plan(self, item: WorkItem) -> StepPlan:
        return _InstantPlan()


class _FailingPlan(StepPlan):
    def __init__(self, inner: StepPlan, item: WorkItem, fail_at: int) -> None:
        self._inner = inner
        self._item = item
        self._fail_at = fail_at

    async def step(self, index: int) -> None:
        if index == self._fail_at:
            raise SimulatedFailure(self._item.id, index)
        await self._inner.step(index)

    def step_blocking(self, index: int) -> None:
        if index == self._fail_at:
            raise SimulatedFailure(self._item.id, index)
        self._inner.step_blocking(index)


class FlakyWork(StepWork):
    """Make a fraction of items fail at a random step.

    Args:
        inner: Work performed by steps that do not fail.
        failure_rate: Probability in ``[0, 1]`` that an item fails.
        rng: Random generator used to pick failing items and steps.
    """

    def __init__(self, inner: StepWork, failure_rate: float, *, rng: random.Random | None = None) -> None:
        if not 0.0 <= failure_rate <= 1.0:
            msg = f"failure_rate must be between 0 and 1, got {failure_rate}"
            raise ConfigurationError(msg, field="failure_rate")
        self.inner = inner
        self.failure_rate = failure_rate
        self._rng = rng or random.Random()

    def validate(self, items: Iterable[WorkItem]) -> None:
        self.inner.validate(items)

    def plan(self, item: WorkItem) -> StepPlan:
        inner_plan = self.inner.plan(item)
        if self._rng.random() >= self.failure_rate:
            return inner_plan
        return _FailingPlan(inner_plan, item, self._rng.randrange(item.total_steps))
