"""Shared fixtures for boundrun tests."""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Hashable, Iterable

import pytest

from boundrun.items import WorkItem
from boundrun.progress import RecordingSink
from boundrun.work import NoDelayWork, StepPlan, StepWork


class TrackingWork(StepWork):
    """Step work that measures how many items are in flight at once.

    An item counts as active from :meth:`plan` until its last step (or its
    failing step) returns.  Items listed in *fail_ids* raise ``RuntimeError``
    at step *fail_at*.
    """

    def __init__(self, fail_ids: Iterable[Hashable] = (), fail_at: int = 0, blocking_delay: float = 0.001) -> None:
        self.fail_ids = set(fail_ids)
        self.fail_at = fail_at
        self.blocking_delay = blocking_delay
        self.active = 0
        self.peak = 0
        self.planned: list[Hashable] = []
        self._lock = threading.Lock()

    def plan(self, item: WorkItem) -> StepPlan:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.planned.append(item.id)
        return _TrackingPlan(self, item)

    def leave(self) -> None:
        with self._lock:
            self.active -= 1


class _TrackingPlan(StepPlan):
    def __init__(self, tracker: TrackingWork, item: WorkItem) -> None:
        self.tracker = tracker
        self.item = item

    def _check(self, index: int) -> None:
        if self.item.id in self.tracker.fail_ids and index == self.tracker.fail_at:
            self.tracker.leave()
            msg = f"boom in {self.item.id}"
            raise RuntimeError(msg)

    def _last(self, index: int) -> None:
        if index == self.item.total_steps - 1:
            self.tracker.leave()

    async def step(self, index: int) -> None:
        self._check(index)
        await asyncio.sleep(0)
        self._last(index)

    def step_blocking(self, index: int) -> None:
        self._check(index)
        time.sleep(self.tracker.blocking_delay)
        self._last(index)


@pytest.fixture
def sink() -> RecordingSink:
    """A sink that records every rendered event."""
    return RecordingSink()


@pytest.fixture
def instant_work() -> NoDelayWork:
    return NoDelayWork()


@pytest.fixture
def tracker() -> TrackingWork:
    return TrackingWork()
