"""Async batch execution with a hard cap on concurrent work units.

Items are admitted strictly in source order.  Before each admission the
scheduler checks how many units are in flight; while the cap is reached it
waits for the *next* completion (whichever unit finishes first) rather
than the oldest one, accounts for every unit that has finished, and only
then starts the new unit.  Once the source is exhausted the remaining
units are drained the same way.

Two entry points are provided:

* :func:`run_batch` -- runs every item and returns a
  :class:`~boundrun._common.BatchResult`.
* :func:`run_batch_stream` -- an async generator that yields a
  :class:`~boundrun._common.CompletionEvent` as each unit finishes.

A failing unit frees its slot like any other completion.  Its error is
recorded against the item and the batch carries on.

Example::

    import asyncio
    from boundrun import make_items, run_batch

    async def main():
        result = await run_batch(make_items(10, steps=100), 3, sink="tqdm")
        print(f"{len(result.succeeded_ids)}/{len(result)} succeeded")

    asyncio.run(main())

Streaming example::

    from contextlib import aclosing
    from boundrun import run_batch_stream

    async def main():
        async with aclosing(run_batch_stream(items, 3)) as events:
            async for event in events:
                status = "OK" if event.success else "FAIL"
                print(f"[{event.completed}/{event.total}] {event.item_id}: {status}")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Hashable, Iterable
from contextlib import aclosing
from typing import Literal

from ._common import BatchLedger, BatchResult, CancelToken, CompletionEvent, check_cap, logger
from .executor import execute
from .items import WorkItem
from .progress import ProgressSink
from .progress_bars import resolve_sink
from .work import SimulatedWork, StepWork


class BoundedScheduler:
    """Admit items into concurrent execution without exceeding *cap*.

    A scheduler runs one batch.  Use :func:`run_batch` or
    :func:`run_batch_stream` unless you need access to the ledger while the
    batch is running.

    Args:
        items: Items in admission order.
        cap: Maximum number of units in flight.
        sink: Receiver of progress events.
        work: Supplies the per-step work (default: :class:`SimulatedWork`).
        cancel: Once set, no further item is admitted.

    Raises:
        ConfigurationError: If *cap* is less than 1 or *work* cannot plan
            one of the items.
    """

    def __init__(
        self,
        items: Iterable[WorkItem],
        cap: int,
        *,
        sink: ProgressSink,
        work: StepWork | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        check_cap(cap)
        self.items = tuple(items)
        self.work = work if work is not None else SimulatedWork()
        self.work.validate(self.items)
        self.cap = cap
        self.sink = sink
        self.cancel = cancel
        self.ledger = BatchLedger(self.items, sink)
        self._running: dict[asyncio.Task[Hashable], int] = {}

    @property
    def running(self) -> int:
        """Number of units currently in flight."""
        return len(self._running)

    async def events(self) -> AsyncIterator[CompletionEvent]:
        """Run the batch, yielding one event per completion.

        If the consumer stops early or the surrounding task is cancelled,
        every unit still in flight is cancelled and awaited before the
        generator exits.
        """
        self.ledger.open()
        try:
            for index, item in enumerate(self.items):
                while len(self._running) >= self.cap:
                    for event in await self._next_completions():
                        yield event
                if self.cancel is not None and self.cancel.is_set():
                    self.ledger.cancel_from(index)
                    break
                self._admit(index, item)
            while self._running:
                for event in await self._next_completions():
                    yield event
        finally:
            if self._running:
                logger.debug("Cancelling %d unit(s) still in flight", len(self._running))
                for task in self._running:
                    task.cancel()
                await asyncio.gather(*self._running, return_exceptions=True)
                self._running.clear()
        self.ledger.close()

    def _admit(self, index: int, item: WorkItem) -> None:
        indicator = self.ledger.admitted(index)
        task = asyncio.create_task(
            execute(item, indicator, self.sink, work=self.work),
            name=f"boundrun-item-{item.id}",
        )
        self._running[task] = index

    async def _next_completions(self) -> list[CompletionEvent]:
        """Wait for at least one unit to finish and account for all that have."""
        done, _ = await asyncio.wait(set(self._running), return_when=asyncio.FIRST_COMPLETED)
        events = []
        for task in sorted(done, key=self._running.__getitem__):
            index = self._running.pop(task)
            error = asyncio.CancelledError() if task.cancelled() else task.exception()
            events.append(self.ledger.observe(index, error))
        return events


async def run_batch(
    items: Iterable[WorkItem],
    cap: int,
    *,
    sink: ProgressSink | Literal["tqdm"] | None = None,
    work: StepWork | None = None,
    cancel: CancelToken | None = None,
) -> BatchResult:
    """Run every item with at most *cap* units in flight.

    Individual unit failures are captured in
    :attr:`BatchResult.failures` -- the batch never raises due to a single
    unit failing.

    Args:
        items: Items in admission order.  An empty sequence finishes
            immediately.
        cap: Maximum number of concurrent units.
        sink: A :class:`~boundrun.progress.ProgressSink`, ``"tqdm"`` for
            terminal bars (requires ``boundrun[progress]``), or ``None``.
        work: Supplies the per-step work (default: :class:`SimulatedWork`).
        cancel: Cooperative cancellation flag, typically an
            :class:`asyncio.Event`.  Once set, remaining items are reported
            in :attr:`BatchResult.cancelled_ids` instead of being started.

    Returns:
        A :class:`~boundrun._common.BatchResult`.

    Raises:
        ConfigurationError: If *cap* is less than 1 or *work* cannot plan
            one of the items.
    """
    check_cap(cap)
    resolved, cleanup = resolve_sink(sink, cap)
    try:
        scheduler = BoundedScheduler(items, cap, sink=resolved, work=work, cancel=cancel)
        start = time.monotonic()
        async for _ in scheduler.events():
            pass
        elapsed = time.monotonic() - start
    finally:
        if cleanup is not None:
            cleanup()
    return scheduler.ledger.result(elapsed)


async def run_batch_stream(
    items: Iterable[WorkItem],
    cap: int,
    *,
    sink: ProgressSink | Literal["tqdm"] | None = None,
    work: StepWork | None = None,
    cancel: CancelToken | None = None,
) -> AsyncIterator[CompletionEvent]:
    """Run items concurrently, yielding events as each unit completes.

    Events arrive in *completion order*.  Breaking out of the loop cancels
    the units still in flight; wrap the generator in
    :func:`contextlib.aclosing` to make that happen immediately.

    Args:
        items: Items in admission order.
        cap: Maximum number of concurrent units.
        sink: A :class:`~boundrun.progress.ProgressSink`, ``"tqdm"``, or
            ``None``.  Bars created for ``"tqdm"`` are closed when the
            generator is closed.
        work: Supplies the per-step work (default: :class:`SimulatedWork`).
        cancel: Cooperative cancellation flag.

    Yields:
        :class:`~boundrun._common.CompletionEvent` for each finished unit.

    Raises:
        ConfigurationError: If *cap* is less than 1 or *work* cannot plan
            one of the items.
    """
    check_cap(cap)
    resolved, cleanup = resolve_sink(sink, cap)
    try:
        scheduler = BoundedScheduler(items, cap, sink=resolved, work=work, cancel=cancel)
        async with aclosing(scheduler.events()) as events:
            async for event in events:
                yield event
    finally:
        if cleanup is not None:
            cleanup()
