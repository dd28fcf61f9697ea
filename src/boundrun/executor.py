"""Run a single work item, reporting one progress event per step.

:func:`execute` is used by the async scheduler and
:func:`execute_blocking` by the thread scheduler.  Both follow the same
event sequence on the item's own indicator::

    set_message("processing item <id>")
    advance(1)  x total_steps
    finish("done item <id>")

and return the item's identifier unchanged.  If a step raises, the
indicator is finished with ``"failed item <id>"`` and the error is
re-raised as :class:`~boundrun.exceptions.WorkUnitError`.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Hashable

from .exceptions import UnitStopped, WorkUnitError
from .items import WorkItem
from .progress import IndicatorHandle, ItemProgress, ProgressSink
from .work import StepWork

logger = logging.getLogger(__name__)


def start_message(item: WorkItem) -> str:
    return f"processing item {item.id}"


def done_message(item: WorkItem) -> str:
    return f"done item {item.id}"


def failed_message(item: WorkItem) -> str:
    return f"failed item {item.id}"


async def execute(
    item: WorkItem,
    indicator: IndicatorHandle,
    sink: ProgressSink,
    *,
    work: StepWork,
) -> Hashable:
    """Run *item* to completion without blocking the event loop.

    Args:
        item: The item to run.
        indicator: The item's own indicator on *sink*.
        sink: Receiver of progress events.
        work: Supplies the per-step work.

    Returns:
        ``item.id``.

    Raises:
        WorkUnitError: If planning or any step raised.  The original
            exception is chained as ``__cause__``.
    """
    progress = _begin(item, indicator, sink)
    try:
        plan = work.plan(item)
        for index in range(item.total_steps):
            await plan.step(index)
            progress.advance()
            sink.advance(indicator, 1)
    except asyncio.CancelledError:
        _fail(item, indicator, sink, progress)
        raise
    except Exception as exc:
        _fail(item, indicator, sink, progress)
        raise WorkUnitError(item.id, steps_completed=progress.completed_steps, reason=str(exc)) from exc
    return _complete(item, indicator, sink, progress)


def execute_blocking(
    item: WorkItem,
    indicator: IndicatorHandle,
    sink: ProgressSink,
    *,
    work: StepWork,
    stop: threading.Event | None = None,
) -> Hashable:
    """Run *item* to completion on the calling thread.

    Same contract as :func:`execute`.  Once *stop* is set the unit fails
    with :class:`~boundrun.exceptions.UnitStopped` before its next step.
    """
    progress = _begin(item, indicator, sink)
    try:
        plan = work.plan(item)
        for index in range(item.total_steps):
            if stop is not None and stop.is_set():
                raise UnitStopped(item.id, index)
            plan.step_blocking(index)
            progress.advance()
            sink.advance(indicator, 1)
    except Exception as exc:
        _fail(item, indicator, sink, progress)
        raise WorkUnitError(item.id, steps_completed=progress.completed_steps, reason=str(exc)) from exc
    return _complete(item, indicator, sink, progress)


def _begin(item: WorkItem, indicator: IndicatorHandle, sink: ProgressSink) -> ItemProgress:
    progress = ItemProgress(item_id=item.id, total_steps=item.total_steps)
    progress.start()
    sink.set_message(indicator, start_message(item))
    logger.debug("Started item %s (%d steps)", item.id, item.total_steps)
    return progress


def _complete(item: WorkItem, indicator: IndicatorHandle, sink: ProgressSink, progress: ItemProgress) -> Hashable:
    progress.finish(success=True)
    sink.finish(indicator, done_message(item))
    logger.debug("Finished item %s", item.id)
    return item.id


def _fail(item: WorkItem, indicator: IndicatorHandle, sink: ProgressSink, progress: ItemProgress) -> None:
    progress.finish(success=False)
    sink.finish(indicator, failed_message(item))
