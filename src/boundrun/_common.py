"""Shared bookkeeping for the async and thread schedulers.

Internal module -- not part of the public API.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Sequence
from dataclasses import dataclass
from typing import Protocol

from .exceptions import ConfigurationError, WorkUnitError
from .items import WorkItem
from .progress import AggregateProgress, IndicatorHandle, ProgressSink

logger = logging.getLogger("boundrun.scheduler")

FINISHED_MESSAGE = "All work finished"
CANCELLED_MESSAGE = "Batch cancelled"


class CancelToken(Protocol):
    """Anything with an ``is_set()`` method, e.g. :class:`asyncio.Event`
    or :class:`threading.Event`."""

    def is_set(self) -> bool: ...


@dataclass(frozen=True, slots=True)
class ItemFailure:
    """A work unit that terminated abnormally.

    Attributes:
        item_id: Identifier of the failed item.
        error: The wrapped failure; the original exception is its
            ``__cause__``.
    """

    item_id: Hashable
    error: WorkUnitError


@dataclass(frozen=True, slots=True)
class CompletionEvent:
    """One observed unit completion, successful or not.

    Events are produced in *completion order*, not admission order.

    Attributes:
        index: Zero-based position of the item in the batch.
        item_id: Identifier of the item.
        error: The failure, or ``None`` on success.
        completed: Completions observed so far, including this one.
        total: Number of items in the batch.
    """

    index: int
    item_id: Hashable
    error: WorkUnitError | None
    completed: int
    total: int

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class BatchResult:
    """Outcome of a batch run.

    Attributes:
        aggregate: Final batch-wide counts.
        succeeded_ids: Identifiers of successful items, in completion order.
        failures: Failed items, in completion order.
        cancelled_ids: Items never started because the batch was cancelled.
        peak_running: Largest number of units observed in flight at once.
        total_runtime_seconds: Wall-clock time of the batch.
    """

    aggregate: AggregateProgress
    succeeded_ids: tuple[Hashable, ...]
    failures: tuple[ItemFailure, ...]
    cancelled_ids: tuple[Hashable, ...]
    peak_running: int
    total_runtime_seconds: float

    @property
    def failed_ids(self) -> tuple[Hashable, ...]:
        return tuple(f.item_id for f in self.failures)

    @property
    def cancelled(self) -> bool:
        return bool(self.cancelled_ids)

    @property
    def all_succeeded(self) -> bool:
        """Whether every item ran and none failed."""
        return not self.failures and not self.cancelled_ids

    @property
    def exit_code(self) -> int:
        return 0 if self.all_succeeded else 1

    def __len__(self) -> int:
        return self.aggregate.total_items


def check_cap(cap: int) -> None:
    """Reject a concurrency cap that would never admit anything."""
    if cap < 1:
        msg = f"max_concurrent must be at least 1, got {cap}"
        raise ConfigurationError(msg, field="max_concurrent")


class BatchLedger:
    """Completion accounting shared by both scheduler variants.

    Owns the :class:`AggregateProgress` and the aggregate indicator.  Every
    method is called from the scheduler's single draining path, so no lock
    is needed.
    """

    def __init__(self, items: Sequence[WorkItem], sink: ProgressSink) -> None:
        self.items = items
        self.sink = sink
        self.aggregate = AggregateProgress(total_items=len(items))
        self.succeeded_ids: list[Hashable] = []
        self.failures: list[ItemFailure] = []
        self.cancelled_ids: list[Hashable] = []
        self.running = 0
        self.peak_running = 0
        self._handle: IndicatorHandle | None = None

    def open(self) -> None:
        self._handle = self.sink.create_aggregate(len(self.items), "total")
        logger.info("Starting batch of %d item(s)", len(self.items))

    def admitted(self, index: int) -> IndicatorHandle:
        """Register admission of item *index* and return its new indicator."""
        item = self.items[index]
        self.running += 1
        self.peak_running = max(self.peak_running, self.running)
        logger.debug("Admitting item %s (%d running)", item.id, self.running)
        return self.sink.create_indicator(item.total_steps)

    def observe(self, index: int, error: BaseException | None) -> CompletionEvent:
        """Account for the completion of item *index*."""
        item = self.items[index]
        self.running -= 1
        failure: WorkUnitError | None = None
        if error is not None:
            failure = as_work_unit_error(item, error)
            self.failures.append(ItemFailure(item_id=item.id, error=failure))
            logger.warning("Item %s failed: %s", item.id, failure)
        else:
            self.succeeded_ids.append(item.id)
        completed = self.aggregate.record(success=failure is None)
        assert self._handle is not None  # noqa: S101
        self.sink.advance(self._handle, 1)
        return CompletionEvent(
            index=index,
            item_id=item.id,
            error=failure,
            completed=completed,
            total=self.aggregate.total_items,
        )

    def cancel_from(self, index: int) -> None:
        """Mark every item from *index* on as never started."""
        self.cancelled_ids.extend(item.id for item in self.items[index:])
        logger.info("Batch cancelled; %d item(s) not started", len(self.cancelled_ids))

    def close(self) -> None:
        """Finalize the aggregate indicator with the terminal message."""
        assert self._handle is not None  # noqa: S101
        if self.cancelled_ids:
            message = CANCELLED_MESSAGE
        elif self.failures:
            message = f"Finished with {len(self.failures)} failure(s)"
        else:
            message = FINISHED_MESSAGE
        self.sink.finish(self._handle, message)

    def result(self, elapsed: float) -> BatchResult:
        logger.info(
            "Batch finished in %.3fs: %d succeeded, %d failed, %d cancelled",
            elapsed,
            len(self.succeeded_ids),
            len(self.failures),
            len(self.cancelled_ids),
        )
        return BatchResult(
            aggregate=AggregateProgress(
                total_items=self.aggregate.total_items,
                completed_items=self.aggregate.completed_items,
                failed_items=self.aggregate.failed_items,
            ),
            succeeded_ids=tuple(self.succeeded_ids),
            failures=tuple(self.failures),
            cancelled_ids=tuple(self.cancelled_ids),
            peak_running=self.peak_running,
            total_runtime_seconds=elapsed,
        )


def as_work_unit_error(item: WorkItem, error: BaseException) -> WorkUnitError:
    """Return *error* as a :class:`WorkUnitError` for *item*."""
    if isinstance(error, WorkUnitError):
        return error
    wrapped = WorkUnitError(item.id, reason=str(error) or type(error).__name__)
    wrapped.__cause__ = error
    return wrapped
