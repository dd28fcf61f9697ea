"""Progress state and the event-consuming progress sink.

Two kinds of state are tracked while a batch runs:

* :class:`ItemProgress` -- step counter and status of one work item, owned
  by the executor running that item.
* :class:`AggregateProgress` -- batch-wide completion count, owned by the
  scheduler.

Neither is rendered directly.  Executors and the scheduler send one-way
events (advance, set message, finish) to a :class:`ProgressSink`, which
serializes them under its own lock and never reports anything back.

The sink keeps a display layout in which the aggregate indicator is always
last: per-item indicators are inserted immediately above it as items start
and are dropped from the layout as they finish.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any, Literal

from .exceptions import ProgressStateError

logger = logging.getLogger(__name__)


class ItemStatus(enum.Enum):
    """Lifecycle of a single work item."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.DONE, ItemStatus.FAILED)


@dataclass(slots=True)
class ItemProgress:
    """Step-level progress of one work item.

    Attributes:
        item_id: Identifier of the tracked item.
        total_steps: Number of steps the item will report.
        completed_steps: Steps reported so far; never decreases.
        status: Current lifecycle state.
    """

    item_id: Hashable
    total_steps: int
    completed_steps: int = 0
    status: ItemStatus = ItemStatus.PENDING

    def start(self) -> None:
        """Move from ``PENDING`` to ``RUNNING``."""
        self._transition(ItemStatus.PENDING, ItemStatus.RUNNING)

    def advance(self) -> int:
        """Record one completed step and return the new step count."""
        if self.status is not ItemStatus.RUNNING:
            msg = f"Cannot advance item {self.item_id} while {self.status.value}"
            raise ProgressStateError(msg)
        if self.completed_steps >= self.total_steps:
            msg = f"Item {self.item_id} already completed all {self.total_steps} steps"
            raise ProgressStateError(msg)
        self.completed_steps += 1
        return self.completed_steps

    def finish(self, *, success: bool = True) -> None:
        """Move from ``RUNNING`` to ``DONE`` (or ``FAILED``)."""
        if success and self.completed_steps != self.total_steps:
            msg = f"Item {self.item_id} finished after {self.completed_steps}/{self.total_steps} steps"
            raise ProgressStateError(msg)
        self._transition(ItemStatus.RUNNING, ItemStatus.DONE if success else ItemStatus.FAILED)

    def _transition(self, expected: ItemStatus, new: ItemStatus) -> None:
        if self.status is not expected:
            msg = f"Item {self.item_id} cannot go from {self.status.value} to {new.value}"
            raise ProgressStateError(msg)
        self.status = new


@dataclass(slots=True)
class AggregateProgress:
    """Batch-wide completion count.

    ``completed_items`` counts every observed unit completion, successful
    or not; ``failed_items`` counts the subset that failed.

    Attributes:
        total_items: Number of items in the batch.
        completed_items: Units observed to have finished.
        failed_items: Finished units that terminated abnormally.
    """

    total_items: int
    completed_items: int = 0
    failed_items: int = 0

    @property
    def succeeded_items(self) -> int:
        return self.completed_items - self.failed_items

    @property
    def is_complete(self) -> bool:
        return self.completed_items == self.total_items

    def record(self, *, success: bool) -> int:
        """Count one completion and return the new completed count.

        Raises:
            ProgressStateError: If every item has already been counted.
        """
        if self.completed_items >= self.total_items:
            msg = f"Aggregate already at {self.completed_items}/{self.total_items}"
            raise ProgressStateError(msg)
        self.completed_items += 1
        if not success:
            self.failed_items += 1
        return self.completed_items


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class IndicatorHandle:
    """Opaque reference to one indicator owned by a :class:`ProgressSink`.

    Attributes:
        key: Sink-unique key, assigned in creation order.
        length: Number of increments that fill the indicator.
        aggregate: Whether this is the batch-wide indicator.
    """

    key: int
    length: int
    aggregate: bool = False


class ProgressSink:
    """Thread-safe receiver of progress events.

    Subclasses render by overriding the ``_render_*`` hooks, which are
    always called with the sink lock held.  An exception raised by a hook
    is logged and discarded so a broken renderer can never abort a batch.

    Events for a finished indicator are ignored.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._layout: list[IndicatorHandle] = []
        self._aggregate: IndicatorHandle | None = None
        self._finished: set[int] = set()
        self._next_key = 0
        self._closed = False

    @property
    def aggregate(self) -> IndicatorHandle | None:
        return self._aggregate

    def create_aggregate(self, length: int, message: str = "total") -> IndicatorHandle:
        """Create the batch-wide indicator.  It stays at the end of the layout."""
        with self._lock:
            if self._aggregate is not None:
                msg = "Aggregate indicator already created"
                raise ProgressStateError(msg)
            handle = self._new_handle(length, aggregate=True)
            self._layout.append(handle)
            self._aggregate = handle
            self._guard(self._render_create, handle, len(self._layout) - 1)
            self._guard(self._render_message, handle, message)
            return handle

    def create_indicator(self, length: int) -> IndicatorHandle:
        """Create a per-item indicator, placed immediately above the aggregate."""
        with self._lock:
            handle = self._new_handle(length)
            if self._aggregate is None:
                self._layout.append(handle)
            else:
                self._layout.insert(self._layout.index(self._aggregate), handle)
            self._guard(self._render_create, handle, self._layout.index(handle))
            return handle

    def advance(self, handle: IndicatorHandle, delta: int = 1) -> None:
        with self._lock:
            if self._accepts(handle):
                self._guard(self._render_advance, handle, delta)

    def set_message(self, handle: IndicatorHandle, text: str) -> None:
        with self._lock:
            if self._accepts(handle):
                self._guard(self._render_message, handle, text)

    def finish(self, handle: IndicatorHandle, text: str) -> None:
        """Finalize *handle* with a terminal message.

        Per-item indicators leave the layout; the aggregate stays.
        """
        with self._lock:
            if not self._accepts(handle):
                return
            self._finished.add(handle.key)
            if not handle.aggregate:
                self._layout.remove(handle)
            self._guard(self._render_finish, handle, text)

    def close(self) -> None:
        """Release rendering resources.  Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._guard(self._render_close)

    def layout(self) -> list[IndicatorHandle]:
        """Return the displayed indicators, top to bottom."""
        with self._lock:
            return list(self._layout)

    def __enter__(self) -> ProgressSink:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- rendering hooks ----------------------------------------------------

    def _render_create(self, handle: IndicatorHandle, index: int) -> None:
        pass

    def _render_advance(self, handle: IndicatorHandle, delta: int) -> None:
        pass

    def _render_message(self, handle: IndicatorHandle, text: str) -> None:
        pass

    def _render_finish(self, handle: IndicatorHandle, text: str) -> None:
        pass

    def _render_close(self) -> None:
        pass

    # -- internals ----------------------------------------------------------

    def _new_handle(self, length: int, *, aggregate: bool = False) -> IndicatorHandle:
        handle = IndicatorHandle(key=self._next_key, length=length, aggregate=aggregate)
        self._next_key += 1
        return handle

    def _accepts(self, handle: IndicatorHandle) -> bool:
        if handle.key >= self._next_key:
            msg = f"Indicator {handle.key} was not created by this sink"
            raise ProgressStateError(msg)
        if handle.key in self._finished:
            logger.debug("Ignoring event for finished indicator %d", handle.key)
            return False
        return True

    def _guard(self, hook: Callable[..., None], *args: Any) -> None:
        try:
            hook(*args)
        except Exception:
            logger.warning("Progress rendering failed in %s", hook.__name__, exc_info=True)


class NullSink(ProgressSink):
    """Sink that tracks layout but renders nothing."""


SinkEventKind = Literal["create", "advance", "message", "finish", "close"]


@dataclass(frozen=True, slots=True)
class SinkEvent:
    """One event observed by a :class:`RecordingSink`.

    Attributes:
        kind: Event type.
        key: Indicator key, or ``-1`` for ``"close"``.
        value: Layout index for ``"create"``, delta for ``"advance"``,
            text for ``"message"`` and ``"finish"``.
    """

    kind: SinkEventKind
    key: int
    value: int | str | None = None


@dataclass
class IndicatorState:
    position: int = 0
    message: str = ""
    finished: bool = False


class RecordingSink(ProgressSink):
    """Sink that keeps an ordered log of every event it renders.

    Useful for callers that draw progress themselves and for asserting on
    the exact event stream in tests.

    Example::

        sink = RecordingSink()
        result = await run_batch(items, 3, sink=sink)
        print(sink.state(sink.aggregate).message)
    """

    def __init__(self) -> None:
        super().__init__()
        self.events: list[SinkEvent] = []
        self._state: dict[int, IndicatorState] = {}
        self._handles: dict[int, IndicatorHandle] = {}

    def state(self, handle: IndicatorHandle) -> IndicatorState:
        """Return the rendered position, message and finished flag of *handle*."""
        with self._lock:
            snap = self._state[handle.key]
            return IndicatorState(snap.position, snap.message, snap.finished)

    def events_for(self, handle: IndicatorHandle) -> list[SinkEvent]:
        with self._lock:
            return [e for e in self.events if e.key == handle.key]

    def item_handles(self) -> list[IndicatorHandle]:
        """Return every per-item indicator in creation order."""
        with self._lock:
            return [h for h in self._handles.values() if not h.aggregate]

    def _render_create(self, handle: IndicatorHandle, index: int) -> None:
        self._handles[handle.key] = handle
        self._state[handle.key] = IndicatorState()
        self.events.append(SinkEvent("create", handle.key, index))

    def _render_advance(self, handle: IndicatorHandle, delta: int) -> None:
        self._state[handle.key].position += delta
        self.events.append(SinkEvent("advance", handle.key, delta))

    def _render_message(self, handle: IndicatorHandle, text: str) -> None:
        self._state[handle.key].message = text
        self.events.append(SinkEvent("message", handle.key, text))

    def _render_finish(self, handle: IndicatorHandle, text: str) -> None:
        snap = self._state[handle.key]
        snap.message = text
        snap.finished = True
        self.events.append(SinkEvent("finish", handle.key, text))

    def _render_close(self) -> None:
        self.events.append(SinkEvent("close", -1))
