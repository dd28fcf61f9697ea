"""Work item definitions and batch sources.

A batch is a finite, ordered sequence of :class:`WorkItem` objects whose
length is fixed when the batch starts.  How identifiers are generated has
no effect on scheduling, so two interchangeable sources are provided:

* :func:`sequential_items` -- identifiers ``0, 1, 2, ...``
* :func:`unique_items` -- random ``uuid4`` hex tokens

Example::

    from boundrun.items import make_items

    items = make_items(10, steps=100, ids="uuid")
"""

from __future__ import annotations

import uuid
from collections.abc import Hashable
from dataclasses import dataclass
from typing import Literal

from .exceptions import ConfigurationError

IdStrategy = Literal["sequential", "uuid"]
"""Identifier generation strategy accepted by :func:`make_items`."""


@dataclass(frozen=True, slots=True)
class WorkItem:
    """One independent unit of a batch.

    Attributes:
        id: Identifier with stable equality and a ``str()`` display form.
        total_steps: Number of discrete progress increments for this item.
    """

    id: Hashable
    total_steps: int

    def __post_init__(self) -> None:
        if self.total_steps < 1:
            msg = f"total_steps must be at least 1, got {self.total_steps}"
            raise ConfigurationError(msg, field="total_steps")


def sequential_items(count: int, steps: int) -> tuple[WorkItem, ...]:
    """Build *count* items identified by their position in the batch."""
    _check_count(count)
    return tuple(WorkItem(id=i, total_steps=steps) for i in range(count))


def unique_items(count: int, steps: int) -> tuple[WorkItem, ...]:
    """Build *count* items identified by random UUID hex tokens."""
    _check_count(count)
    return tuple(WorkItem(id=uuid.uuid4().hex, total_steps=steps) for _ in range(count))


def make_items(count: int, steps: int, *, ids: IdStrategy = "sequential") -> tuple[WorkItem, ...]:
    """Build a batch of *count* items using the given identifier strategy.

    Args:
        count: Number of items in the batch (may be zero).
        steps: Number of steps per item.
        ids: ``"sequential"`` or ``"uuid"``.

    Returns:
        The items in admission order.

    Raises:
        ConfigurationError: If *count* is negative, *steps* is less than 1,
            or *ids* names an unknown strategy.
    """
    if ids == "sequential":
        return sequential_items(count, steps)
    if ids == "uuid":
        return unique_items(count, steps)
    msg = f"ids must be 'sequential' or 'uuid' -- got {ids!r}"
    raise ConfigurationError(msg, field="ids")


def _check_count(count: int) -> None:
    if count < 0:
        msg = f"item count must not be negative, got {count}"
        raise ConfigurationError(msg, field="item_count")
