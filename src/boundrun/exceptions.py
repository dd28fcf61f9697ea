"""Custom exceptions for boundrun."""

from __future__ import annotations

from collections.abc import Hashable


class BoundRunError(Exception):
    """Base exception for all boundrun errors."""

    pass


class ConfigurationError(BoundRunError, ValueError):
    """Raised when a batch is configured with invalid values.

    Always raised before any work unit is started.
    """

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class ProgressStateError(BoundRunError):
    """Raised when progress is mutated in a way its invariants forbid."""

    pass


class WorkUnitError(BoundRunError):
    """Raised when a single work unit terminates abnormally.

    The scheduler records these against the item's identifier; they never
    abort the rest of the batch.

    Attributes:
        item_id: Identifier of the item whose unit failed.
        steps_completed: Number of steps reported before the failure.
    """

    def __init__(self, item_id: Hashable, *, steps_completed: int = 0, reason: str | None = None) -> None:
        self.item_id = item_id
        self.steps_completed = steps_completed
        msg = f"Work unit for item {item_id} failed after {steps_completed} step(s)"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class SimulatedFailure(BoundRunError):
    """Raised by :class:`~boundrun.work.FlakyWork` for items chosen to fail."""

    def __init__(self, item_id: Hashable, step: int) -> None:
        self.item_id = item_id
        self.step = step
        super().__init__(f"Simulated failure of item {item_id} at step {step}")


class UnitStopped(BoundRunError):
    """Raised inside a blocking unit when its batch is interrupted between steps."""

    def __init__(self, item_id: Hashable, step: int) -> None:
        self.item_id = item_id
        self.step = step
        super().__init__(f"Item {item_id} stopped before step {step}")
