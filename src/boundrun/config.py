"""Batch configuration.

:class:`BatchConfig` collects the knobs of one batch run and validates
them up front, so configuration errors surface before any unit starts.
The command-line front end builds one from its options; library callers
can construct it directly::

    from boundrun.config import BatchConfig

    config = BatchConfig(item_count=20, max_concurrent=4, seed=7)
    result = asyncio.run(run_batch(config.items(), config.max_concurrent, work=config.work()))
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from .exceptions import ConfigurationError
from .items import IdStrategy, WorkItem, make_items
from .work import DEFAULT_UPPER_BOUND_MS, FlakyWork, SimulatedWork, StepWork

DEFAULT_ITEM_COUNT = 10
DEFAULT_MAX_CONCURRENT = 3
DEFAULT_STEPS_PER_ITEM = 100


@dataclass(frozen=True, slots=True)
class BatchConfig:
    """Validated configuration of one batch run.

    Attributes:
        item_count: Number of items in the batch.
        max_concurrent: Concurrency cap.
        steps_per_item: Progress steps per item.
        max_duration_ms: Upper bound of a simulated item duration.
        ids: Identifier strategy, ``"sequential"`` or ``"uuid"``.
        failure_rate: Fraction of items made to fail (``0`` disables).
        seed: Seed for simulated durations and failures, or ``None``.
    """

    item_count: int = DEFAULT_ITEM_COUNT
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    steps_per_item: int = DEFAULT_STEPS_PER_ITEM
    max_duration_ms: int = DEFAULT_UPPER_BOUND_MS
    ids: IdStrategy = "sequential"
    failure_rate: float = 0.0
    seed: int | None = None

    def __post_init__(self) -> None:
        if self.item_count < 0:
            msg = f"item_count must not be negative, got {self.item_count}"
            raise ConfigurationError(msg, field="item_count")
        if self.max_concurrent < 1:
            msg = f"max_concurrent must be at least 1, got {self.max_concurrent}"
            raise ConfigurationError(msg, field="max_concurrent")
        if self.steps_per_item < 1:
            msg = f"steps_per_item must be at least 1, got {self.steps_per_item}"
            raise ConfigurationError(msg, field="steps_per_item")
        if self.max_duration_ms < self.steps_per_item:
            msg = (
                f"max_duration_ms ({self.max_duration_ms}) must be at least "
                f"steps_per_item ({self.steps_per_item})"
            )
            raise ConfigurationError(msg, field="max_duration_ms")
        if not 0.0 <= self.failure_rate <= 1.0:
            msg = f"failure_rate must be between 0 and 1, got {self.failure_rate}"
            raise ConfigurationError(msg, field="failure_rate")
        if self.ids not in ("sequential", "uuid"):
            msg = f"ids must be 'sequential' or 'uuid' -- got {self.ids!r}"
            raise ConfigurationError(msg, field="ids")

    def items(self) -> tuple[WorkItem, ...]:
        """Build the batch described by this configuration."""
        return make_items(self.item_count, self.steps_per_item, ids=self.ids)

    def work(self) -> StepWork:
        """Build the simulated step work described by this configuration."""
        rng = random.Random(self.seed)
        work: StepWork = SimulatedWork(self.max_duration_ms, rng=rng)
        if self.failure_rate > 0:
            work = FlakyWork(work, self.failure_rate, rng=rng)
        return work
