"""
boundrun: bounded-concurrency batch execution with hierarchical progress.

Runs a fixed batch of independent work items with at most ``cap`` of them
in flight, while reporting one progress indicator per running item and a
summary indicator for the whole batch.

Basic usage:
    import asyncio
    from boundrun import make_items, run_batch

    items = make_items(10, steps=100)
    result = asyncio.run(run_batch(items, 3, sink="tqdm"))
    print(result.aggregate.completed_items, result.failed_ids)
"""

from __future__ import annotations

__version__ = "0.1.0"

from ._common import BatchResult, CompletionEvent, ItemFailure

# Exceptions
from .exceptions import (
    BoundRunError,
    ConfigurationError,
    ProgressStateError,
    SimulatedFailure,
    UnitStopped,
    WorkUnitError,
)
from .config import BatchConfig
from .executor import execute, execute_blocking
from .items import WorkItem, make_items, sequential_items, unique_items
from .progress import (
    AggregateProgress,
    IndicatorHandle,
    ItemProgress,
    ItemStatus,
    NullSink,
    ProgressSink,
    RecordingSink,
)
from .scheduler import BoundedScheduler, run_batch, run_batch_stream
from .threaded import run_batch_threaded
from .work import FlakyWork, NoDelayWork, SimulatedWork, StepPlan, StepWork

__all__ = [
    "AggregateProgress",
    "BatchConfig",
    "BatchResult",
    "BoundRunError",
    "BoundedScheduler",
    "CompletionEvent",
    "ConfigurationError",
    "FlakyWork",
    "IndicatorHandle",
    "ItemFailure",
    "ItemProgress",
    "ItemStatus",
    "NoDelayWork",
    "NullSink",
    "ProgressSink",
    "ProgressStateError",
    "RecordingSink",
    "SimulatedFailure",
    "SimulatedWork",
    "StepPlan",
    "StepWork",
    "UnitStopped",
    "WorkItem",
    "WorkUnitError",
    "__version__",
    "execute",
    "execute_blocking",
    "make_items",
    "run_batch",
    "run_batch_stream",
    "run_batch_threaded",
    "sequential_items",
    "unique_items",
]
