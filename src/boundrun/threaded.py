"""Batch execution on a thread pool.

Blocking counterpart to :func:`~boundrun.scheduler.run_batch` that runs
units on a :class:`~concurrent.futures.ThreadPoolExecutor`.  Admission
follows the same policy: a new unit is submitted only while fewer than
*cap* futures are pending, waiting on
:func:`concurrent.futures.wait` with ``FIRST_COMPLETED`` otherwise.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Hashable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Literal

from ._common import BatchLedger, BatchResult, CancelToken, check_cap, logger
from .executor import execute_blocking
from .items import WorkItem
from .progress import ProgressSink
from .progress_bars import resolve_sink
from .work import SimulatedWork, StepWork


def run_batch_threaded(
    items: Iterable[WorkItem],
    cap: int,
    *,
    sink: ProgressSink | Literal["tqdm"] | None = None,
    work: StepWork | None = None,
    cancel: CancelToken | None = None,
) -> BatchResult:
    """Run every item on at most *cap* worker threads.

    Individual unit failures are captured in
    :attr:`BatchResult.failures` -- the batch never raises due to a single
    unit failing.  If the calling thread is interrupted (for example by
    Ctrl-C), units still in flight stop before their next step and the
    interrupt is re-raised once the pool has shut down.

    Args:
        items: Items in admission order.
        cap: Maximum number of concurrent units (and worker threads).
        sink: A :class:`~boundrun.progress.ProgressSink`, ``"tqdm"``, or
            ``None``.
        work: Supplies the per-step work (default: :class:`SimulatedWork`).
        cancel: Cooperative cancellation flag, typically a
            :class:`threading.Event`.

    Returns:
        A :class:`~boundrun._common.BatchResult`.

    Raises:
        ConfigurationError: If *cap* is less than 1 or *work* cannot plan
            one of the items.
    """
    check_cap(cap)
    batch = tuple(items)
    if work is None:
        work = SimulatedWork()
    work.validate(batch)
    resolved, cleanup = resolve_sink(sink, cap)
    ledger = BatchLedger(batch, resolved)
    running: dict[Future[Hashable], int] = {}
    stop = threading.Event()

    def _drain() -> None:
        done, _ = wait(running, return_when=FIRST_COMPLETED)
        for future in sorted(done, key=running.__getitem__):
            index = running.pop(future)
            ledger.observe(index, future.exception())

    start = time.monotonic()
    try:
        ledger.open()
        with ThreadPoolExecutor(max_workers=cap, thread_name_prefix="boundrun") as executor:
            try:
                for index, item in enumerate(batch):
                    while len(running) >= cap:
                        _drain()
                    if cancel is not None and cancel.is_set():
                        ledger.cancel_from(index)
                        break
                    indicator = ledger.admitted(index)
                    future = executor.submit(execute_blocking, item, indicator, resolved, work=work, stop=stop)
                    running[future] = index
                while running:
                    _drain()
            except BaseException:
                # Worker threads cannot be interrupted; stop them between steps.
                logger.debug("Stopping %d unit(s) still in flight", len(running))
                stop.set()
                raise
        ledger.close()
    finally:
        if cleanup is not None:
            cleanup()

    return ledger.result(time.monotonic() - start)
