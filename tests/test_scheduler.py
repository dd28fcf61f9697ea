"""Tests for the async bounded scheduler."""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from unittest.mock import MagicMock, patch

import pytest
from conftest import TrackingWork

from boundrun._common import CompletionEvent
from boundrun.exceptions import ConfigurationError, WorkUnitError
from boundrun.items import WorkItem, sequential_items
from boundrun.progress import NullSink, RecordingSink
from boundrun.scheduler import BoundedScheduler, run_batch, run_batch_stream
from boundrun.work import FlakyWork, NoDelayWork, SimulatedWork, StepPlan, StepWork


def _aggregate_positions(sink: RecordingSink) -> list[int]:
    """Running aggregate count after each aggregate advance."""
    assert sink.aggregate is not None
    positions = []
    total = 0
    for event in sink.events_for(sink.aggregate):
        if event.kind == "advance":
            total += event.value  # type: ignore[operator]
            positions.append(total)
    return positions


class _GatedWork(StepWork):
    """Work whose items block on their first step until released."""

    def __init__(self) -> None:
        self.gates: dict[object, asyncio.Event] = {}

    def plan(self, item: WorkItem) -> StepPlan:
        gate = self.gates.setdefault(item.id, asyncio.Event())
        return _GatedPlan(gate)


class _GatedPlan(StepPlan):
    def __init__(self, gate: asyncio.Event) -> None:
        self.gate = gate

    async def step(self, index: int) -> None:
        await self.gate.wait()

    def step_blocking(self, index: int) -> None:
        pass


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestValidation:
    """Invalid configurations fail before any work starts."""

    @pytest.mark.asyncio
    async def test_zero_cap_rejected(self, sink: RecordingSink) -> None:
        with pytest.raises(ConfigurationError, match="max_concurrent must be at least 1"):
            await run_batch(sequential_items(3, 1), 0, sink=sink)
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_negative_cap_rejected_by_stream(self) -> None:
        with pytest.raises(ConfigurationError):
            async for _ in run_batch_stream(sequential_items(3, 1), -1):
                pass

    def test_scheduler_rejects_zero_cap(self) -> None:
        with pytest.raises(ConfigurationError):
            BoundedScheduler([], 0, sink=NullSink())

    @pytest.mark.asyncio
    async def test_duration_bound_below_steps_rejected(self, sink: RecordingSink) -> None:
        with pytest.raises(ConfigurationError, match="at least the number of steps") as exc_info:
            await run_batch(sequential_items(3, 200), 2, sink=sink, work=SimulatedWork(100))
        assert exc_info.value.field == "max_duration_ms"
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_wrapped_work_bound_rejected_by_stream(self, sink: RecordingSink) -> None:
        work = FlakyWork(SimulatedWork(10), 0.5)
        with pytest.raises(ConfigurationError, match="number of steps"):
            async for _ in run_batch_stream(sequential_items(2, 20), 1, sink=sink, work=work):
                pass
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_invalid_sink_string(self) -> None:
        with pytest.raises(ValueError, match="sink must be 'tqdm'"):
            await run_batch(sequential_items(1, 1), 1, sink="rich")  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    """End-to-end batch behaviour."""

    @pytest.mark.asyncio
    async def test_empty_batch_finishes_immediately(self, sink: RecordingSink, tracker: TrackingWork) -> None:
        result = await run_batch([], 3, sink=sink, work=tracker)

        assert result.aggregate.total_items == 0
        assert result.aggregate.completed_items == 0
        assert result.aggregate.is_complete
        assert result.all_succeeded
        assert result.exit_code == 0
        assert tracker.planned == []
        assert sink.aggregate is not None
        state = sink.state(sink.aggregate)
        assert state.finished
        assert state.message == "All work finished"

    @pytest.mark.asyncio
    async def test_cap_one_runs_strictly_sequentially(self, sink: RecordingSink, tracker: TrackingWork) -> None:
        result = await run_batch(sequential_items(5, 4), 1, sink=sink, work=tracker)

        assert tracker.peak == 1
        assert result.peak_running == 1
        assert result.succeeded_ids == (0, 1, 2, 3, 4)

        # Each item's indicator is created only after the previous one finished.
        handles = sink.item_handles()
        assert len(handles) == 5
        for previous, current in zip(handles, handles[1:]):
            finish_at = sink.events.index(next(e for e in sink.events_for(previous) if e.kind == "finish"))
            create_at = sink.events.index(sink.events_for(current)[0])
            assert finish_at < create_at

    @pytest.mark.asyncio
    async def test_cap_three_never_exceeded(self, sink: RecordingSink, tracker: TrackingWork) -> None:
        result = await run_batch(sequential_items(10, 100), 3, sink=sink, work=tracker)

        assert tracker.peak == 3
        assert result.peak_running == 3
        assert result.aggregate.completed_items == 10
        assert sorted(result.succeeded_ids) == list(range(10))  # type: ignore[type-var]

    @pytest.mark.asyncio
    async def test_cap_above_item_count_runs_everything_at_once(self, tracker: TrackingWork) -> None:
        result = await run_batch(sequential_items(4, 5), 10, work=tracker)
        assert tracker.peak == 4
        assert result.aggregate.completed_items == 4

    @pytest.mark.asyncio
    async def test_admission_in_source_order(self, tracker: TrackingWork) -> None:
        await run_batch(sequential_items(12, 3), 4, work=tracker)
        assert tracker.planned == list(range(12))

    @pytest.mark.asyncio
    async def test_failed_unit_frees_slot_and_is_reported(self, sink: RecordingSink) -> None:
        tracker = TrackingWork(fail_ids={4}, fail_at=10)
        result = await run_batch(sequential_items(10, 50), 3, sink=sink, work=tracker)

        assert tracker.peak <= 3
        assert tracker.planned == list(range(10))
        assert result.aggregate.completed_items == 10
        assert result.aggregate.failed_items == 1
        assert result.aggregate.succeeded_items == 9
        assert len(result.succeeded_ids) == 9
        assert 4 not in result.succeeded_ids
        assert result.failed_ids == (4,)
        failure = result.failures[0]
        assert isinstance(failure.error, WorkUnitError)
        assert isinstance(failure.error.__cause__, RuntimeError)
        assert failure.error.steps_completed == 10
        assert not result.all_succeeded
        assert result.exit_code == 1
        assert sink.aggregate is not None
        assert sink.state(sink.aggregate).message == "Finished with 1 failure(s)"

    @pytest.mark.asyncio
    async def test_every_unit_failing_still_completes_batch(self) -> None:
        tracker = TrackingWork(fail_ids=set(range(6)), fail_at=0)
        result = await run_batch(sequential_items(6, 3), 2, work=tracker)
        assert result.aggregate.completed_items == 6
        assert result.aggregate.failed_items == 6
        assert result.succeeded_ids == ()


# ---------------------------------------------------------------------------
# Aggregate accounting
# ---------------------------------------------------------------------------


class TestAggregateAccounting:
    """The aggregate advances by exactly one per completion."""

    @pytest.mark.asyncio
    async def test_aggregate_advances_once_per_completion(self, sink: RecordingSink, tracker: TrackingWork) -> None:
        await run_batch(sequential_items(10, 20), 3, sink=sink, work=tracker)
        assert _aggregate_positions(sink) == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_aggregate_finished_last(self, sink: RecordingSink, instant_work: NoDelayWork) -> None:
        await run_batch(sequential_items(5, 2), 2, sink=sink, work=instant_work)
        assert sink.aggregate is not None
        assert sink.events[-1].kind == "finish"
        assert sink.events[-1].key == sink.aggregate.key
        assert sink.layout() == [sink.aggregate]

    @pytest.mark.asyncio
    async def test_aggregate_always_last_in_layout(self, instant_work: NoDelayWork) -> None:
        layouts = []

        class _LayoutSink(RecordingSink):
            def _render_create(self, handle, index):  # type: ignore[no-untyped-def]
                super()._render_create(handle, index)
                layouts.append(list(self._layout))

        sink = _LayoutSink()
        await run_batch(sequential_items(8, 3), 3, sink=sink, work=instant_work)
        assert sink.aggregate is not None
        assert len(layouts) == 9
        assert all(layout[-1] == sink.aggregate for layout in layouts)
        assert max(len(layout) for layout in layouts) == 4

    @pytest.mark.asyncio
    async def test_each_unit_reports_all_steps_before_finish(self, sink: RecordingSink, tracker: TrackingWork) -> None:
        await run_batch(sequential_items(6, 25), 2, sink=sink, work=tracker)
        for handle in sink.item_handles():
            kinds = [e.kind for e in sink.events_for(handle)]
            assert kinds == ["create", "message"] + ["advance"] * 25 + ["finish"]

    @pytest.mark.asyncio
    async def test_deterministic_runs_agree(self, instant_work: NoDelayWork) -> None:
        first = await run_batch(sequential_items(9, 7), 4, work=instant_work)
        second = await run_batch(sequential_items(9, 7), 4, work=instant_work)
        assert first.aggregate == second.aggregate
        assert set(first.succeeded_ids) == set(second.succeeded_ids)

    @pytest.mark.asyncio
    async def test_completion_order_not_fifo(self, sink: RecordingSink) -> None:
        work = _GatedWork()
        scheduler = BoundedScheduler(sequential_items(2, 1), 2, sink=sink, work=work)
        events: list[CompletionEvent] = []

        async def consume() -> None:
            async for event in scheduler.events():
                events.append(event)

        consumer = asyncio.create_task(consume())
        for _ in range(5):
            await asyncio.sleep(0)
        assert scheduler.running == 2
        work.gates[1].set()
        for _ in range(5):
            await asyncio.sleep(0)
        work.gates[0].set()
        await consumer

        assert [e.item_id for e in events] == [1, 0]
        assert [e.completed for e in events] == [1, 2]


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestRunBatchStream:
    """Tests for run_batch_stream()."""

    @pytest.mark.asyncio
    async def test_yields_all_events(self, instant_work: NoDelayWork) -> None:
        events = [e async for e in run_batch_stream(sequential_items(7, 3), 3, work=instant_work)]
        assert len(events) == 7
        assert [e.completed for e in events] == list(range(1, 8))
        assert all(e.total == 7 for e in events)
        assert {e.index for e in events} == set(range(7))
        assert all(e.success for e in events)

    @pytest.mark.asyncio
    async def test_event_carries_failure(self) -> None:
        tracker = TrackingWork(fail_ids={"b"}, fail_at=0)
        items = [WorkItem(id="a", total_steps=2), WorkItem(id="b", total_steps=2)]
        events = {e.item_id: e async for e in run_batch_stream(items, 2, work=tracker)}
        assert events["a"].success
        assert not events["b"].success
        assert isinstance(events["b"].error, WorkUnitError)

    @pytest.mark.asyncio
    async def test_early_break_cancels_remaining(self, sink: RecordingSink) -> None:
        work = _GatedWork()
        items = sequential_items(4, 1)
        stream = run_batch_stream(items, 2, sink=sink, work=work)

        async def release_first() -> None:
            while 0 not in work.gates:
                await asyncio.sleep(0)
            work.gates[0].set()

        releaser = asyncio.create_task(release_first())
        async with aclosing(stream) as events:
            async for event in events:
                assert event.item_id == 0
                break
        await releaser

        # Item 1 was still in flight and got cancelled; nothing after it was admitted.
        first, second = sink.item_handles()
        assert sink.state(first).message == "done item 0"
        assert sink.state(second).message == "failed item 1"
        assert 2 not in work.gates
        assert sink.layout() == [sink.aggregate]

    def test_frozen_event(self) -> None:
        event = CompletionEvent(index=0, item_id=1, error=None, completed=1, total=1)
        with pytest.raises(AttributeError):
            event.completed = 2  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    """Cooperative and external cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_event_stops_admission(self, sink: RecordingSink) -> None:
        work = _GatedWork()
        cancel = asyncio.Event()
        batch = asyncio.create_task(run_batch(sequential_items(6, 1), 2, sink=sink, work=work, cancel=cancel))
        for _ in range(5):
            await asyncio.sleep(0)
        cancel.set()
        work.gates[0].set()
        work.gates[1].set()
        result = await batch

        assert result.succeeded_ids == (0, 1)
        assert result.cancelled_ids == (2, 3, 4, 5)
        assert result.cancelled
        assert result.exit_code == 1
        assert result.aggregate.completed_items == 2
        assert sink.aggregate is not None
        assert sink.state(sink.aggregate).message == "Batch cancelled"

    @pytest.mark.asyncio
    async def test_cancel_before_start_admits_nothing(self, tracker: TrackingWork) -> None:
        cancel = asyncio.Event()
        cancel.set()
        result = await run_batch(sequential_items(3, 1), 2, work=tracker, cancel=cancel)
        assert tracker.planned == []
        assert result.cancelled_ids == (0, 1, 2)

    @pytest.mark.asyncio
    async def test_task_cancellation_cancels_units(self, sink: RecordingSink) -> None:
        work = _GatedWork()
        batch = asyncio.create_task(run_batch(sequential_items(5, 1), 2, sink=sink, work=work))
        for _ in range(5):
            await asyncio.sleep(0)
        batch.cancel()

        with pytest.raises(asyncio.CancelledError):
            await batch

        handles = sink.item_handles()
        assert len(handles) == 2
        assert all(sink.state(h).message.startswith("failed item") for h in handles)


# ---------------------------------------------------------------------------
# tqdm shorthand
# ---------------------------------------------------------------------------


class TestTqdmShorthand:
    """run_batch(sink="tqdm") creates and closes a tqdm sink."""

    @pytest.mark.asyncio
    @patch("boundrun.progress_bars._import_tqdm")
    async def test_tqdm_sink_created_and_closed(self, mock_import: MagicMock, instant_work: NoDelayWork) -> None:
        mock_tqdm_cls = MagicMock()
        mock_import.return_value = mock_tqdm_cls

        result = await run_batch(sequential_items(3, 2), 2, sink="tqdm", work=instant_work)

        assert result.aggregate.completed_items == 3
        # One aggregate bar plus one bar per item.
        assert mock_tqdm_cls.call_count == 4
        positions = [c.kwargs["position"] for c in mock_tqdm_cls.call_args_list]
        assert positions[0] == 2
        assert all(p < 2 for p in positions[1:])

    @pytest.mark.asyncio
    @patch("boundrun.progress_bars._import_tqdm")
    async def test_stream_closes_bars_when_abandoned(self, mock_import: MagicMock, instant_work: NoDelayWork) -> None:
        bars: list[MagicMock] = []

        def make_bar(**kwargs: object) -> MagicMock:
            bar = MagicMock()
            bars.append(bar)
            return bar

        mock_import.return_value = MagicMock(side_effect=make_bar)

        async with aclosing(run_batch_stream(sequential_items(6, 3), 2, sink="tqdm", work=instant_work)) as events:
            async for _ in events:
                break

        assert bars
        for bar in bars:
            bar.close.assert_called_once()
