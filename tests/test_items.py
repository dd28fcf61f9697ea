"""Tests for work items and batch sources."""

from __future__ import annotations

import pytest

from boundrun.exceptions import ConfigurationError
from boundrun.items import WorkItem, make_items, sequential_items, unique_items


class TestWorkItem:
    """Tests for the WorkItem dataclass."""

    def test_frozen(self) -> None:
        item = WorkItem(id=1, total_steps=10)
        with pytest.raises(AttributeError):
            item.total_steps = 5  # type: ignore[misc]

    def test_equality(self) -> None:
        assert WorkItem(id="a", total_steps=2) == WorkItem(id="a", total_steps=2)

    def test_zero_steps_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="total_steps must be at least 1") as exc_info:
            WorkItem(id=0, total_steps=0)
        assert exc_info.value.field == "total_steps"


class TestSources:
    """Tests for the item sources."""

    def test_sequential_ids(self) -> None:
        items = sequential_items(4, 100)
        assert [i.id for i in items] == [0, 1, 2, 3]
        assert all(i.total_steps == 100 for i in items)

    def test_unique_ids(self) -> None:
        items = unique_items(50, 3)
        ids = [i.id for i in items]
        assert len(set(ids)) == 50
        assert all(isinstance(i, str) and len(i) == 32 for i in ids)

    def test_empty_batch(self) -> None:
        assert sequential_items(0, 10) == ()
        assert unique_items(0, 10) == ()

    def test_negative_count_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="must not be negative"):
            sequential_items(-1, 10)

    def test_make_items_dispatch(self) -> None:
        assert [i.id for i in make_items(3, 1)] == [0, 1, 2]
        assert len(make_items(3, 1, ids="uuid")) == 3

    def test_make_items_unknown_strategy(self) -> None:
        with pytest.raises(ConfigurationError, match="ids must be"):
            make_items(3, 1, ids="random")  # type: ignore[arg-type]
