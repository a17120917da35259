"""Tests for included-usage allocation."""

from datetime import timedelta

import pytest

from metering.reconcile.allocator import QuotaAllocator, partition_entries
from tests.conftest import PERIOD_START, make_subscription, minutes_into_period


def _entries(store, tenant_id: str, count: int, offset: int = 10):
    return [store.add_entry(tenant_id, minutes_into_period(offset + i)) for i in range(count)]


class TestPartitionEntries:
    """Tests for the pure partition rules."""

    def test_partial_allowance_is_fifo(self, store) -> None:
        """Allowance 5 with 2 already used and 8 pending: oldest 3 free."""
        entries = _entries(store, "acme", 8)
        allocation = partition_entries(list(reversed(entries)), allowance=5, already_reported=2)

        assert [e.id for e in allocation.free] == [e.id for e in entries[:3]]
        assert [e.id for e in allocation.billable] == [e.id for e in entries[3:]]
        assert allocation.remaining_allowance == 0

    def test_zero_allowance_bills_everything(self, store) -> None:
        entries = _entries(store, "acme", 4)
        allocation = partition_entries(entries, allowance=0, already_reported=0)

        assert allocation.free == []
        assert len(allocation.billable) == 4

    def test_within_allowance_all_free(self, store) -> None:
        entries = _entries(store, "acme", 3)
        allocation = partition_entries(entries, allowance=10, already_reported=7)

        assert len(allocation.free) == 3
        assert allocation.billable == []

    def test_allowance_exhausted_all_billable(self, store) -> None:
        entries = _entries(store, "acme", 3)
        allocation = partition_entries(entries, allowance=5, already_reported=5)

        assert allocation.free == []
        assert len(allocation.billable) == 3

    def test_negative_inputs_rejected(self) -> None:
        with pytest.raises(ValueError):
            partition_entries([], allowance=-1, already_reported=0)


class TestQuotaAllocator:
    """Tests for allocation against the ledger."""

    @pytest.mark.asyncio
    async def test_marks_free_entries_without_reference(self, store) -> None:
        for i in range(2):
            store.add_entry("acme", minutes_into_period(i), reported=True)
        entries = _entries(store, "acme", 8)

        allocation = await QuotaAllocator(store).allocate(
            make_subscription("acme", included_usage=5), entries
        )

        assert len(allocation.free) == 3
        assert len(allocation.billable) == 5
        assert store.mark_calls == [([e.id for e in entries[:3]], None)]
        assert all(store.entries[e.id].reported for e in entries[:3])
        assert not any(store.entries[e.id].reported for e in entries[3:])

    @pytest.mark.asyncio
    async def test_zero_allowance_skips_count_query(self, store) -> None:
        entries = _entries(store, "acme", 2)

        allocation = await QuotaAllocator(store).allocate(make_subscription("acme"), entries)

        assert store.count_calls == 0
        assert len(allocation.billable) == 2
        assert store.mark_calls == []

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, store) -> None:
        entries = _entries(store, "acme", 4)

        allocation = await QuotaAllocator(store).allocate(
            make_subscription("acme", included_usage=10), entries, dry_run=True
        )

        assert len(allocation.free) == 4
        assert store.mark_calls == []
        assert not any(e.reported for e in store.entries.values())

    @pytest.mark.asyncio
    async def test_previous_period_usage_not_counted(self, store) -> None:
        """Entries reported before the period start do not consume the allowance."""
        for i in range(5):
            store.add_entry("acme", PERIOD_START - timedelta(days=3, minutes=i), reported=True)
        entries = _entries(store, "acme", 5)

        allocation = await QuotaAllocator(store).allocate(
            make_subscription("acme", included_usage=5), entries
        )

        assert len(allocation.free) == 5
        assert allocation.billable == []
