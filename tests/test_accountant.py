"""
Anonymity accountant and batch status service tests
"""

import pytest

from services.batching.accountant import (
    AnonymityAccountant,
    ReadyReason,
    SettlementOutcome,
    TimeoutPolicy,
)
from services.batching.status import BatchStatusService
from services.errors import ValidationError

from tests.conftest import ONE_SOL, FakeClock


class TestThreshold:
    """Tests for readiness by deposit count."""

    def test_not_ready_below_threshold(self, accountant):
        accountant.record_deposit(b"a", ONE_SOL)
        status = accountant.record_deposit(b"b", ONE_SOL)
        assert status.pending_count == 2
        assert not status.is_ready
        assert status.ready_reason is ReadyReason.NONE

    def test_ready_at_threshold(self, accountant):
        for c in (b"a", b"b", b"c"):
            status = accountant.record_deposit(c, ONE_SOL)
        assert status.is_ready
        assert status.ready_reason is ReadyReason.THRESHOLD
        assert status.total_amount == 3 * ONE_SOL

    def test_full_batch_rolls_over(self, clock):
        accountant = AnonymityAccountant(threshold=2, max_commitments=3, clock=clock)
        for i in range(3):
            accountant.record_deposit(bytes([i]), ONE_SOL)
        status = accountant.record_deposit(b"x", ONE_SOL)
        assert status.batch_id == 1
        assert status.pending_count == 1
        assert accountant.batch(0).pending_count == 3

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            AnonymityAccountant(threshold=0)
        with pytest.raises(ValueError):
            AnonymityAccountant(threshold=5, max_commitments=4)

    def test_unknown_batch(self, accountant):
        with pytest.raises(ValidationError):
            accountant.batch(9)


class TestTimeout:
    """Tests for the timeout policy."""

    def test_wait_policy_never_ready(self, accountant, clock):
        accountant.record_deposit(b"a", ONE_SOL)
        clock.advance(10_000)
        assert not accountant.is_ready()
        assert accountant.next_ready_batch() is None
        assert accountant.status().time_remaining == 0

    def test_settle_policy_ready_after_timeout(self, clock):
        accountant = AnonymityAccountant(threshold=3, timeout_seconds=600, timeout_policy=TimeoutPolicy.SETTLE, clock=clock)
        accountant.record_deposit(b"a", ONE_SOL)
        clock.advance(599)
        assert not accountant.is_ready()
        clock.advance(1)
        status = accountant.status()
        assert status.is_ready and status.ready_reason is ReadyReason.TIMEOUT
        assert accountant.next_ready_batch().batch_id == 0

    def test_empty_batch_never_times_out(self, clock):
        accountant = AnonymityAccountant(timeout_policy="settle", clock=clock)
        clock.advance(10_000)
        assert not accountant.is_ready()


class TestSettlement:
    """Tests for settle() and its idempotence."""

    def test_settle_ready_batch(self, accountant):
        for c in (b"a", b"b", b"c"):
            accountant.record_deposit(c, ONE_SOL)
        result = accountant.settle(tx_id="tx1")
        assert result.outcome is SettlementOutcome.SETTLED
        assert result.settled_batches == 1
        assert result.tx_id == "tx1"
        # the next deposit lands in a fresh batch
        assert accountant.current.batch_id == 1
        assert accountant.pending_count == 0

    def test_second_settle_is_noop(self, accountant):
        for c in (b"a", b"b", b"c"):
            accountant.record_deposit(c, ONE_SOL)
        accountant.settle(0)
        again = accountant.settle(0)
        assert again.outcome is SettlementOutcome.ALREADY_SETTLED
        assert again.settled_batches == 1

    def test_not_ready(self, accountant):
        accountant.record_deposit(b"a", ONE_SOL)
        result = accountant.settle()
        assert result.outcome is SettlementOutcome.NOT_READY
        assert accountant.pending_count == 1

    def test_force_settle(self, accountant):
        accountant.record_deposit(b"a", ONE_SOL)
        assert accountant.settle(0, force=True).outcome is SettlementOutcome.SETTLED

    def test_status_dict(self, accountant):
        d = accountant.status().to_dict()
        assert d["batchId"] == 0 and d["threshold"] == 3 and d["readyReason"] == "none"


class TestPersistence:
    """Tests for export_state/load_state and the change hook."""

    def test_round_trip(self, accountant, clock):
        for c in (b"a", b"b", b"c"):
            accountant.record_deposit(c, ONE_SOL)
        accountant.settle(tx_id="tx1")
        accountant.record_deposit(b"d", 2 * ONE_SOL)

        restored = AnonymityAccountant(threshold=3, max_commitments=10, clock=clock)
        restored.load_state(accountant.export_state())
        assert restored.current.batch_id == 1
        assert restored.current.commitments == [b"d"]
        assert restored.current.total_amount == 2 * ONE_SOL
        assert restored.settled_batches == 1
        assert restored.batch(0).settled
        assert restored.status().to_dict() == accountant.status().to_dict()

    def test_on_change_fires_on_deposit_and_settle(self, clock):
        snapshots = []
        accountant = AnonymityAccountant(threshold=1, clock=clock, on_change=lambda a: snapshots.append(a.export_state()))
        accountant.record_deposit(b"a", ONE_SOL)
        assert len(snapshots) == 1
        accountant.settle()
        assert len(snapshots) == 2
        assert snapshots[-1]["settledBatches"] == 1
        # a no-op settle does not fire
        accountant.settle(0)
        assert len(snapshots) == 2

    @pytest.mark.parametrize(
        "state",
        [
            {},
            {"currentId": 0, "settledBatches": 0, "batches": [{"batchId": 0}]},
            {"currentId": 3, "settledBatches": 0, "batches": []},
            {"currentId": 0, "settledBatches": 0, "batches": [
                {"batchId": 0, "createdAt": 1.0, "commitments": ["zz"], "denominations": [], "settled": False}
            ]},
        ],
    )
    def test_malformed_snapshot(self, accountant, state):
        accountant.record_deposit(b"a", ONE_SOL)
        with pytest.raises(ValidationError):
            accountant.load_state(state)
        assert accountant.pending_count == 1


class TestStatusService:
    """Tests for the TTL-cached status service."""

    @pytest.mark.asyncio
    async def test_cache_until_ttl(self, accountant):
        mono = FakeClock(0.0)
        service = BatchStatusService.for_accountant(accountant, ttl_seconds=5, clock=mono)
        first = await service.get()
        accountant.record_deposit(b"a", ONE_SOL)
        assert (await service.get()).pending_count == first.pending_count == 0
        mono.advance(5)
        assert (await service.get()).pending_count == 1

    @pytest.mark.asyncio
    async def test_force_refresh_and_invalidate(self, accountant):
        service = BatchStatusService.for_accountant(accountant, ttl_seconds=60, clock=FakeClock(0.0))
        await service.get()
        accountant.record_deposit(b"a", ONE_SOL)
        assert (await service.get(force_refresh=True)).pending_count == 1
        accountant.record_deposit(b"b", ONE_SOL)
        service.invalidate()
        assert (await service.get()).pending_count == 2

    @pytest.mark.asyncio
    async def test_just_settled_window(self, accountant, clock):
        service = BatchStatusService.for_accountant(accountant, just_settled_seconds=5, wall_clock=clock)
        for c in (b"a", b"b", b"c"):
            accountant.record_deposit(c, ONE_SOL)
        accountant.settle()
        status = await service.get(force_refresh=True)
        assert service.just_settled(status)
        clock.advance(6)
        assert not service.just_settled(status)
