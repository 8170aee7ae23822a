"""
Unit Tests for the balance ledger and state store

Tests cover:
1. Store expiry and conditional operations
2. Capped history lists
3. Clamp-at-zero balance adjustments
4. Spend pre-checks and atomic spends
5. Account record round trips
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import USER_ID
from wallet.history import HistoryLog
from wallet.models import (
    AdjustMode,
    AdjustStep,
    AdminAdjustState,
    AwaitingReceiptFlow,
    HistoryTopic,
    LedgerEntry,
)
from wallet.service import InsufficientFundsError
from wallet.storage import InMemoryStorage, StoreConflictError


class TestInMemoryStorage:
    """Tests for the key/value store."""

    @pytest.mark.asyncio
    async def test_expired_key_reads_as_missing(self, clock):
        """Test that a key past its expiry behaves like a missing key."""
        store = InMemoryStorage(clock=clock)
        await store.put("k", "v", expires_at=clock() + timedelta(seconds=10))
        assert await store.get("k") == "v"

        clock.advance(seconds=10)
        assert await store.get("k") is None
        assert await store.delete("k") is False

    @pytest.mark.asyncio
    async def test_delete_reports_only_first_removal(self, clock):
        """Test that delete is a conditional delete."""
        store = InMemoryStorage(clock=clock)
        await store.put("k", "v")

        assert await store.delete("k") is True
        assert await store.delete("k") is False

    @pytest.mark.asyncio
    async def test_compare_and_set(self, clock):
        """Test that compare_and_set only writes over the expected value."""
        store = InMemoryStorage(clock=clock)
        assert await store.compare_and_set("k", None, "a") is True
        assert await store.compare_and_set("k", None, "b") is False
        assert await store.compare_and_set("k", "a", "b") is True
        assert await store.get("k") == "b"

    @pytest.mark.asyncio
    async def test_compare_and_set_keeps_expiry(self, clock):
        """Test that an update without expiry keeps the original one."""
        store = InMemoryStorage(clock=clock)
        await store.put("k", "a", expires_at=clock() + timedelta(seconds=5))
        await store.compare_and_set("k", "a", "b")

        clock.advance(seconds=5)
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_update_gives_up_under_constant_conflict(self, clock):
        """Test that update raises once its attempts are exhausted."""
        store = InMemoryStorage(clock=clock)

        async def always_conflict(*args, **kwargs):
            return False

        store.compare_and_set = always_conflict
        with pytest.raises(StoreConflictError):
            await store.update("k", lambda raw: "x", attempts=3)


class TestHistoryLog:
    """Tests for the capped history appender."""

    @pytest.mark.asyncio
    async def test_oldest_entries_evicted_first(self, storage, clock):
        """Test FIFO eviction once the cap is reached."""
        log = HistoryLog(storage, cap=3)
        for delta in range(5):
            await log.append(HistoryTopic.BALANCE, USER_ID, LedgerEntry(
                at=clock(), delta=delta, before=0, after=delta, reason="test",
            ))

        entries = await log.read(HistoryTopic.BALANCE, USER_ID, LedgerEntry)
        assert [e.delta for e in entries] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_not_lost(self, storage, clock):
        """Test that interleaved appends all land in the list."""
        log = HistoryLog(storage, cap=50)
        await asyncio.gather(*[
            log.append(HistoryTopic.BALANCE, USER_ID, LedgerEntry(
                at=clock(), delta=i, before=0, after=i, reason="test",
            ))
            for i in range(5)
        ])

        entries = await log.read(HistoryTopic.BALANCE, USER_ID, LedgerEntry)
        assert sorted(e.delta for e in entries) == [0, 1, 2, 3, 4]


class TestAdjustBalance:
    """Tests for the only balance mutator."""

    @pytest.mark.asyncio
    async def test_unknown_account_has_zero_balance(self, wallet):
        """Test that balance of an unseen account is zero."""
        assert await wallet.get_balance(USER_ID) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("deltas", [
        [100, -50, 25],
        [-10, 30, -100, 40],
        [500, -1000, -1, 7],
        [0, 0, -3],
    ])
    async def test_balance_is_clamped_running_sum(self, wallet, deltas):
        """Test that balance never drops below zero and follows the clamped sum."""
        expected = 0
        for delta in deltas:
            change = await wallet.adjust_balance(USER_ID, delta, "test")
            expected = max(0, expected + delta)
            assert change.after == expected
            assert await wallet.get_balance(USER_ID) >= 0

        assert await wallet.get_balance(USER_ID) == expected

    @pytest.mark.asyncio
    async def test_each_call_appends_one_ledger_entry(self, wallet):
        """Test the audit trail of balance changes."""
        await wallet.adjust_balance(USER_ID, 300, "topup-approved", meta={"request_id": "r1"})
        await wallet.adjust_balance(USER_ID, -500, "admin-adjust")

        history = await wallet.balance_history(USER_ID)
        assert len(history) == 2
        assert (history[0].before, history[0].after, history[0].reason) == (0, 300, "topup-approved")
        assert history[0].meta == {"request_id": "r1"}
        assert (history[1].delta, history[1].before, history[1].after) == (-500, 300, 0)

    @pytest.mark.asyncio
    async def test_first_seen_is_set_once(self, wallet, clock):
        """Test that first_seen_at does not move on later contact."""
        first = await wallet.ensure_account(USER_ID)
        clock.advance(days=1)
        await wallet.adjust_balance(USER_ID, 10, "test")

        account = await wallet.get_account(USER_ID)
        assert account.first_seen_at == first.first_seen_at

    @pytest.mark.asyncio
    async def test_spend_scenario_with_precheck(self, wallet):
        """Test top-up, spend, then a rejected spend that leaves balance at zero."""
        await wallet.adjust_balance(USER_ID, 250000, "topup-approved")
        assert await wallet.get_balance(USER_ID) == 250000

        await wallet.require_funds(USER_ID, 250000)
        await wallet.adjust_balance(USER_ID, -250000, "profile-build")
        assert await wallet.get_balance(USER_ID) == 0

        with pytest.raises(InsufficientFundsError) as exc:
            await wallet.require_funds(USER_ID, 250000)
        assert exc.value.balance == 0
        assert exc.value.required == 250000
        assert await wallet.get_balance(USER_ID) == 0
        assert len(await wallet.balance_history(USER_ID)) == 2

    @pytest.mark.asyncio
    async def test_required_funds_checked_at_write(self, wallet):
        """Test that an adjustment needing more than the balance changes nothing."""
        await wallet.adjust_balance(USER_ID, 1000, "topup-approved")
        with pytest.raises(InsufficientFundsError):
            await wallet.adjust_balance(USER_ID, -1001, "profile-build", required=1001)

        assert await wallet.get_balance(USER_ID) == 1000
        assert len(await wallet.balance_history(USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_spends_never_overdraw(self, wallet):
        """Test that two interleaved spends of the whole balance succeed once."""
        await wallet.adjust_balance(USER_ID, 1000, "topup-approved")

        results = await asyncio.gather(
            wallet.adjust_balance(USER_ID, -1000, "profile-build", required=1000),
            wallet.adjust_balance(USER_ID, -1000, "profile-build", required=1000),
            return_exceptions=True,
        )

        assert sum(isinstance(r, InsufficientFundsError) for r in results) == 1
        assert await wallet.get_balance(USER_ID) == 0
        history = await wallet.balance_history(USER_ID)
        assert [(e.delta, e.before, e.after) for e in history] == [(1000, 0, 1000), (-1000, 1000, 0)]


class TestAccountRecord:
    """Tests for the stored account document."""

    @pytest.mark.asyncio
    async def test_flow_state_round_trips(self, wallet):
        """Test that the tagged flow state survives storage."""
        await wallet.set_flow(USER_ID, AwaitingReceiptFlow(expected_amount=500000))
        account = await wallet.get_account(USER_ID)
        assert isinstance(account.flow, AwaitingReceiptFlow)
        assert account.flow.expected_amount == 500000

        await wallet.set_flow(USER_ID, AdminAdjustState(
            step=AdjustStep.AMOUNT, mode=AdjustMode.DECREASE, target_account_id=42,
        ))
        account = await wallet.get_account(USER_ID)
        assert isinstance(account.flow, AdminAdjustState)
        assert account.flow.target_account_id == 42

    def test_amount_step_requires_target(self):
        """Test that an amount step without a target cannot be built."""
        with pytest.raises(ValueError):
            AdminAdjustState(step=AdjustStep.AMOUNT, mode=AdjustMode.INCREASE)

    @pytest.mark.asyncio
    async def test_record_action(self, wallet, clock):
        """Test that the last pressed button is remembered."""
        account = await wallet.record_action(USER_ID, "menu:status")
        assert account.last_action == "menu:status"
        assert account.last_action_at == clock()

    @pytest.mark.asyncio
    async def test_concurrent_writes_keep_balance(self, wallet):
        """Test that flow and action writes racing a credit do not restore the old balance."""
        await wallet.ensure_account(USER_ID)

        await asyncio.gather(
            wallet.adjust_balance(USER_ID, 5000, "admin-adjust"),
            wallet.set_flow(USER_ID, AwaitingReceiptFlow(expected_amount=500000)),
            wallet.record_action(USER_ID, "menu:wallet"),
        )

        account = await wallet.get_account(USER_ID)
        assert account.balance == 5000
        assert isinstance(account.flow, AwaitingReceiptFlow)
        assert account.last_action == "menu:wallet"
        [entry] = await wallet.balance_history(USER_ID)
        assert entry.after == account.balance

    @pytest.mark.asyncio
    async def test_account_status_screen(self, wallet):
        """Test the status screen parameters."""
        await wallet.adjust_balance(USER_ID, 1000, "test")
        result = await wallet.account_status(USER_ID)
        assert result.screen.params["balance"] == 1000
        assert result.screen.params["account_id"] == USER_ID


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
