"""
Unit tests for the ledger engine: fill curve, derived balances and the
reserve / commit / release protocol.
"""

import threading

import pytest

from satshunt.database import session_scope
from satshunt.exceptions import (
    DuplicateWithdrawal,
    InsufficientFunds,
    LocationNotFound,
    WithdrawalStateError,
)
from satshunt.ledger import LedgerEngine, fill_ratio
from satshunt.models import (
    TX_COLLECT,
    WITHDRAWAL_COMPLETED,
    WITHDRAWAL_FAILED,
    Claim,
    PendingWithdrawal,
    UserTransaction,
)

HOUR = 3600


class TestFillRatio:
    """Throttling curve as a pure function of elapsed time."""

    def test_zero_and_negative_elapsed(self):
        assert fill_ratio(0, HOUR) == 0.0
        assert fill_ratio(-10, HOUR) == 0.0

    def test_linear_midpoint(self):
        assert fill_ratio(HOUR / 2, HOUR) == pytest.approx(0.5)

    def test_saturates_at_one(self):
        assert fill_ratio(HOUR, HOUR) == 1.0
        assert fill_ratio(10 * HOUR, HOUR, slowdown=3.0) == 1.0

    def test_slowdown_front_loads_refill(self):
        """With curvature the first half refills more than half."""
        assert fill_ratio(HOUR / 2, HOUR, slowdown=3.0) > 0.5

    def test_monotonic(self):
        for slowdown in (0.0, 0.5, 4.0):
            values = [fill_ratio(t, HOUR, slowdown) for t in range(0, HOUR + 1, 60)]
            assert values == sorted(values)
            assert all(0.0 <= v <= 1.0 for v in values)

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            fill_ratio(10, 0)
        with pytest.raises(ValueError):
            fill_ratio(10, HOUR, slowdown=-1)

    def test_engine_rejects_non_positive_time_to_full(self):
        with pytest.raises(ValueError):
            LedgerEngine(time_to_full_seconds=0)


class TestBalances:
    """Derived balances recomputed from events."""

    def test_pool_and_available_after_full_refill(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)

        balance = ledger.balance(card.location_id)

        assert balance.pool_balance_msats == 10_000
        assert balance.fill_ratio == 1.0
        assert balance.available_msats == 10_000

    def test_nothing_available_right_after_refill(self, ledger, make_location):
        card = make_location(funded_msats=10_000)
        assert ledger.available(card.location_id) == 0

    def test_partial_fill(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR / 4)

        assert ledger.available(card.location_id) == 2_500

    def test_capacity_caps_available(self, ledger, make_location, clock):
        card = make_location(capacity_msats=4_000, funded_msats=10_000)
        clock.advance(HOUR)

        balance = ledger.balance(card.location_id)
        assert balance.pool_balance_msats == 10_000
        assert balance.available_msats == 4_000

    def test_unfunded_location(self, ledger, make_location, clock):
        card = make_location()
        clock.advance(HOUR)
        assert ledger.available(card.location_id) == 0

    def test_unknown_location(self, ledger):
        with pytest.raises(LocationNotFound):
            ledger.balance("missing")

    def test_withdraw_restarts_the_fill(self, ledger, make_location, clock):
        """A location that was just paid out from does not look full again."""
        card = make_location(capacity_msats=10_000, funded_msats=20_000)
        clock.advance(HOUR)

        pending_id = ledger.reserve(card.location_id, "alice", 10_000, "lnbc-a")
        ledger.commit(pending_id)

        balance = ledger.balance(card.location_id)
        assert balance.pool_balance_msats == 10_000
        assert balance.available_msats == 0

        clock.advance(HOUR / 2)
        assert ledger.available(card.location_id) == 5_000


class TestReserve:
    """Reservation against the available balance."""

    def test_full_reservation_blocks_next(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)

        pending_id = ledger.reserve(card.location_id, "alice", 10_000, "lnbc-alice")
        assert pending_id

        with pytest.raises(InsufficientFunds) as exc_info:
            ledger.reserve(card.location_id, "bob", 1, "lnbc-bob")
        assert exc_info.value.available_msats == 0

    def test_pending_reduces_available(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)

        ledger.reserve(card.location_id, "alice", 3_000, "lnbc-alice")

        balance = ledger.balance(card.location_id)
        assert balance.pending_msats == 3_000
        assert balance.available_msats == 7_000
        assert balance.pool_balance_msats == 10_000

    def test_non_positive_amount(self, ledger, make_location):
        card = make_location()
        with pytest.raises(InsufficientFunds):
            ledger.reserve(card.location_id, "alice", 0, "lnbc-zero")

    def test_unknown_location(self, ledger):
        with pytest.raises(LocationNotFound):
            ledger.reserve("missing", "alice", 1_000, "lnbc-x")

    def test_duplicate_pending_for_same_invoice(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)

        ledger.reserve(card.location_id, "alice", 1_000, "lnbc-same")
        with pytest.raises(DuplicateWithdrawal):
            ledger.reserve(card.location_id, "alice", 1_000, "lnbc-same")

    def test_same_invoice_allowed_after_release(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)

        first = ledger.reserve(card.location_id, "alice", 1_000, "lnbc-retry")
        ledger.release(first, "payment failed")

        second = ledger.reserve(card.location_id, "alice", 1_000, "lnbc-retry")
        assert second != first

    def test_concurrent_reserves_never_overdraw(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)

        results = []
        barrier = threading.Barrier(6)

        def attempt(i):
            barrier.wait()
            try:
                results.append(ledger.reserve(card.location_id, f"user-{i}", 4_000, f"lnbc-{i}"))
            except InsufficientFunds:
                results.append(None)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len([r for r in results if r]) == 2
        assert ledger.balance(card.location_id).available_msats == 2_000

    def test_other_locations_unaffected(self, ledger, make_location, clock):
        first = make_location(capacity_msats=10_000, funded_msats=10_000)
        second = make_location(capacity_msats=10_000, funded_msats=10_000, uid="04000000000001")
        clock.advance(HOUR)

        ledger.reserve(first.location_id, "alice", 10_000, "lnbc-a")

        assert ledger.available(first.location_id) == 0
        assert ledger.available(second.location_id) == 10_000


class TestCommitRelease:
    """Terminal transitions of a reservation."""

    def test_commit_creates_claim_and_collect(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)
        pending_id = ledger.reserve(card.location_id, "alice", 6_000, "lnbc-a")

        claim_id = ledger.commit(pending_id)

        with session_scope() as session:
            pending = session.get(PendingWithdrawal, pending_id)
            claim = session.get(Claim, claim_id)
            tx = session.query(UserTransaction).filter_by(claim_id=claim_id).one()

            assert pending.status == WITHDRAWAL_COMPLETED
            assert claim.msats == 6_000
            assert claim.pending_withdrawal_id == pending_id
            assert tx.kind == TX_COLLECT
            assert tx.user_id == "alice"

        assert ledger.balance(card.location_id).pool_balance_msats == 4_000
        assert ledger.user_balance("alice") == 6_000

    def test_commit_is_idempotent(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)
        pending_id = ledger.reserve(card.location_id, "alice", 6_000, "lnbc-a")

        assert ledger.commit(pending_id) == ledger.commit(pending_id)

        with session_scope() as session:
            assert session.query(Claim).count() == 1
            assert session.query(UserTransaction).count() == 1
        assert ledger.balance(card.location_id).pool_balance_msats == 4_000

    def test_release_restores_available(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)
        before = ledger.available(card.location_id)

        pending_id = ledger.reserve(card.location_id, "alice", 4_000, "lnbc-a")
        assert ledger.available(card.location_id) == before - 4_000

        ledger.release(pending_id, "payer reported failure")

        assert ledger.available(card.location_id) == before
        with session_scope() as session:
            pending = session.get(PendingWithdrawal, pending_id)
            assert pending.status == WITHDRAWAL_FAILED
            assert pending.failure_reason == "payer reported failure"

    def test_release_twice_is_noop(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)
        pending_id = ledger.reserve(card.location_id, "alice", 4_000, "lnbc-a")

        ledger.release(pending_id, "first")
        ledger.release(pending_id, "second")

        with session_scope() as session:
            assert session.get(PendingWithdrawal, pending_id).failure_reason == "first"

    def test_commit_after_release_rejected(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)
        pending_id = ledger.reserve(card.location_id, "alice", 4_000, "lnbc-a")
        ledger.release(pending_id, "failed")

        with pytest.raises(WithdrawalStateError):
            ledger.commit(pending_id)

    def test_release_after_commit_rejected(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)
        pending_id = ledger.reserve(card.location_id, "alice", 4_000, "lnbc-a")
        ledger.commit(pending_id)

        with pytest.raises(WithdrawalStateError):
            ledger.release(pending_id, "too late")

    def test_unknown_reservation(self, ledger):
        with pytest.raises(WithdrawalStateError):
            ledger.commit("missing")


class TestUserBalance:
    """Custodial balance derived from transactions."""

    def test_record_withdrawal_debits(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)
        ledger.commit(ledger.reserve(card.location_id, "alice", 5_000, "lnbc-a"))

        ledger.record_withdrawal("alice", 2_000)

        assert ledger.user_balance("alice") == 3_000

    def test_record_withdrawal_overdraw(self, ledger, db):
        with pytest.raises(InsufficientFunds):
            ledger.record_withdrawal("nobody", 1_000)

    def test_record_withdrawal_requires_positive_amount(self, ledger, db):
        with pytest.raises(ValueError):
            ledger.record_withdrawal("alice", 0)

    def test_claim_payout_recorded_once(self, ledger, make_location, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)
        claim_id = ledger.commit(ledger.reserve(card.location_id, "alice", 5_000, "lnbc-a"))

        first = ledger.record_withdrawal("alice", 5_000, claim_id=claim_id)
        second = ledger.record_withdrawal("alice", 5_000, claim_id=claim_id)

        assert first == second
        assert ledger.user_balance("alice") == 0
        with session_scope() as session:
            kinds = sorted(tx.kind for tx in session.query(UserTransaction).filter_by(claim_id=claim_id))
        assert kinds == ["collect", "withdraw"]


class TestLockRegistry:
    def test_unused_locks_are_dropped(self, ledger, db):
        for n in range(50):
            with ledger._lock_for(f"user:{n}"):
                pass

        assert len(ledger._lock_for) == 0

    def test_same_key_shares_lock_while_held(self, ledger):
        lock = ledger._lock_for("loc-1")

        assert ledger._lock_for("loc-1") is lock
        assert ledger._lock_for("loc-2") is not lock


class TestStats:
    def test_stats_aggregates(self, ledger, make_location, fund, clock):
        card = make_location(capacity_msats=10_000, funded_msats=10_000)
        clock.advance(HOUR)
        ledger.commit(ledger.reserve(card.location_id, "alice", 3_000, "lnbc-a"))

        stats = ledger.stats()

        assert stats["total_pool_msats"] == 7_000
        assert stats["total_claims"] == 1
        assert stats["total_claimed_msats"] == 3_000
        assert stats["active_locations"] == 1
        assert stats["unallocated_pool_msats"] == 0
        assert stats["locations"][0]["location_id"] == card.location_id
