"""
Unit tests for donation tracking and pool crediting.
"""

import pytest

from satshunt import db_storage
from satshunt.database import session_scope
from satshunt.donations import split_amount
from satshunt.exceptions import LocationNotFound
from satshunt.models import DONATION_CREATED, DONATION_RECEIVED, DONATION_TIMED_OUT, Donation, PoolCredit
from satshunt.payments.ln import PaymentOutcome


def _credits():
    with session_scope() as session:
        return sorted((c.location_id, c.msats) for c in session.query(PoolCredit).all())


class TestSplitAmount:
    def test_even_split(self):
        assert split_amount(9_000, ["a", "b", "c"]) == [("a", 3_000), ("b", 3_000), ("c", 3_000)]

    def test_remainder_to_first(self):
        assert split_amount(10_001, ["a", "b"]) == [("a", 5_001), ("b", 5_000)]

    def test_no_locations(self):
        assert split_amount(5_000, []) == []

    def test_zero_shares_dropped(self):
        assert split_amount(1, ["a", "b", "c"]) == [("a", 1)]


class TestCreateDonation:
    """Invoice issuance."""

    def test_targeted_donation(self, tracker, make_location, clock):
        card = make_location()

        donation = tracker.create_donation(21_000, card.location_id)

        assert donation["status"] == DONATION_CREATED
        assert donation["amount_msats"] == 21_000
        assert donation["location_id"] == card.location_id
        assert donation["invoice"].startswith("lnbc")
        assert donation["received_at"] is None
        assert donation["expires_at"] > donation["created_at"]

    def test_global_donation(self, tracker):
        donation = tracker.create_donation(1_000)
        assert donation["location_id"] is None

    def test_unknown_location(self, tracker):
        with pytest.raises(LocationNotFound):
            tracker.create_donation(1_000, "missing")

    def test_non_positive_amount(self, tracker):
        with pytest.raises(ValueError):
            tracker.create_donation(0)

    def test_get_donation(self, tracker):
        donation = tracker.create_donation(1_000)
        assert tracker.get_donation(donation["id"]) == donation
        assert tracker.get_donation("missing") is None


class TestConfirm:
    """Transition to received and pool credits."""

    def test_targeted_credit(self, tracker, make_location, clock):
        card = make_location()
        donation = tracker.create_donation(8_000, card.location_id)

        assert tracker.confirm(donation["id"]) is True

        assert _credits() == [(card.location_id, 8_000)]
        received = tracker.get_donation(donation["id"])
        assert received["status"] == DONATION_RECEIVED
        assert received["received_at"] == clock().isoformat()

    def test_duplicate_confirmation_credits_once(self, tracker, make_location):
        card = make_location()
        donation = tracker.create_donation(8_000, card.location_id)

        assert tracker.confirm(donation["id"]) is True
        assert tracker.confirm(donation["id"]) is False

        assert _credits() == [(card.location_id, 8_000)]

    def test_global_split_across_active_locations(self, tracker, make_location, clock):
        first = make_location(name="first")
        clock.advance(1)
        second = make_location(name="second", uid="04000000000002")
        clock.advance(1)
        make_location(name="inactive", active=False, uid="04000000000003")

        donation = tracker.create_donation(10_001)
        tracker.confirm(donation["id"])

        assert dict(_credits()) == {first.location_id: 5_001, second.location_id: 5_000}

    def test_global_without_active_locations_left_unallocated(self, tracker, ledger, db):
        donation = tracker.create_donation(10_000)

        assert tracker.confirm(donation["id"]) is True

        assert _credits() == []
        assert ledger.stats()["unallocated_pool_msats"] == 10_000

    def test_split_happens_at_confirmation_time(self, tracker, make_location, clock):
        """Locations activated after the donation was received get nothing from it."""
        first = make_location(name="first")
        donation = tracker.create_donation(6_000)
        tracker.confirm(donation["id"])

        clock.advance(1)
        make_location(name="late", uid="04000000000004")

        assert _credits() == [(first.location_id, 6_000)]

    def test_expire_after_received_is_noop(self, tracker):
        donation = tracker.create_donation(1_000)
        tracker.confirm(donation["id"])

        assert tracker.expire(donation["id"]) is False
        assert tracker.get_donation(donation["id"])["status"] == DONATION_RECEIVED


class TestRunOnce:
    """Background reconciliation pass."""

    def test_settled_invoice_received(self, tracker, fake_payer, make_location):
        card = make_location()
        donation = tracker.create_donation(5_000, card.location_id)
        invoice_id = _invoice_id(donation["id"])
        fake_payer.invoice_states[invoice_id] = PaymentOutcome.SETTLED

        assert tracker.run_once() == {"received": 1, "timed_out": 0, "pending": 0}
        assert tracker.run_once() == {"received": 0, "timed_out": 0, "pending": 0}
        assert _credits() == [(card.location_id, 5_000)]

    def test_unpaid_invoice_pending_then_timed_out(self, tracker, clock):
        donation = tracker.create_donation(5_000)

        assert tracker.run_once()["pending"] == 1

        clock.advance(601)
        assert tracker.run_once()["timed_out"] == 1
        assert tracker.get_donation(donation["id"])["status"] == DONATION_TIMED_OUT
        assert _credits() == []

    def test_cancelled_invoice_timed_out(self, tracker, fake_payer):
        donation = tracker.create_donation(5_000)
        fake_payer.invoice_states[_invoice_id(donation["id"])] = PaymentOutcome.FAILED

        assert tracker.run_once()["timed_out"] == 1

    def test_lookup_error_keeps_donation_pending(self, tracker, fake_payer, monkeypatch):
        donation = tracker.create_donation(5_000)

        def boom(invoice_id):
            raise ConnectionError("node unreachable")

        monkeypatch.setattr(fake_payer, "invoice_status", boom)

        assert tracker.run_once() == {"received": 0, "timed_out": 0, "pending": 1}
        assert tracker.get_donation(donation["id"])["status"] == DONATION_CREATED


def _invoice_id(donation_id):
    with session_scope() as session:
        return session.get(Donation, donation_id).invoice_id


def test_location_lookup_includes_card(make_location):
    card = make_location()
    location = db_storage.get_location(card.location_id)

    assert location["status"] == "active"
    assert location["card"]["version"] == 1
