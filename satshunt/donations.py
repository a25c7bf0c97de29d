"""
Donation tracking.

Donations are invoices we issue. A background loop polls the payer for every
donation still in ``created`` state: a settled invoice becomes ``received`` and
is credited to its location (or split across all active locations when it was
given to the global pool); an invoice past its deadline becomes ``timed_out``.
All state lives in the store, so after a restart the loop simply picks up the
``created`` rows again.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from satshunt import metrics
from satshunt.audit_logger import get_audit_logger
from satshunt.database import session_scope
from satshunt.exceptions import LocationNotFound
from satshunt.models import (
    DONATION_CREATED,
    DONATION_RECEIVED,
    DONATION_TIMED_OUT,
    LOCATION_ACTIVE,
    Donation,
    Location,
    PoolCredit,
    utc_now,
)
from satshunt.payments.ln import LightningPayer, PaymentOutcome

logger = logging.getLogger(__name__)


def split_amount(msats: int, location_ids: List[str]) -> List[Tuple[str, int]]:
    """Split ``msats`` evenly; the remainder goes to the first location."""
    if not location_ids:
        return []
    share, remainder = divmod(msats, len(location_ids))
    parts = [(location_id, share) for location_id in location_ids]
    parts[0] = (parts[0][0], share + remainder)
    return [(location_id, amount) for location_id, amount in parts if amount > 0]


def _to_dict(donation: Donation) -> Dict:
    return {
        "id": donation.id,
        "location_id": donation.location_id,
        "invoice": donation.invoice,
        "amount_msats": donation.msats,
        "status": donation.status,
        "created_at": donation.created_at.isoformat(),
        "expires_at": donation.expires_at.isoformat(),
        "received_at": donation.received_at.isoformat() if donation.received_at else None,
    }


class DonationTracker:
    """
    Issues donation invoices and reconciles their settlement into pool credits.

    Args:
        payer: Lightning backend issuing and reporting on invoices
        expiry_seconds: invoice lifetime and donation deadline
        clock: returns the current naive-UTC time
    """

    def __init__(self, payer: LightningPayer, expiry_seconds: int = 3600, clock: Callable[[], datetime] = utc_now):
        self.payer = payer
        self.expiry_seconds = expiry_seconds
        self.clock = clock

    def create_donation(self, amount_msats: int, location_id: Optional[str] = None, memo: Optional[str] = None) -> Dict:
        """Issue an invoice and record the donation as ``created``."""
        if amount_msats <= 0:
            raise ValueError("amount must be positive")

        if location_id is not None:
            with session_scope() as session:
                if session.get(Location, location_id) is None:
                    raise LocationNotFound(location_id)

        memo = memo or ("SatsHunt donation" if location_id is None else f"SatsHunt donation to {location_id}")
        payment_request, invoice_id = self.payer.create_invoice(amount_msats, memo, self.expiry_seconds)

        now = self.clock()
        with session_scope() as session:
            donation = Donation(
                location_id=location_id,
                invoice=payment_request,
                invoice_id=invoice_id,
                msats=amount_msats,
                status=DONATION_CREATED,
                created_at=now,
                expires_at=now + timedelta(seconds=self.expiry_seconds),
            )
            session.add(donation)
            session.flush()
            result = _to_dict(donation)

        get_audit_logger().log_donation(result["id"], DONATION_CREATED, amount_msats, location_id)
        metrics.donations_total.labels(status=DONATION_CREATED).inc()
        return result

    def get_donation(self, donation_id: str) -> Optional[Dict]:
        with session_scope() as session:
            donation = session.get(Donation, donation_id)
            return _to_dict(donation) if donation else None

    def confirm(self, donation_id: str) -> bool:
        """
        Mark a donation received and append its pool credits.

        The status change is a conditional update from ``created``, so a
        duplicate confirmation credits nothing.

        Returns:
            True if this call performed the transition
        """
        now = self.clock()
        with session_scope() as session:
            updated = (
                session.query(Donation)
                .filter(Donation.id == donation_id, Donation.status == DONATION_CREATED)
                .update({Donation.status: DONATION_RECEIVED, Donation.received_at: now}, synchronize_session=False)
            )
            if updated != 1:
                return False

            donation = session.get(Donation, donation_id)
            if donation.location_id:
                credits = [(donation.location_id, donation.msats)]
            else:
                active = [
                    row.id
                    for row in session.query(Location.id)
                    .filter(Location.status == LOCATION_ACTIVE)
                    .order_by(Location.created_at, Location.id)
                    .all()
                ]
                credits = split_amount(donation.msats, active)
                if not credits:
                    logger.warning(f"Donation {donation_id} received with no active locations; left unallocated")

            for location_id, msats in credits:
                session.add(PoolCredit(donation_id=donation_id, location_id=location_id, msats=msats, created_at=now))
            msats, target = donation.msats, donation.location_id

        get_audit_logger().log_donation(donation_id, DONATION_RECEIVED, msats, target)
        metrics.donations_total.labels(status=DONATION_RECEIVED).inc()
        logger.info(f"Donation {donation_id} received: {msats} msat over {len(credits)} location(s)")
        return True

    def expire(self, donation_id: str) -> bool:
        """Move a still-created donation to ``timed_out``. No ledger effect."""
        with session_scope() as session:
            updated = (
                session.query(Donation)
                .filter(Donation.id == donation_id, Donation.status == DONATION_CREATED)
                .update({Donation.status: DONATION_TIMED_OUT}, synchronize_session=False)
            )
        if updated == 1:
            get_audit_logger().log_donation(donation_id, DONATION_TIMED_OUT, 0)
            metrics.donations_total.labels(status=DONATION_TIMED_OUT).inc()
            return True
        return False

    def run_once(self) -> Dict[str, int]:
        """
        One reconciliation pass over every ``created`` donation.

        Returns:
            counts of received, timed out and still pending donations
        """
        with session_scope() as session:
            rows = [
                (d.id, d.invoice_id, d.expires_at)
                for d in session.query(Donation).filter_by(status=DONATION_CREATED).order_by(Donation.created_at)
            ]

        counts = {"received": 0, "timed_out": 0, "pending": 0}
        now = self.clock()
        for donation_id, invoice_id, expires_at in rows:
            try:
                outcome = PaymentOutcome(self.payer.invoice_status(invoice_id))
            except Exception as e:
                logger.warning(f"Invoice lookup for donation {donation_id} failed: {e}")
                counts["pending"] += 1
                continue

            if outcome == PaymentOutcome.SETTLED:
                if self.confirm(donation_id):
                    counts["received"] += 1
            elif outcome == PaymentOutcome.FAILED or now > expires_at:
                if self.expire(donation_id):
                    counts["timed_out"] += 1
            else:
                counts["pending"] += 1

        return counts
