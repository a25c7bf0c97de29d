"""
SQLAlchemy database models for SatsHunt.

Balances are never stored: every monetary column is an immutable event amount in
millisatoshi and the read model is recomputed from these rows.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# Location lifecycle
LOCATION_CREATED = "created"
LOCATION_PROGRAMMED = "programmed"
LOCATION_ACTIVE = "active"

# PendingWithdrawal lifecycle
WITHDRAWAL_PENDING = "pending"
WITHDRAWAL_COMPLETED = "completed"
WITHDRAWAL_FAILED = "failed"

# Donation lifecycle
DONATION_CREATED = "created"
DONATION_RECEIVED = "received"
DONATION_TIMED_OUT = "timed_out"

# UserTransaction kinds
TX_COLLECT = "collect"
TX_WITHDRAW = "withdraw"


def generate_uuid():
    """Generate a UUID string for primary keys."""
    return str(uuid.uuid4())


def utc_now():
    """Current UTC time as a naive datetime (the form every backend round-trips)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Location(Base):
    """
    A physical spot holding a derived Lightning balance.
    """

    __tablename__ = "locations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    max_capacity_msats = Column(BigInteger, nullable=False)
    status = Column(String(20), nullable=False, default=LOCATION_CREATED)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    activated_at = Column(DateTime)

    # Relationships
    card = relationship("NfcCard", back_populates="location", uselist=False, cascade="all, delete-orphan")

    __table_args__ = (Index("idx_location_status", "status"),)

    def __repr__(self):
        return f"<Location(id={self.id}, name={self.name}, status={self.status})>"


class NfcCard(Base):
    """
    NTAG424 card bound 1:1 to a location.

    Keys are not persisted; they are re-derived from the master key, the card id
    and ``version``.
    """

    __tablename__ = "nfc_cards"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    location_id = Column(String(36), ForeignKey("locations.id"), unique=True, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    uid = Column(String(14))  # 7-byte UID, upper-case hex, set on first use
    counter = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    programmed_at = Column(DateTime)
    last_used_at = Column(DateTime)

    # Relationships
    location = relationship("Location", back_populates="card")

    def __repr__(self):
        return f"<NfcCard(id={self.id}, location={self.location_id}, v={self.version}, ctr={self.counter})>"


class Scan(Base):
    """
    Authenticated tap. Created whether or not the withdrawal later succeeds.
    """

    __tablename__ = "scans"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    location_id = Column(String(36), ForeignKey("locations.id"), nullable=False)
    user_id = Column(String(255), nullable=False)
    counter = Column(Integer, nullable=False)
    scanned_at = Column(DateTime, default=utc_now, nullable=False)
    claim_id = Column(String(36), ForeignKey("claims.id"))
    claimed_at = Column(DateTime)

    __table_args__ = (
        Index("idx_scan_location", "location_id", "scanned_at"),
        Index("idx_scan_user", "user_id"),
    )

    def __repr__(self):
        return f"<Scan(id={self.id}, location={self.location_id}, ctr={self.counter})>"


class Claim(Base):
    """
    Credited withdrawal; immutable once written.
    """

    __tablename__ = "claims"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    location_id = Column(String(36), ForeignKey("locations.id"), nullable=False)
    user_id = Column(String(255), nullable=False)
    msats = Column(BigInteger, nullable=False)
    pending_withdrawal_id = Column(String(36), ForeignKey("pending_withdrawals.id"), unique=True)
    claimed_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (Index("idx_claim_location", "location_id", "claimed_at"),)

    def __repr__(self):
        return f"<Claim(id={self.id}, location={self.location_id}, msats={self.msats})>"


class PendingWithdrawal(Base):
    """
    Reservation against a location's available balance while an invoice is paid.
    """

    __tablename__ = "pending_withdrawals"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    location_id = Column(String(36), ForeignKey("locations.id"), nullable=False)
    user_id = Column(String(255), nullable=False)
    scan_id = Column(String(36))  # scans.claim_id already points back through the claim
    msats = Column(BigInteger, nullable=False)
    invoice = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=WITHDRAWAL_PENDING)
    failure_reason = Column(Text)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index("idx_withdrawal_location_status", "location_id", "status"),
        Index("idx_withdrawal_user_invoice", "user_id", "invoice"),
        # At most one non-terminal reservation per (claimant, invoice)
        Index(
            "uq_withdrawal_pending_user_invoice",
            "user_id",
            "invoice",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self):
        return f"<PendingWithdrawal(id={self.id}, msats={self.msats}, status={self.status})>"


class Donation(Base):
    """
    Incoming payment; ``location_id`` NULL means the shared global pool.
    """

    __tablename__ = "donations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    location_id = Column(String(36), ForeignKey("locations.id"))
    invoice = Column(Text, nullable=False)
    invoice_id = Column(String(128), nullable=False, index=True)  # payer lookup key
    msats = Column(BigInteger, nullable=False)
    status = Column(String(20), nullable=False, default=DONATION_CREATED)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    received_at = Column(DateTime)

    __table_args__ = (Index("idx_donation_status", "status"),)

    def __repr__(self):
        return f"<Donation(id={self.id}, msats={self.msats}, status={self.status})>"


class PoolCredit(Base):
    """
    Portion of a received donation credited to one location (a refill event).
    """

    __tablename__ = "pool_credits"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    donation_id = Column(String(36), ForeignKey("donations.id"), nullable=False)
    location_id = Column(String(36), ForeignKey("locations.id"), nullable=False)
    msats = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("donation_id", "location_id", name="uq_credit_donation_location"),
        Index("idx_credit_location", "location_id", "created_at"),
    )

    def __repr__(self):
        return f"<PoolCredit(location={self.location_id}, msats={self.msats})>"


class UserTransaction(Base):
    """
    Custodial ledger entry for a claimant (``collect`` credits, ``withdraw`` debits).
    """

    __tablename__ = "user_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False)
    kind = Column(String(20), nullable=False)
    msats = Column(BigInteger, nullable=False)
    claim_id = Column(String(36), ForeignKey("claims.id"))
    location_id = Column(String(36), ForeignKey("locations.id"))
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index("idx_transaction_user", "user_id", "created_at"),
        UniqueConstraint("claim_id", "kind", name="uq_transaction_claim_kind"),
    )

    def __repr__(self):
        return f"<UserTransaction(user={self.user_id}, kind={self.kind}, msats={self.msats})>"


class WithdrawChallenge(Base):
    """
    Short-lived LNURL-withdraw ``k1`` issued by the initial request.
    """

    __tablename__ = "withdraw_challenges"

    k1 = Column(String(64), primary_key=True)
    location_id = Column(String(36), ForeignKey("locations.id"), nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime)
    # Claimant and invoice of the callback that consumed the k1
    used_by = Column(String(255))
    invoice = Column(Text)

    __table_args__ = (Index("idx_challenge_expires", "expires_at"),)

    def __repr__(self):
        return f"<WithdrawChallenge(k1={self.k1[:16]}..., location={self.location_id})>"
