"""
Ledger engine: derived balances and the reserve / commit / release primitives.

Nothing here stores a balance. A location's pool is

    sum(pool credits) - sum(claims)

and what it may pay out right now is

    floor(min(pool, max_capacity) * fill_ratio) - outstanding reservations

where ``fill_ratio`` grows with the time since the location was last refilled
or last withdrawn from, whichever is more recent.

Reservations for one location are serialized with a process-local lock plus a
``SELECT ... FOR UPDATE`` on the location row, so concurrent taps cannot
overdraw it while taps on different locations proceed in parallel.
"""

import logging
import math
import threading
import weakref
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from satshunt.database import session_scope
from satshunt.exceptions import (
    DuplicateWithdrawal,
    InsufficientFunds,
    LocationNotFound,
    WithdrawalStateError,
)
from satshunt.models import (
    LOCATION_ACTIVE,
    TX_COLLECT,
    TX_WITHDRAW,
    WITHDRAWAL_COMPLETED,
    WITHDRAWAL_FAILED,
    WITHDRAWAL_PENDING,
    Claim,
    Donation,
    DONATION_RECEIVED,
    Location,
    PendingWithdrawal,
    PoolCredit,
    Scan,
    UserTransaction,
    utc_now,
)

logger = logging.getLogger(__name__)


def fill_ratio(elapsed_seconds: float, time_to_full_seconds: float, slowdown: float = 0.0) -> float:
    """
    Throttling multiplier in [0, 1] as a pure function of elapsed time.

    With ``x = min(elapsed / time_to_full, 1)``:

    * ``slowdown == 0``: linear, ``f(x) = x``
    * ``slowdown > 0``:  ``f(x) = (1 - e^(-k x)) / (1 - e^(-k))``, fast at first
      then flattening, still reaching exactly 1.0 at ``time_to_full``

    ``1 / time_to_full`` is the base refill rate and ``slowdown`` (k) the curvature.
    """
    if time_to_full_seconds <= 0:
        raise ValueError("time_to_full_seconds must be positive")
    if slowdown < 0:
        raise ValueError("slowdown must not be negative")
    if elapsed_seconds <= 0:
        return 0.0

    x = min(elapsed_seconds / time_to_full_seconds, 1.0)
    if x >= 1.0:
        return 1.0
    if slowdown == 0:
        return x
    return (1.0 - math.exp(-slowdown * x)) / (1.0 - math.exp(-slowdown))


@dataclass(frozen=True)
class LocationBalance:
    location_id: str
    pool_balance_msats: int
    pending_msats: int
    available_msats: int
    fill_ratio: float
    max_capacity_msats: int

    def to_dict(self) -> dict:
        return asdict(self)


class _LockRegistry:
    """
    One lock per key, created on demand.

    Entries live only while a caller holds a reference to the lock, so keys
    seen once (claimants, retired locations) do not accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[str, _KeyLock]" = weakref.WeakValueDictionary()

    def __call__(self, key: str) -> "_KeyLock":
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = _KeyLock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class _KeyLock:
    """``threading.Lock`` cannot be weakly referenced; this wrapper can."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self):
        self._lock = threading.Lock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info):
        self._lock.release()


class LedgerEngine:
    """
    Computes available balances and owns the PendingWithdrawal lifecycle.

    Args:
        time_to_full_seconds: elapsed time after which fill_ratio reaches 1.0
        slowdown: curvature of the fill curve, 0 for linear
        clock: returns the current naive-UTC time
        scope: transactional session factory
    """

    def __init__(
        self,
        time_to_full_seconds: float,
        slowdown: float = 0.0,
        clock: Callable[[], datetime] = utc_now,
        scope=session_scope,
    ):
        if time_to_full_seconds <= 0:
            raise ValueError("time_to_full_seconds must be positive")
        self.time_to_full_seconds = time_to_full_seconds
        self.slowdown = slowdown
        self.clock = clock
        self._scope = scope
        self._lock_for = _LockRegistry()

    @classmethod
    def from_config(cls, cfg, **kwargs) -> "LedgerEngine":
        return cls(cfg["REFILL_TIME_TO_FULL_SECONDS"], cfg["REFILL_SLOWDOWN"], **kwargs)

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    @staticmethod
    def _sum(session, column, *criteria) -> int:
        return int(session.query(func.coalesce(func.sum(column), 0)).filter(*criteria).scalar())

    def pool_balance(self, session, location_id: str) -> int:
        credited = self._sum(session, PoolCredit.msats, PoolCredit.location_id == location_id)
        claimed = self._sum(session, Claim.msats, Claim.location_id == location_id)
        return credited - claimed

    def pending_total(self, session, location_id: str) -> int:
        return self._sum(
            session,
            PendingWithdrawal.msats,
            PendingWithdrawal.location_id == location_id,
            PendingWithdrawal.status == WITHDRAWAL_PENDING,
        )

    def _elapsed_seconds(self, session, location: Location, now: datetime) -> float:
        origin = location.activated_at or location.created_at
        last_refill = (
            session.query(func.max(PoolCredit.created_at)).filter(PoolCredit.location_id == location.id).scalar()
            or origin
        )
        last_withdraw = (
            session.query(func.max(Claim.claimed_at)).filter(Claim.location_id == location.id).scalar() or origin
        )
        return min((now - last_refill).total_seconds(), (now - last_withdraw).total_seconds())

    def snapshot(self, session, location: Location, now: Optional[datetime] = None) -> LocationBalance:
        """Balance of ``location`` as seen inside ``session``."""
        now = now or self.clock()
        pool = self.pool_balance(session, location.id)
        pending = self.pending_total(session, location.id)
        ratio = fill_ratio(self._elapsed_seconds(session, location, now), self.time_to_full_seconds, self.slowdown)

        capped = max(0, min(pool, location.max_capacity_msats))
        available = max(0, math.floor(capped * ratio) - pending)
        return LocationBalance(
            location_id=location.id,
            pool_balance_msats=pool,
            pending_msats=pending,
            available_msats=available,
            fill_ratio=ratio,
            max_capacity_msats=location.max_capacity_msats,
        )

    def balance(self, location_id: str) -> LocationBalance:
        with self._scope() as session:
            location = session.get(Location, location_id)
            if location is None:
                raise LocationNotFound(location_id)
            return self.snapshot(session, location)

    def available(self, location_id: str) -> int:
        return self.balance(location_id).available_msats

    def user_balance(self, user_id: str) -> int:
        """Custodial balance: collects minus withdrawals, recomputed on every read."""
        with self._scope() as session:
            collected = self._sum(
                session, UserTransaction.msats, UserTransaction.user_id == user_id, UserTransaction.kind == TX_COLLECT
            )
            withdrawn = self._sum(
                session, UserTransaction.msats, UserTransaction.user_id == user_id, UserTransaction.kind == TX_WITHDRAW
            )
            return collected - withdrawn

    def stats(self) -> dict:
        """Aggregate read model for the stats endpoint."""
        with self._scope() as session:
            now = self.clock()
            locations = session.query(Location).filter(Location.status == LOCATION_ACTIVE).all()
            per_location = [self.snapshot(session, location, now) for location in locations]

            total_credited = self._sum(session, PoolCredit.msats)
            total_claimed = self._sum(session, Claim.msats)
            total_received = self._sum(session, Donation.msats, Donation.status == DONATION_RECEIVED)

            return {
                "total_pool_msats": total_credited - total_claimed,
                "unallocated_pool_msats": total_received - total_credited,
                "total_available_msats": sum(b.available_msats for b in per_location),
                "total_claims": session.query(func.count(Claim.id)).scalar(),
                "total_claimed_msats": total_claimed,
                "total_scans": session.query(func.count(Scan.id)).scalar(),
                "active_locations": len(per_location),
                "locations": [b.to_dict() for b in per_location],
            }

    # ------------------------------------------------------------------
    # Reservation protocol
    # ------------------------------------------------------------------

    def reserve(
        self,
        location_id: str,
        user_id: str,
        amount_msats: int,
        invoice: str,
        scan_id: Optional[str] = None,
    ) -> str:
        """
        Hold ``amount_msats`` against the location.

        Returns:
            id of the new PendingWithdrawal

        Raises:
            InsufficientFunds: amount exceeds what the location may release now
            DuplicateWithdrawal: a pending reservation exists for (user, invoice)
        """
        if amount_msats <= 0:
            raise InsufficientFunds(amount_msats, 0)

        with self._lock_for(location_id):
            try:
                with self._scope() as session:
                    location = session.query(Location).filter_by(id=location_id).with_for_update().one_or_none()
                    if location is None:
                        raise LocationNotFound(location_id)

                    balance = self.snapshot(session, location)
                    if amount_msats > balance.available_msats:
                        raise InsufficientFunds(amount_msats, balance.available_msats)

                    pending = PendingWithdrawal(
                        location_id=location_id,
                        user_id=user_id,
                        scan_id=scan_id,
                        msats=amount_msats,
                        invoice=invoice,
                        status=WITHDRAWAL_PENDING,
                        created_at=self.clock(),
                    )
                    session.add(pending)
                    session.flush()
                    pending_id = pending.id
            except IntegrityError as exc:
                raise DuplicateWithdrawal(f"pending withdrawal exists for {user_id}") from exc

        logger.info(f"Reserved {amount_msats} msat at {location_id} ({pending_id})")
        return pending_id

    def _location_of(self, pending_id: str) -> str:
        with self._scope() as session:
            pending = session.get(PendingWithdrawal, pending_id)
            if pending is None:
                raise WithdrawalStateError(f"unknown pending withdrawal {pending_id}")
            return pending.location_id

    def commit(self, pending_id: str) -> str:
        """
        Turn a reservation into a Claim plus a ``collect`` transaction.

        Idempotent: committing an already completed reservation returns the
        existing claim id.

        Raises:
            WithdrawalStateError: the reservation was released
        """
        with self._lock_for(self._location_of(pending_id)):
            with self._scope() as session:
                pending = session.query(PendingWithdrawal).filter_by(id=pending_id).with_for_update().one()

                if pending.status == WITHDRAWAL_COMPLETED:
                    claim = session.query(Claim).filter_by(pending_withdrawal_id=pending.id).one()
                    logger.debug(f"Commit of {pending_id} already applied")
                    return claim.id
                if pending.status == WITHDRAWAL_FAILED:
                    raise WithdrawalStateError(f"cannot commit released withdrawal {pending_id}")

                now = self.clock()
                claim = Claim(
                    location_id=pending.location_id,
                    user_id=pending.user_id,
                    msats=pending.msats,
                    pending_withdrawal_id=pending.id,
                    claimed_at=now,
                )
                session.add(claim)
                session.flush()

                session.add(
                    UserTransaction(
                        user_id=pending.user_id,
                        kind=TX_COLLECT,
                        msats=pending.msats,
                        claim_id=claim.id,
                        location_id=pending.location_id,
                        created_at=now,
                    )
                )

                if pending.scan_id:
                    scan = session.get(Scan, pending.scan_id)
                    if scan is not None:
                        scan.claim_id = claim.id
                        scan.claimed_at = now

                pending.status = WITHDRAWAL_COMPLETED
                pending.completed_at = now
                claim_id = claim.id

        logger.info(f"Committed {pending_id} as claim {claim_id}")
        return claim_id

    def release(self, pending_id: str, reason: str) -> None:
        """
        Mark a reservation failed so its amount is available again.

        Releasing twice is a no-op; releasing a completed one is an error.
        """
        with self._lock_for(self._location_of(pending_id)):
            with self._scope() as session:
                pending = session.query(PendingWithdrawal).filter_by(id=pending_id).with_for_update().one()

                if pending.status == WITHDRAWAL_FAILED:
                    return
                if pending.status == WITHDRAWAL_COMPLETED:
                    raise WithdrawalStateError(f"cannot release committed withdrawal {pending_id}")

                pending.status = WITHDRAWAL_FAILED
                pending.failure_reason = reason
                pending.completed_at = self.clock()

        logger.info(f"Released {pending_id}: {reason}")

    def record_withdrawal(self, user_id: str, amount_msats: int, claim_id: Optional[str] = None) -> str:
        """
        Debit a claimant's custodial balance after an external payout.

        With ``claim_id`` the debit is the payout of that claim's collect and is
        recorded at most once; a repeat returns the existing transaction id.

        Raises:
            InsufficientFunds: amount exceeds the computed custodial balance
        """
        if amount_msats <= 0:
            raise ValueError("amount must be positive")
        with self._lock_for(f"user:{user_id}"):
            if claim_id is not None:
                existing = self._withdrawal_for_claim(claim_id)
                if existing is not None:
                    return existing

            balance = self.user_balance(user_id)
            if amount_msats > balance:
                raise InsufficientFunds(amount_msats, balance)
            try:
                with self._scope() as session:
                    tx = UserTransaction(
                        user_id=user_id,
                        kind=TX_WITHDRAW,
                        msats=amount_msats,
                        claim_id=claim_id,
                        created_at=self.clock(),
                    )
                    session.add(tx)
                    session.flush()
                    tx_id = tx.id
            except IntegrityError:
                # Another process recorded the same claim's payout first
                existing = self._withdrawal_for_claim(claim_id) if claim_id else None
                if existing is None:
                    raise
                return existing

        logger.info(f"Recorded {amount_msats} msat withdrawal for {user_id}")
        return tx_id

    def _withdrawal_for_claim(self, claim_id: str) -> Optional[str]:
        with self._scope() as session:
            tx = session.query(UserTransaction).filter_by(claim_id=claim_id, kind=TX_WITHDRAW).one_or_none()
            return tx.id if tx else None
