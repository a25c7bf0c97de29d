"""
Database-backed storage helpers for SatsHunt.

Small dict-returning accessors used by the HTTP layer and the withdraw protocol.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Dict, Optional

from satshunt.database import session_scope
from satshunt.models import (
    LOCATION_CREATED,
    Location,
    NfcCard,
    WithdrawChallenge,
    utc_now,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Location Management
# ============================================================================


def create_location(
    name: str,
    latitude: float,
    longitude: float,
    max_capacity_msats: int,
    status: str = LOCATION_CREATED,
    created_at: Optional[datetime] = None,
) -> str:
    """Insert a location and return its id."""
    if max_capacity_msats <= 0:
        raise ValueError("max_capacity_msats must be positive")
    with session_scope() as session:
        location = Location(
            name=name,
            latitude=latitude,
            longitude=longitude,
            max_capacity_msats=max_capacity_msats,
            status=status,
            created_at=created_at or utc_now(),
        )
        session.add(location)
        session.flush()
        return location.id


def get_location(location_id: str) -> Optional[Dict]:
    """Retrieve a location together with its card state."""
    with session_scope() as session:
        location = session.get(Location, location_id)
        if not location:
            return None

        card = session.query(NfcCard).filter_by(location_id=location_id).first()
        return {
            "id": location.id,
            "name": location.name,
            "latitude": location.latitude,
            "longitude": location.longitude,
            "max_capacity_msats": location.max_capacity_msats,
            "status": location.status,
            "created_at": location.created_at.isoformat(),
            "activated_at": location.activated_at.isoformat() if location.activated_at else None,
            "card": (
                {
                    "version": card.version,
                    "uid": card.uid,
                    "counter": card.counter,
                    "programmed_at": card.programmed_at.isoformat() if card.programmed_at else None,
                    "last_used_at": card.last_used_at.isoformat() if card.last_used_at else None,
                }
                if card
                else None
            ),
        }


# ============================================================================
# Withdraw Challenge Management
# ============================================================================


def store_withdraw_challenge(location_id: str, ttl: int, now: Optional[datetime] = None) -> str:
    """Issue a fresh k1 for ``location_id`` valid for ``ttl`` seconds."""
    now = now or utc_now()
    k1 = secrets.token_hex(32)
    with session_scope() as session:
        session.add(
            WithdrawChallenge(k1=k1, location_id=location_id, created_at=now, expires_at=now + timedelta(seconds=ttl))
        )
    return k1


def get_withdraw_challenge(k1: str, now: Optional[datetime] = None) -> Optional[Dict]:
    """Retrieve an unexpired challenge."""
    now = now or utc_now()
    with session_scope() as session:
        challenge = session.get(WithdrawChallenge, k1)

        if not challenge or challenge.expires_at < now:
            return None

        return {
            "k1": challenge.k1,
            "location_id": challenge.location_id,
            "created_at": challenge.created_at.isoformat(),
            "expires_at": challenge.expires_at.isoformat(),
            "used_at": challenge.used_at.isoformat() if challenge.used_at else None,
            "used_by": challenge.used_by,
            "invoice": challenge.invoice,
        }


def consume_withdraw_challenge(
    k1: str,
    location_id: str,
    now: Optional[datetime] = None,
    user_id: Optional[str] = None,
    invoice: Optional[str] = None,
) -> bool:
    """
    Atomically mark a challenge used, remembering who used it and for which invoice.

    Returns:
        True if this call consumed a live challenge for ``location_id``
    """
    now = now or utc_now()
    with session_scope() as session:
        count = (
            session.query(WithdrawChallenge)
            .filter(
                WithdrawChallenge.k1 == k1,
                WithdrawChallenge.location_id == location_id,
                WithdrawChallenge.used_at.is_(None),
                WithdrawChallenge.expires_at >= now,
            )
            .update(
                {
                    WithdrawChallenge.used_at: now,
                    WithdrawChallenge.used_by: user_id,
                    WithdrawChallenge.invoice: invoice,
                },
                synchronize_session=False,
            )
        )
        return count == 1


# ============================================================================
# Cleanup Functions
# ============================================================================


def purge_expired_challenges(now: Optional[datetime] = None) -> int:
    """
    Delete expired withdraw challenges.

    Returns:
        Number of challenges removed
    """
    now = now or utc_now()
    with session_scope() as session:
        count = (
            session.query(WithdrawChallenge)
            .filter(WithdrawChallenge.expires_at < now)
            .delete(synchronize_session=False)
        )

    if count:
        logger.debug(f"Purged {count} expired withdraw challenges")
    return count
