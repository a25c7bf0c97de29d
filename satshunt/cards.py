"""
Card provisioning and tap persistence.

Bridges the pure tag authenticator to the store: loads the card for a location,
derives its current keys, verifies the SUN message and records the new counter
together with the Scan in one conditional update.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import or_

from satshunt.database import session_scope
from satshunt.exceptions import AuthFailure, LocationNotFound
from satshunt.keys import derive_keys
from satshunt.lnurl import lnurlw_uri
from satshunt.models import (
    LOCATION_ACTIVE,
    LOCATION_CREATED,
    LOCATION_PROGRAMMED,
    Location,
    NfcCard,
    Scan,
    utc_now,
)
from satshunt.ntag424 import REPLAY, authenticate

logger = logging.getLogger(__name__)

CARD_NOT_FOUND = "card_not_found"
LOCATION_MISSING = "location_not_found"


@dataclass(frozen=True)
class TapResult:
    location_id: str
    uid: str
    counter: int
    scan_id: Optional[str] = None


def lnurlw_url(base_url: str, location_id: str) -> str:
    return f"{base_url.rstrip('/')}/api/lnurlw/{location_id}"


def provision_card(
    location_id: str,
    master_key,
    base_url: str,
    uid: Optional[str] = None,
    rotate: bool = False,
    now: Optional[datetime] = None,
) -> Dict:
    """
    Create or re-key the card of ``location_id`` and return the programmer payload.

    Args:
        location_id: location owning the card
        master_key: master key (bytes or hex)
        base_url: public base URL for the LNURLW written to the tag
        uid: UID reported by the programming device, if any
        rotate: bump the key version, invalidating every previously derived key
        now: timestamp override

    Returns:
        ``{"LNURLW": ..., "K0": ..., ..., "K4": ..., "version": n}``
    """
    now = now or utc_now()
    uid = uid.strip().upper() if uid else None

    with session_scope() as session:
        location = session.query(Location).filter_by(id=location_id).with_for_update().one_or_none()
        if location is None:
            raise LocationNotFound(location_id)

        card = session.query(NfcCard).filter_by(location_id=location_id).with_for_update().one_or_none()
        if card is None:
            card = NfcCard(location_id=location_id, version=1, counter=0, uid=uid, created_at=now)
            session.add(card)
            session.flush()
        else:
            if rotate:
                card.version += 1
            if uid and card.uid and uid != card.uid:
                if not rotate:
                    raise ValueError(f"card for {location_id} is bound to another UID; rotate to replace it")
                # A different chip starts its own counter from zero
                card.counter = 0
            if uid:
                card.uid = uid

        card.programmed_at = now
        if location.status == LOCATION_CREATED:
            location.status = LOCATION_PROGRAMMED

        keys = derive_keys(master_key, card.version, card.id)
        payload = {"LNURLW": lnurlw_uri(lnurlw_url(base_url, location_id)), **keys.as_hex(), "version": card.version}
        version = card.version

    logger.info(f"Provisioned card for {location_id} at version {version}")
    return payload


def activate_location(location_id: str, now: Optional[datetime] = None) -> str:
    """
    Move a programmed location to ``active``. Activating twice is a no-op.

    Raises:
        LocationNotFound: unknown location
        ValueError: no card has been programmed yet
    """
    with session_scope() as session:
        location = session.query(Location).filter_by(id=location_id).with_for_update().one_or_none()
        if location is None:
            raise LocationNotFound(location_id)
        if location.status == LOCATION_ACTIVE:
            return location.status
        if location.status != LOCATION_PROGRAMMED:
            raise ValueError(f"location {location_id} has no programmed card")

        location.status = LOCATION_ACTIVE
        location.activated_at = now or utc_now()
        logger.info(f"Location {location_id} activated")
        return location.status


def authenticate_tap(
    location_id: str,
    picc_data: str,
    cmac: str,
    user_id: str,
    master_key,
    persist: bool = True,
    now: Optional[datetime] = None,
) -> TapResult:
    """
    Verify a tap at ``location_id`` and, when ``persist``, record it.

    The counter update is conditional on the stored counter still being lower
    than the presented one, so two concurrent taps with the same payload cannot
    both succeed. The Scan is written in the same transaction.

    Raises:
        AuthFailure: any verification failure, including a lost counter race
    """
    with session_scope() as session:
        location_exists = session.get(Location, location_id) is not None
        card = session.query(NfcCard).filter_by(location_id=location_id).one_or_none()
        state = (card.id, card.version, card.uid, card.counter) if card else None

    if not location_exists:
        raise AuthFailure(LOCATION_MISSING, f"unknown location {location_id}")
    if state is None:
        raise AuthFailure(CARD_NOT_FOUND, f"no card configured for {location_id}")
    card_id, version, stored_uid, stored_counter = state

    keys = derive_keys(master_key, version, card_id)
    tap = authenticate(picc_data, cmac, keys, stored_counter, stored_uid)

    if not persist:
        return TapResult(location_id=location_id, uid=tap.uid, counter=tap.counter)

    now = now or utc_now()
    with session_scope() as session:
        updated = (
            session.query(NfcCard)
            .filter(
                NfcCard.id == card_id,
                NfcCard.version == version,
                NfcCard.counter < tap.counter,
                or_(NfcCard.uid.is_(None), NfcCard.uid == tap.uid),
            )
            .update(
                {NfcCard.counter: tap.counter, NfcCard.uid: tap.uid, NfcCard.last_used_at: now},
                synchronize_session=False,
            )
        )
        scan_id = None
        if updated == 1:
            scan = Scan(location_id=location_id, user_id=user_id, counter=tap.counter, scanned_at=now)
            session.add(scan)
            session.flush()
            scan_id = scan.id

    if scan_id is None:
        raise AuthFailure(REPLAY, f"counter {tap.counter} already consumed")

    if tap.uid_adopted:
        logger.info(f"Card at {location_id} bound to UID {tap.uid}")
    return TapResult(location_id=location_id, uid=tap.uid, counter=tap.counter, scan_id=scan_id)
