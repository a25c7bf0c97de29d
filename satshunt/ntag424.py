"""
NTAG 424 DNA Secure Unique NFC (SUN) message verification.

A tap produces two query parameters:

* ``p`` - PICC data, one AES-128-CBC block (zero IV) encrypted with K1:
  ``C7 || UID(7) || counter(3, LE) || padding(5)``
* ``c`` - SDM MAC, the odd bytes of ``CMAC(session_key, b"")`` where
  ``session_key = CMAC(K2, 3CC3 0001 0080 || UID || counter)`` (AN12196 SV2).

This module is pure: it returns a verdict and leaves persisting the new counter
to the caller.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.cmac import CMAC

from satshunt.exceptions import AuthFailure
from satshunt.keys import CardKeys

logger = logging.getLogger(__name__)

PICC_TAG = 0xC7
BLOCK_SIZE = 16
UID_LEN = 7
MAC_LEN = 8
MAX_COUNTER = 0xFFFFFF

_SV2_PREFIX = bytes([0x3C, 0xC3, 0x00, 0x01, 0x00, 0x80])
_ZERO_IV = bytes(BLOCK_SIZE)

# Reason codes carried by AuthFailure
INVALID_PICC_DATA = "invalid_picc_data"
INVALID_CMAC = "invalid_cmac"
CMAC_MISMATCH = "cmac_mismatch"
UID_MISMATCH = "uid_mismatch"
REPLAY = "replay"


@dataclass(frozen=True)
class SunMessage:
    uid: bytes
    counter: int

    @property
    def uid_hex(self) -> str:
        return self.uid.hex().upper()


@dataclass(frozen=True)
class AuthenticatedTap:
    """Verdict of a successful authentication."""

    uid: str
    counter: int
    uid_adopted: bool = False


def _decode_hex(value: str, reason: str, what: str) -> bytes:
    try:
        return bytes.fromhex(value or "")
    except ValueError as exc:
        raise AuthFailure(reason, f"{what} is not valid hex") from exc


def _cmac(key: bytes, message: bytes) -> bytes:
    mac = CMAC(algorithms.AES(key))
    mac.update(message)
    return mac.finalize()


def decrypt_picc_data(picc_data: str, k1: bytes) -> SunMessage:
    """
    Decrypt the ``p`` parameter.

    Raises:
        AuthFailure: on bad hex, wrong length or a wrong PICC tag byte
    """
    encrypted = _decode_hex(picc_data, INVALID_PICC_DATA, "picc data")
    if len(encrypted) != BLOCK_SIZE:
        raise AuthFailure(INVALID_PICC_DATA, f"picc data must be {BLOCK_SIZE} bytes, got {len(encrypted)}")
    if len(k1) != BLOCK_SIZE:
        raise AuthFailure(INVALID_PICC_DATA, f"k1 must be {BLOCK_SIZE} bytes, got {len(k1)}")

    decryptor = Cipher(algorithms.AES(k1), modes.CBC(_ZERO_IV)).decryptor()
    plain = decryptor.update(encrypted) + decryptor.finalize()

    if plain[0] != PICC_TAG:
        raise AuthFailure(INVALID_PICC_DATA, f"invalid PICC type {plain[0]:02X}, expected C7")

    uid = plain[1 : 1 + UID_LEN]
    counter = int.from_bytes(plain[1 + UID_LEN : 4 + UID_LEN], "little")
    return SunMessage(uid=uid, counter=counter)


def session_mac_key(k2: bytes, uid: bytes, counter: int) -> bytes:
    """SDM session MAC key for one (uid, counter) pair."""
    sv2 = _SV2_PREFIX + uid + counter.to_bytes(3, "little")
    return _cmac(k2, sv2)


def sun_cmac(k2: bytes, uid: bytes, counter: int) -> bytes:
    """Truncated 8-byte SDM MAC the tag appends as ``c``."""
    full = _cmac(session_mac_key(k2, uid, counter), b"")
    return full[1::2]


def verify_cmac(message: SunMessage, cmac: str, k2: bytes) -> bool:
    """
    Constant-time comparison of ``c`` against the recomputed MAC.

    Raises:
        AuthFailure: when ``c`` is not 8 bytes of hex
    """
    presented = _decode_hex(cmac, INVALID_CMAC, "cmac")
    if len(presented) != MAC_LEN:
        raise AuthFailure(INVALID_CMAC, f"cmac must be {MAC_LEN} bytes, got {len(presented)}")
    if len(k2) != BLOCK_SIZE:
        raise AuthFailure(INVALID_CMAC, f"k2 must be {BLOCK_SIZE} bytes, got {len(k2)}")
    return hmac.compare_digest(sun_cmac(k2, message.uid, message.counter), presented)


def encode_picc_data(k1: bytes, uid: bytes, counter: int, padding: bytes = bytes(5)) -> str:
    """Produce the ``p`` value a tag would emit. Used for tag emulation and tests."""
    if len(uid) != UID_LEN:
        raise ValueError(f"uid must be {UID_LEN} bytes")
    if not 0 <= counter <= MAX_COUNTER:
        raise ValueError("counter must fit in 3 bytes")
    plain = bytes([PICC_TAG]) + uid + counter.to_bytes(3, "little") + padding
    encryptor = Cipher(algorithms.AES(k1), modes.CBC(_ZERO_IV)).encryptor()
    return (encryptor.update(plain) + encryptor.finalize()).hex().upper()


def authenticate(
    picc_data: str,
    cmac: str,
    keys: CardKeys,
    stored_counter: int,
    stored_uid: Optional[str] = None,
) -> AuthenticatedTap:
    """
    Verify a tap payload against a card's keys and stored state.

    Args:
        picc_data: hex ``p`` parameter
        cmac: hex ``c`` parameter
        keys: keys of the card's current version
        stored_counter: last accepted counter
        stored_uid: UID recorded on first use, None if never used

    Returns:
        AuthenticatedTap with the new counter

    Raises:
        AuthFailure: decode, MAC, UID or replay failure
    """
    message = decrypt_picc_data(picc_data, keys.decrypt_key)

    if not verify_cmac(message, cmac, keys.cmac_key):
        raise AuthFailure(CMAC_MISMATCH, "SUN MAC does not match")

    adopted = False
    if stored_uid:
        if not hmac.compare_digest(message.uid_hex, stored_uid.upper()):
            raise AuthFailure(UID_MISMATCH, f"uid {message.uid_hex} does not belong to this card")
    else:
        adopted = True

    if message.counter <= stored_counter:
        raise AuthFailure(REPLAY, f"counter {message.counter} <= stored {stored_counter}")

    return AuthenticatedTap(uid=message.uid_hex, counter=message.counter, uid_adopted=adopted)
