"""
Deterministic NTAG424 key derivation.

Follows the Boltcard deterministic scheme with AES-CMAC as the PRF:

    card_key = CMAC(master, 2d003f75 || card_id || version_le32)
    k0..k4   = CMAC(card_key, 2d003f76 .. 2d003f7a)

Only the card id and version are persisted. Bumping the version changes every
derived key, which is how a compromised card is rotated.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.hazmat.primitives.ciphers import algorithms
from cryptography.hazmat.primitives.cmac import CMAC

from satshunt.exceptions import DerivationError

logger = logging.getLogger(__name__)

_CARD_KEY_TAG = bytes.fromhex("2d003f75")
_KEY_TAGS = [bytes.fromhex(f"2d003f{b:02x}") for b in range(0x76, 0x7B)]


@dataclass(frozen=True)
class CardKeys:
    """The five application keys of one card version."""

    k0: bytes  # application master / authentication key
    k1: bytes  # SDM file read (PICC data decryption)
    k2: bytes  # SDM MAC
    k3: bytes
    k4: bytes

    @property
    def auth_key(self) -> bytes:
        return self.k0

    @property
    def decrypt_key(self) -> bytes:
        return self.k1

    @property
    def cmac_key(self) -> bytes:
        return self.k2

    def as_hex(self) -> Dict[str, str]:
        """Upper-case hex keys keyed ``K0``..``K4`` (Boltcard programmer format)."""
        return {f"K{i}": key.hex().upper() for i, key in enumerate((self.k0, self.k1, self.k2, self.k3, self.k4))}


def _cmac(key: bytes, message: bytes) -> bytes:
    mac = CMAC(algorithms.AES(key))
    mac.update(message)
    return mac.finalize()


def parse_master_key(master_key: Optional[str]) -> bytes:
    """
    Validate and decode the hex master key.

    Raises:
        DerivationError: if the key is absent or not 16 bytes of hex
    """
    if not master_key:
        raise DerivationError("MASTER_KEY is not configured")
    try:
        raw = bytes.fromhex(master_key.strip())
    except ValueError as exc:
        raise DerivationError("MASTER_KEY must be hex encoded") from exc
    if len(raw) != 16:
        raise DerivationError(f"MASTER_KEY must be 16 bytes (got {len(raw)})")
    return raw


def derive_keys(master_key, card_version: int, card_id: str) -> CardKeys:
    """
    Derive the keys for ``card_id`` at ``card_version``.

    Args:
        master_key: 16 raw bytes or a 32-char hex string
        card_version: key version, starting at 1
        card_id: stable identifier of the card record

    Returns:
        CardKeys
    """
    master = master_key if isinstance(master_key, bytes) else parse_master_key(master_key)
    if len(master) != 16:
        raise DerivationError(f"master key must be 16 bytes (got {len(master)})")
    if card_version < 0 or card_version > 0xFFFFFFFF:
        raise DerivationError(f"card version out of range: {card_version}")

    card_key = _cmac(master, _CARD_KEY_TAG + card_id.encode("utf-8") + card_version.to_bytes(4, "little"))
    return CardKeys(*(_cmac(card_key, tag) for tag in _KEY_TAGS))
