"""
Unit tests for deterministic card key derivation.
"""

import pytest

from satshunt.exceptions import DerivationError
from satshunt.keys import CardKeys, derive_keys, parse_master_key

MASTER = "00112233445566778899aabbccddeeff"
CARD_ID = "5d2a1c3e-7b44-4c1f-9a6e-0f3b2d8c9e10"


class TestParseMasterKey:
    """Master key validation at startup."""

    def test_valid_key(self):
        assert parse_master_key(MASTER) == bytes.fromhex(MASTER)

    def test_surrounding_whitespace_ignored(self):
        assert parse_master_key(f"  {MASTER}\n") == bytes.fromhex(MASTER)

    @pytest.mark.parametrize("value", [None, ""])
    def test_missing_key(self, value):
        with pytest.raises(DerivationError, match="not configured"):
            parse_master_key(value)

    def test_not_hex(self):
        with pytest.raises(DerivationError, match="hex"):
            parse_master_key("not-a-hex-key-at-all-0123456789ab")

    def test_wrong_length(self):
        with pytest.raises(DerivationError, match="16 bytes"):
            parse_master_key("0011223344556677")


class TestDeriveKeys:
    """Pure (master, version, card) -> keys mapping."""

    def test_deterministic(self):
        assert derive_keys(MASTER, 1, CARD_ID) == derive_keys(bytes.fromhex(MASTER), 1, CARD_ID)

    def test_five_distinct_16_byte_keys(self):
        keys = derive_keys(MASTER, 1, CARD_ID)
        all_keys = [keys.k0, keys.k1, keys.k2, keys.k3, keys.k4]

        assert all(len(key) == 16 for key in all_keys)
        assert len(set(all_keys)) == 5

    def test_version_bump_changes_every_key(self):
        v1 = derive_keys(MASTER, 1, CARD_ID)
        v2 = derive_keys(MASTER, 2, CARD_ID)

        for a, b in zip(v1.as_hex().values(), v2.as_hex().values()):
            assert a != b

    def test_cards_get_different_keys(self):
        assert derive_keys(MASTER, 1, CARD_ID) != derive_keys(MASTER, 1, "another-card")

    def test_master_key_changes_keys(self):
        other = "ffeeddccbbaa99887766554433221100"
        assert derive_keys(MASTER, 1, CARD_ID) != derive_keys(other, 1, CARD_ID)

    def test_role_aliases(self):
        keys = derive_keys(MASTER, 3, CARD_ID)

        assert keys.auth_key == keys.k0
        assert keys.decrypt_key == keys.k1
        assert keys.cmac_key == keys.k2

    def test_as_hex_programmer_format(self):
        hex_keys = derive_keys(MASTER, 1, CARD_ID).as_hex()

        assert list(hex_keys) == ["K0", "K1", "K2", "K3", "K4"]
        for value in hex_keys.values():
            assert len(value) == 32
            assert value == value.upper()

    def test_negative_version_rejected(self):
        with pytest.raises(DerivationError):
            derive_keys(MASTER, -1, CARD_ID)

    def test_short_raw_master_rejected(self):
        with pytest.raises(DerivationError):
            derive_keys(bytes(8), 1, CARD_ID)

    def test_keys_are_immutable(self):
        keys = derive_keys(MASTER, 1, CARD_ID)
        with pytest.raises(AttributeError):
            keys.k0 = bytes(16)
        assert isinstance(keys, CardKeys)
