"""
Unit tests for NTAG424 SUN message verification.

Vectors are the published Boltcard test vectors for one card
(K1 = 1b5352..., K2 = e4dae5..., UID 04 8D 58 D2 14 22 90).
"""

import pytest

from satshunt.exceptions import AuthFailure
from satshunt.keys import CardKeys
from satshunt.ntag424 import (
    CMAC_MISMATCH,
    INVALID_CMAC,
    INVALID_PICC_DATA,
    REPLAY,
    UID_MISMATCH,
    authenticate,
    decrypt_picc_data,
    encode_picc_data,
    sun_cmac,
    verify_cmac,
)

K1 = bytes.fromhex("1b53525189f66e2e88a3996ae5a87cf3")
K2 = bytes.fromhex("e4dae5db65c91efdf74ef3eba21b36c3")
UID = "048D58D2142290"

VECTORS = [
    ("7A4D60F5098CDC5EC25D19592DD90F61", "82E278C1118CEE2F", 10),
    ("3B721FF6E84B8BAB149395CEFDBD465F", "B5939AF5E1DFD702", 11),
    ("79831D41FEAB2E7F54C26FBBB8C72126", "53A929063D0ACD94", 12),
]


@pytest.fixture
def keys():
    return CardKeys(k0=bytes(16), k1=K1, k2=K2, k3=bytes(16), k4=bytes(16))


class TestDecrypt:
    """PICC data decryption."""

    @pytest.mark.parametrize("picc_data,cmac,counter", VECTORS)
    def test_published_vectors(self, picc_data, cmac, counter):
        message = decrypt_picc_data(picc_data, K1)

        assert message.uid_hex == UID
        assert message.counter == counter

    def test_lowercase_hex_accepted(self):
        message = decrypt_picc_data(VECTORS[0][0].lower(), K1)
        assert message.counter == 10

    def test_wrong_length_rejected(self):
        with pytest.raises(AuthFailure) as exc_info:
            decrypt_picc_data("7A4D60F5098CDC5E", K1)
        assert exc_info.value.reason == INVALID_PICC_DATA

    def test_not_hex_rejected(self):
        with pytest.raises(AuthFailure) as exc_info:
            decrypt_picc_data("zz" * 16, K1)
        assert exc_info.value.reason == INVALID_PICC_DATA

    def test_wrong_key_fails_tag_check(self):
        """Decrypting with the wrong key does not yield the C7 PICC tag."""
        with pytest.raises(AuthFailure) as exc_info:
            decrypt_picc_data(VECTORS[0][0], K2)
        assert exc_info.value.reason == INVALID_PICC_DATA


class TestCmac:
    """SDM MAC computation and comparison."""

    @pytest.mark.parametrize("picc_data,cmac,counter", VECTORS)
    def test_published_vectors(self, picc_data, cmac, counter):
        assert sun_cmac(K2, bytes.fromhex(UID), counter).hex().upper() == cmac

    def test_verify_cmac_matches(self):
        message = decrypt_picc_data(VECTORS[1][0], K1)
        assert verify_cmac(message, VECTORS[1][1], K2) is True

    def test_verify_cmac_mismatch(self):
        message = decrypt_picc_data(VECTORS[1][0], K1)
        assert verify_cmac(message, VECTORS[0][1], K2) is False

    def test_verify_cmac_wrong_length(self):
        message = decrypt_picc_data(VECTORS[1][0], K1)
        with pytest.raises(AuthFailure) as exc_info:
            verify_cmac(message, "B5939AF5", K2)
        assert exc_info.value.reason == INVALID_CMAC


class TestEncode:
    """Tag emulation used by provisioning checks and tests."""

    def test_encode_reproduces_vector(self):
        assert encode_picc_data(K1, bytes.fromhex(UID), 10, padding=decrypt_padding(VECTORS[0][0])) == VECTORS[0][0]

    def test_encode_then_decrypt(self):
        picc_data = encode_picc_data(K1, bytes.fromhex(UID), 0xABCDEF)
        assert decrypt_picc_data(picc_data, K1).counter == 0xABCDEF

    def test_counter_out_of_range(self):
        with pytest.raises(ValueError):
            encode_picc_data(K1, bytes.fromhex(UID), 1 << 24)


def decrypt_padding(picc_data: str) -> bytes:
    from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

    decryptor = Cipher(algorithms.AES(K1), modes.CBC(bytes(16))).decryptor()
    plain = decryptor.update(bytes.fromhex(picc_data)) + decryptor.finalize()
    return plain[11:]


class TestAuthenticate:
    """Full verdict including replay and UID binding."""

    def test_accepts_newer_counter(self, keys):
        picc_data, cmac, counter = VECTORS[0]
        tap = authenticate(picc_data, cmac, keys, stored_counter=9, stored_uid=UID)

        assert tap.counter == counter
        assert tap.uid == UID
        assert tap.uid_adopted is False

    def test_adopts_uid_on_first_use(self, keys):
        picc_data, cmac, _ = VECTORS[0]
        tap = authenticate(picc_data, cmac, keys, stored_counter=0, stored_uid=None)

        assert tap.uid_adopted is True
        assert tap.uid == UID

    def test_equal_counter_is_replay(self, keys):
        picc_data, cmac, _ = VECTORS[1]
        with pytest.raises(AuthFailure) as exc_info:
            authenticate(picc_data, cmac, keys, stored_counter=11, stored_uid=UID)
        assert exc_info.value.reason == REPLAY

    def test_older_counter_is_replay(self, keys):
        picc_data, cmac, _ = VECTORS[0]
        with pytest.raises(AuthFailure) as exc_info:
            authenticate(picc_data, cmac, keys, stored_counter=12, stored_uid=UID)
        assert exc_info.value.reason == REPLAY

    def test_uid_mismatch(self, keys):
        picc_data, cmac, _ = VECTORS[2]
        with pytest.raises(AuthFailure) as exc_info:
            authenticate(picc_data, cmac, keys, stored_counter=0, stored_uid="04000000000000")
        assert exc_info.value.reason == UID_MISMATCH

    def test_stored_uid_compared_case_insensitively(self, keys):
        picc_data, cmac, _ = VECTORS[2]
        tap = authenticate(picc_data, cmac, keys, stored_counter=0, stored_uid=UID.lower())
        assert tap.counter == 12

    def test_swapped_cmac_rejected_before_counter(self, keys):
        """A MAC from another tap fails even when the counter would be fresh."""
        picc_data, _, _ = VECTORS[2]
        with pytest.raises(AuthFailure) as exc_info:
            authenticate(picc_data, VECTORS[0][1], keys, stored_counter=0, stored_uid=UID)
        assert exc_info.value.reason == CMAC_MISMATCH
