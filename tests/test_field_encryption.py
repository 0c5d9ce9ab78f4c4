"""Tests for field-level encryption of identity columns."""

import pytest

from campusauth.storage.crypto import FieldCipher

from conftest import TEST_SECRET


@pytest.fixture
def cipher():
    return FieldCipher(TEST_SECRET)


def test_encrypt_is_randomized_and_reversible(cipher):
    first = cipher.encrypt("+919876543210")
    second = cipher.encrypt("+919876543210")

    assert first != second
    assert "9876543210" not in first
    assert cipher.decrypt(first) == cipher.decrypt(second) == "+919876543210"


def test_lookup_digest_is_deterministic(cipher):
    assert cipher.lookup_digest("+919876543210") == cipher.lookup_digest("+919876543210")
    assert cipher.lookup_digest("+919876543210") != cipher.lookup_digest("+919876543211")
    assert cipher.lookup_digest(None) is None


def test_empty_values_pass_through(cipher):
    assert cipher.encrypt(None) is None
    assert cipher.encrypt("") == ""
    assert cipher.decrypt(None) is None


def test_wrong_key_cannot_decrypt(cipher):
    token = cipher.encrypt("+919876543210")
    other = FieldCipher("another-key-material-with-enough-length")
    with pytest.raises(ValueError):
        other.decrypt(token)
    assert other.lookup_digest("+919876543210") != cipher.lookup_digest("+919876543210")


def test_key_material_required():
    with pytest.raises(RuntimeError):
        FieldCipher("")
