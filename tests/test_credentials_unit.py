"""Unit tests for password policy, phone normalization and argon2 verification."""

import pytest

from ojekkampus.service.credentials import (
    CredentialVerifier,
    mask_phone,
    normalize_phone,
    validate_password,
)
from ojekkampus.service.errors import ServerError, WeakPasswordError


@pytest.fixture(scope="module")
def verifier():
    return CredentialVerifier()


class TestPasswordPolicy:
    def test_accepts_letters_and_digits(self):
        validate_password("rahasia123")

    def test_rejects_short_password(self):
        with pytest.raises(WeakPasswordError) as exc_info:
            validate_password("abc123")
        assert exc_info.value.message == "password must be at least 8 characters"
        assert exc_info.value.status_code == 400

    def test_rejects_letters_only(self):
        with pytest.raises(WeakPasswordError) as exc_info:
            validate_password("onlyletters")
        assert exc_info.value.message == "password must contain both letters and numbers"

    def test_rejects_digits_only(self):
        with pytest.raises(WeakPasswordError):
            validate_password("1234567890")

    def test_non_ascii_letters_do_not_count(self):
        with pytest.raises(WeakPasswordError):
            validate_password("éééééé12")


class TestPhoneNormalization:
    @pytest.mark.parametrize(
        "raw",
        ["081234567890", "6281234567890", "+6281234567890", "0812-3456-7890", " 0812 3456 7890 "],
    )
    def test_indonesian_forms_share_canonical_value(self, raw):
        assert normalize_phone(raw) == "+6281234567890"

    def test_mask_phone_hides_middle_digits(self):
        assert mask_phone("+6281234567890") == "+628***890"
        assert mask_phone("123") == "***"
        assert mask_phone(None) is None


class TestCredentialVerifier:
    def test_hash_is_argon2id(self, verifier):
        hashed = verifier.hash("rahasia123")
        assert hashed.startswith("$argon2id$")
        assert "rahasia123" not in hashed

    def test_verify_round_trip(self, verifier):
        hashed = verifier.hash("rahasia123")
        assert verifier.verify(hashed, "rahasia123") is True
        assert verifier.verify(hashed, "rahasia124") is False

    def test_same_password_hashes_differently(self, verifier):
        assert verifier.hash("rahasia123") != verifier.hash("rahasia123")

    def test_verify_absent_is_always_false(self, verifier):
        assert verifier.verify_absent("rahasia123") is False
        assert verifier.verify_absent("ojekkampus-absent-account-0") is False

    def test_malformed_hash_raises_server_error(self, verifier):
        with pytest.raises(ServerError):
            verifier.verify("not-a-hash", "rahasia123")
