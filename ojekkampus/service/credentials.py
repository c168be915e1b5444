from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from ojekkampus.logging import get_logger, mask_phone
from ojekkampus.service.errors import ServerError, WeakPasswordError

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8

__all__ = [
    "CredentialVerifier",
    "mask_phone",
    "normalize_phone",
    "validate_password",
]


def validate_password(password: str) -> None:
    """Require at least eight characters with an ASCII letter and a digit."""

    if len(password) < MIN_PASSWORD_LENGTH:
        raise WeakPasswordError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters"
        )
    has_letter = any(("a" <= c <= "z") or ("A" <= c <= "Z") for c in password)
    has_digit = any("0" <= c <= "9" for c in password)
    if not (has_letter and has_digit):
        raise WeakPasswordError("password must contain both letters and numbers")


def normalize_phone(phone: str) -> str:
    """Canonicalize Indonesian numbers to ``+62...``.

    ``0812...`` and ``62812...`` both become ``+62812...``; values that
    match neither prefix are returned with separators stripped.
    """

    cleaned = phone.strip()
    for sep in (" ", "-", "(", ")"):
        cleaned = cleaned.replace(sep, "")
    if cleaned.startswith("+62"):
        return cleaned
    if cleaned.startswith("62"):
        return "+" + cleaned
    if cleaned.startswith("0"):
        return "+62" + cleaned[1:]
    return cleaned


class CredentialVerifier:
    """argon2id hashing with a uniform cost for unknown accounts."""

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when no account matches so both paths pay one argon2 verify
        self._dummy_hash = self._pwd_hasher.hash("ojekkampus-absent-account-0")

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify(self, password_hash: str, plaintext: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.error("password_hash_malformed", error=str(exc))
            raise ServerError("internal server error") from exc

    def verify_absent(self, plaintext: str) -> bool:
        try:
            self._pwd_hasher.verify(self._dummy_hash, plaintext)
        except VerifyMismatchError:
            pass
        return False
