from __future__ import annotations

import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Protocol

from ojekkampus.config import Settings
from ojekkampus.logging import get_logger
from ojekkampus.service.credentials import normalize_phone
from ojekkampus.service.deadlines import call_with_deadline, run_with_deadline
from ojekkampus.service.errors import (
    MessageDeliveryError,
    OTPCooldownError,
    ServiceError,
    ValidationError,
)
from ojekkampus.storage.models import OTPCode, OTPPurpose

logger = get_logger(__name__)

OTP_LENGTH = 6
OTP_TTL_SECONDS = 5 * 60
OTP_RESEND_COOLDOWN_SECONDS = 60
OTP_MAX_ATTEMPTS = 3

SEND_MESSAGE = "OTP code has been sent to your WhatsApp"

# Purposes whose successful verification proves ownership of the account phone
_PHONE_PROOF_PURPOSES = {
    OTPPurpose.REGISTRATION.value,
    OTPPurpose.PHONE_VERIFICATION.value,
}


class OTPLedger(Protocol):
    def create_otp(
        self,
        phone_number: str,
        otp_code: str,
        purpose: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OTPCode: ...

    def get_latest_otp(self, phone_number: str, purpose: str) -> Optional[OTPCode]: ...

    def find_otp(self, phone_number: str, otp_code: str) -> Optional[OTPCode]: ...

    def increment_otp_attempts(self, otp_id: int) -> None: ...

    def mark_otp_used(self, otp_id: int, when: datetime) -> bool: ...

    def invalidate_otps(self, phone_number: str, purpose: str, when: datetime) -> int: ...

    def mark_phone_verified(self, phone_number: str, when: datetime) -> bool: ...


class Messenger(Protocol):
    async def send_otp(self, phone_number: str, code: str) -> None: ...


class VerificationOutcome(str, Enum):
    INVALID = "INVALID"
    USED = "USED"
    EXPIRED = "EXPIRED"
    ATTEMPTS_EXHAUSTED = "ATTEMPTS_EXHAUSTED"
    VERIFIED = "VERIFIED"


_OUTCOME_MESSAGES = {
    VerificationOutcome.INVALID: "invalid code",
    VerificationOutcome.USED: "code already used",
    VerificationOutcome.EXPIRED: "code expired",
    VerificationOutcome.ATTEMPTS_EXHAUSTED: "too many attempts. request a new code",
    VerificationOutcome.VERIFIED: "verification successful",
}


@dataclass
class OTPDispatch:
    phone_number: str
    expires_in: int = OTP_TTL_SECONDS
    message: str = SEND_MESSAGE


@dataclass
class OTPVerification:
    phone_number: str
    outcome: VerificationOutcome

    @property
    def verified(self) -> bool:
        return self.outcome is VerificationOutcome.VERIFIED

    @property
    def message(self) -> str:
        return _OUTCOME_MESSAGES[self.outcome]


def generate_code() -> str:
    """Uniform six-digit code in [100000, 999999] from the OS CSPRNG."""

    return str(secrets.randbelow(900000) + 100000)


def parse_purpose(purpose: str) -> str:
    try:
        return OTPPurpose(purpose.upper()).value
    except (AttributeError, ValueError):
        raise ValidationError(
            "invalid OTP purpose",
            detail={"allowed": [p.value for p in OTPPurpose]},
        )


class OTPManager:
    """One-time code issuance and verification per (phone, purpose).

    A code is PENDING until it is used, passes ``expires_at`` or reaches
    ``OTP_MAX_ATTEMPTS`` verify attempts. The attempts-exhausted state is
    derived from the stored counter on every verify, never persisted.
    """

    def __init__(
        self,
        store: OTPLedger,
        messenger: Messenger,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.messenger = messenger
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    async def _call(self, func, *args, operation: str, **kwargs):
        return await call_with_deadline(
            func,
            *args,
            timeout=self.settings.store_timeout_seconds,
            operation=operation,
            **kwargs,
        )

    async def send_otp(
        self,
        phone_number: str,
        purpose: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> OTPDispatch:
        return await run_with_deadline(
            self._send(phone_number, purpose, ip_address, user_agent),
            deadline,
            "send_otp",
        )

    async def resend_otp(
        self,
        phone_number: str,
        purpose: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> OTPDispatch:
        """Same cooldown and invalidation rules as ``send_otp``."""

        return await run_with_deadline(
            self._send(phone_number, purpose, ip_address, user_agent),
            deadline,
            "resend_otp",
        )

    async def _send(
        self,
        phone_number: str,
        purpose: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> OTPDispatch:
        phone = normalize_phone(phone_number)
        purpose = parse_purpose(purpose)
        self.logger.info("otp_send_requested", phone=phone, purpose=purpose)

        now = self._now()
        latest = await self._call(
            self.store.get_latest_otp, phone, purpose, operation="get_latest_otp"
        )
        if latest is not None and not latest.is_expired(now):
            elapsed = (now - latest.created_at).total_seconds()
            if elapsed < OTP_RESEND_COOLDOWN_SECONDS:
                # Reported wait stays inside the open interval (0, cooldown)
                remaining = min(
                    OTP_RESEND_COOLDOWN_SECONDS - 1,
                    max(1, math.ceil(OTP_RESEND_COOLDOWN_SECONDS - elapsed)),
                )
                self.logger.warning(
                    "otp_cooldown_active", phone=phone, purpose=purpose, remaining=remaining
                )
                raise OTPCooldownError(remaining)

        try:
            await self._call(
                self.store.invalidate_otps, phone, purpose, now, operation="invalidate_otps"
            )
        except Exception as exc:
            self.logger.warning("otp_invalidate_failed", phone=phone, error=str(exc))

        code = generate_code()
        await self._call(
            self.store.create_otp,
            phone,
            code,
            purpose,
            now + timedelta(seconds=OTP_TTL_SECONDS),
            ip_address=ip_address,
            user_agent=user_agent,
            now=now,
            operation="create_otp",
        )

        # The stored code is kept even if delivery fails; a resend supersedes it
        try:
            await self.messenger.send_otp(phone, code)
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.error("otp_delivery_failed", phone=phone, error=str(exc))
            raise MessageDeliveryError() from exc

        self.logger.info("otp_sent", phone=phone, purpose=purpose)
        return OTPDispatch(phone_number=phone)

    async def verify_otp(
        self, phone_number: str, code: str, *, deadline: Optional[float] = None
    ) -> OTPVerification:
        return await run_with_deadline(
            self._verify(phone_number, code), deadline, "verify_otp"
        )

    async def _verify(self, phone_number: str, code: str) -> OTPVerification:
        phone = normalize_phone(phone_number)
        self.logger.info("otp_verify_requested", phone=phone)
        otp = await self._call(self.store.find_otp, phone, code.strip(), operation="find_otp")
        if otp is None:
            return OTPVerification(phone_number=phone, outcome=VerificationOutcome.INVALID)

        # Counted before any check; the comparison below uses the value read above
        try:
            await self._call(
                self.store.increment_otp_attempts, otp.id, operation="increment_otp_attempts"
            )
        except Exception as exc:
            self.logger.warning("otp_attempt_increment_failed", otp_id=otp.id, error=str(exc))

        now = self._now()
        if otp.is_used:
            outcome = VerificationOutcome.USED
        elif otp.is_expired(now):
            outcome = VerificationOutcome.EXPIRED
        elif otp.attempts >= OTP_MAX_ATTEMPTS:
            outcome = VerificationOutcome.ATTEMPTS_EXHAUSTED
        elif not await self._call(
            self.store.mark_otp_used, otp.id, now, operation="mark_otp_used"
        ):
            # A concurrent verify consumed the code first
            outcome = VerificationOutcome.USED
        else:
            outcome = VerificationOutcome.VERIFIED

        if outcome is not VerificationOutcome.VERIFIED:
            self.logger.warning("otp_verify_failed", phone=phone, outcome=outcome.value)
            return OTPVerification(phone_number=phone, outcome=outcome)

        if otp.purpose in _PHONE_PROOF_PURPOSES:
            try:
                await self._call(
                    self.store.mark_phone_verified, phone, now, operation="mark_phone_verified"
                )
            except Exception as exc:
                self.logger.warning("phone_verified_flag_failed", phone=phone, error=str(exc))
        self.logger.info("otp_verified", phone=phone, purpose=otp.purpose)
        return OTPVerification(phone_number=phone, outcome=outcome)
