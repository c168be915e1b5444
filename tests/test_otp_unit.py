"""Unit tests for OTP issuance, cooldown and verification outcomes."""

from datetime import datetime, timedelta, timezone

import pytest

from ojekkampus.config import Settings
from ojekkampus.service.errors import (
    MessageDeliveryError,
    OTPCooldownError,
    ServiceTimeoutError,
    ValidationError,
)
from ojekkampus.service.otp import (
    OTP_TTL_SECONDS,
    OTPManager,
    VerificationOutcome,
    generate_code,
    parse_purpose,
)
from ojekkampus.storage.memory import MemoryStore

PHONE = "+6281234567890"


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingMessenger:
    def __init__(self):
        self.sent = []

    async def send_otp(self, phone_number: str, code: str) -> None:
        self.sent.append((phone_number, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


class BrokenMessenger:
    async def send_otp(self, phone_number: str, code: str) -> None:
        raise ConnectionError("gateway unreachable")


class TimingOutMessenger:
    async def send_otp(self, phone_number: str, code: str) -> None:
        raise ServiceTimeoutError("message delivery timed out")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
    )


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def messenger():
    return RecordingMessenger()


@pytest.fixture
def otp(store, messenger, settings, clock):
    return OTPManager(store, messenger, settings, clock=clock)


def _latest(store):
    return max(store.otp_codes.values(), key=lambda o: (o.created_at, o.id))


class TestCodeGeneration:
    def test_codes_are_six_digits_without_leading_zero(self):
        for _ in range(500):
            code = generate_code()
            assert len(code) == 6
            assert 100000 <= int(code) <= 999999

    def test_purpose_is_case_insensitive(self):
        assert parse_purpose("registration") == "REGISTRATION"

    def test_unknown_purpose_is_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_purpose("LOGIN")
        assert exc_info.value.message == "invalid OTP purpose"


class TestSendOTP:
    async def test_send_persists_and_delivers(self, otp, store, messenger, clock):
        dispatch = await otp.send_otp(
            "081234567890", "REGISTRATION", ip_address="10.0.0.9", user_agent="pytest"
        )
        assert dispatch.phone_number == PHONE
        assert dispatch.expires_in == 300
        assert dispatch.message == "OTP code has been sent to your WhatsApp"

        row = _latest(store)
        assert row.phone_number == PHONE
        assert row.purpose == "REGISTRATION"
        assert row.expires_at == clock.now + timedelta(seconds=OTP_TTL_SECONDS)
        assert row.ip_address == "10.0.0.9"
        assert row.attempts == 0
        assert messenger.sent == [(PHONE, row.otp_code)]

    async def test_second_send_within_cooldown_is_refused(self, otp, store, clock):
        await otp.send_otp(PHONE, "REGISTRATION")
        clock.advance(seconds=20)
        with pytest.raises(OTPCooldownError) as exc_info:
            await otp.send_otp(PHONE, "REGISTRATION")
        assert 0 < exc_info.value.remaining_seconds < 60
        assert exc_info.value.remaining_seconds == 40
        assert exc_info.value.status_code == 429
        assert exc_info.value.message == "please wait 40 seconds before requesting new OTP"
        assert len(store.otp_codes) == 1

    async def test_immediate_resend_reports_wait_below_cooldown(self, otp, store):
        await otp.send_otp("081234567890", "REGISTRATION")
        with pytest.raises(OTPCooldownError) as exc_info:
            await otp.send_otp("081234567890", "REGISTRATION")
        assert exc_info.value.remaining_seconds == 59
        assert exc_info.value.detail == {"retry_after": 59}
        assert len(store.otp_codes) == 1

    async def test_fractional_elapsed_rounds_up(self, otp, clock):
        await otp.send_otp(PHONE, "LOGIN")
        clock.advance(seconds=59, milliseconds=500)
        with pytest.raises(OTPCooldownError) as exc_info:
            await otp.send_otp(PHONE, "LOGIN")
        assert exc_info.value.remaining_seconds == 1

    async def test_cooldown_is_per_purpose(self, otp, store):
        await otp.send_otp(PHONE, "REGISTRATION")
        await otp.send_otp(PHONE, "PASSWORD_RESET")
        assert len(store.otp_codes) == 2

    async def test_resend_after_cooldown_supersedes_previous_code(
        self, otp, store, messenger, clock
    ):
        await otp.send_otp(PHONE, "REGISTRATION")
        first_code = messenger.last_code
        clock.advance(seconds=61)
        await otp.resend_otp(PHONE, "REGISTRATION")
        second_code = messenger.last_code

        first_row = min(store.otp_codes.values(), key=lambda o: o.id)
        assert first_row.is_used is True
        if first_code != second_code:
            result = await otp.verify_otp(PHONE, first_code)
            assert result.outcome is VerificationOutcome.USED
        result = await otp.verify_otp(PHONE, second_code)
        assert result.verified is True

    async def test_resend_within_cooldown_is_refused(self, otp, clock):
        await otp.send_otp(PHONE, "REGISTRATION")
        clock.advance(seconds=59)
        with pytest.raises(OTPCooldownError) as exc_info:
            await otp.resend_otp(PHONE, "REGISTRATION")
        assert exc_info.value.remaining_seconds == 1

    async def test_delivery_failure_keeps_row(self, store, settings, clock):
        otp = OTPManager(store, BrokenMessenger(), settings, clock=clock)
        with pytest.raises(MessageDeliveryError) as exc_info:
            await otp.send_otp(PHONE, "REGISTRATION")
        assert exc_info.value.message == "failed to send OTP"
        assert exc_info.value.status_code == 500
        assert len(store.otp_codes) == 1

    async def test_delivery_timeout_propagates(self, store, settings, clock):
        otp = OTPManager(store, TimingOutMessenger(), settings, clock=clock)
        with pytest.raises(ServiceTimeoutError):
            await otp.send_otp(PHONE, "REGISTRATION")

    async def test_invalid_purpose(self, otp, store):
        with pytest.raises(ValidationError):
            await otp.send_otp(PHONE, "UNKNOWN")
        assert store.otp_codes == {}


class TestVerifyOTP:
    async def test_correct_code_verifies_once(self, otp, store, messenger):
        await otp.send_otp(PHONE, "PASSWORD_RESET")
        code = messenger.last_code
        result = await otp.verify_otp("081234567890", code)
        assert result.verified is True
        assert result.outcome is VerificationOutcome.VERIFIED
        assert result.message == "verification successful"
        assert _latest(store).is_used is True

        again = await otp.verify_otp(PHONE, code)
        assert again.verified is False
        assert again.outcome is VerificationOutcome.USED
        assert again.message == "code already used"

    async def test_unknown_code_is_invalid(self, otp, messenger):
        await otp.send_otp(PHONE, "REGISTRATION")
        wrong = "100000" if messenger.last_code != "100000" else "100001"
        result = await otp.verify_otp(PHONE, wrong)
        assert result.outcome is VerificationOutcome.INVALID
        assert result.message == "invalid code"

    async def test_code_expires_after_five_minutes(self, otp, messenger, clock):
        await otp.send_otp(PHONE, "REGISTRATION")
        clock.advance(minutes=6)
        result = await otp.verify_otp(PHONE, messenger.last_code)
        assert result.outcome is VerificationOutcome.EXPIRED
        assert result.message == "code expired"

    async def test_attempts_are_counted_before_checks(self, otp, store, messenger, clock):
        await otp.send_otp(PHONE, "REGISTRATION")
        clock.advance(minutes=6)
        await otp.verify_otp(PHONE, messenger.last_code)
        await otp.verify_otp(PHONE, messenger.last_code)
        assert _latest(store).attempts == 2

    async def test_third_attempt_can_still_succeed(self, otp, store, messenger):
        await otp.send_otp(PHONE, "REGISTRATION")
        row = _latest(store)
        store.otp_codes[row.id].attempts = 2
        result = await otp.verify_otp(PHONE, messenger.last_code)
        assert result.verified is True
        assert store.otp_codes[row.id].attempts == 3

    async def test_exhausted_attempts_are_refused(self, otp, store, messenger):
        await otp.send_otp(PHONE, "REGISTRATION")
        row = _latest(store)
        store.otp_codes[row.id].attempts = 3
        result = await otp.verify_otp(PHONE, messenger.last_code)
        assert result.outcome is VerificationOutcome.ATTEMPTS_EXHAUSTED
        assert result.message == "too many attempts. request a new code"
        assert store.otp_codes[row.id].is_used is False

    async def test_registration_code_marks_phone_verified(self, otp, store, messenger):
        user, _ = store.create_user_with_profile(PHONE, "hash", "Siti")
        await otp.send_otp(PHONE, "REGISTRATION")
        await otp.verify_otp(PHONE, messenger.last_code)
        assert store.get_user(user.id).phone_verified is True

    async def test_password_reset_code_leaves_flag_alone(self, otp, store, messenger):
        user, _ = store.create_user_with_profile(PHONE, "hash", "Siti")
        await otp.send_otp(PHONE, "PASSWORD_RESET")
        await otp.verify_otp(PHONE, messenger.last_code)
        assert store.get_user(user.id).phone_verified is False

    async def test_increment_failure_does_not_block_verify(self, settings, messenger, clock):
        class FlakyStore(MemoryStore):
            def increment_otp_attempts(self, otp_id):
                raise RuntimeError("write failed")

        otp = OTPManager(FlakyStore(), messenger, settings, clock=clock)
        await otp.send_otp(PHONE, "REGISTRATION")
        result = await otp.verify_otp(PHONE, messenger.last_code)
        assert result.verified is True

    async def test_lost_race_on_mark_used_reports_used(self, settings, messenger, clock):
        class RacingStore(MemoryStore):
            def mark_otp_used(self, otp_id, when):
                super().mark_otp_used(otp_id, when)
                return False

        otp = OTPManager(RacingStore(), messenger, settings, clock=clock)
        await otp.send_otp(PHONE, "REGISTRATION")
        result = await otp.verify_otp(PHONE, messenger.last_code)
        assert result.outcome is VerificationOutcome.USED
