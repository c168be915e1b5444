"""Unit tests for access-token signing and the refresh-token ledger."""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from ojekkampus.config import Settings
from ojekkampus.service.errors import (
    InvalidSignatureError,
    InvalidTokenError,
    MalformedTokenError,
    ServerError,
    TokenExpiredError,
    TokenRevokedError,
)
from ojekkampus.service.tokens import (
    ACCESS_TOKEN_TTL_SECONDS,
    REFRESH_TOKEN_TTL_SECONDS,
    DeviceInfo,
    TokenIssuer,
    hash_refresh_token,
)
from ojekkampus.storage.errors import ConstraintViolation
from ojekkampus.storage.memory import MemoryStore
from ojekkampus.storage.models import RevokeReason


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


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
def issuer(store, settings, clock):
    return TokenIssuer(store, settings, clock=clock)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestAccessTokens:
    def test_round_trip_carries_claims(self, issuer, clock):
        token = issuer.issue_access_token(7, "DRIVER", "DRIVER")
        claims = issuer.verify_access_token(token)
        assert claims.user_id == 7
        assert claims.role == "DRIVER"
        assert claims.user_type == "DRIVER"
        assert claims.issuer == "ojek-kampus"
        assert claims.expires_at - claims.issued_at == ACCESS_TOKEN_TTL_SECONDS
        assert claims.issued_at == int(clock.now.timestamp())

    def test_header_is_hs256(self, issuer):
        token = issuer.issue_access_token(1, "PASSENGER", "PASSENGER")
        header = json.loads(base64.urlsafe_b64decode(token.split(".")[0] + "=="))
        assert header == {"alg": "HS256", "typ": "JWT"}

    def test_expired_after_fifteen_minutes(self, issuer, clock):
        token = issuer.issue_access_token(1, "PASSENGER", "PASSENGER")
        clock.advance(seconds=ACCESS_TOKEN_TTL_SECONDS - 1)
        issuer.verify_access_token(token)
        clock.advance(seconds=1)
        with pytest.raises(TokenExpiredError):
            issuer.verify_access_token(token)

    def test_tampered_payload_fails_signature(self, issuer):
        token = issuer.issue_access_token(1, "PASSENGER", "PASSENGER")
        header, _, signature = token.split(".")
        forged = _b64({"user_id": 1, "role": "ADMIN", "user_type": "ADMIN", "iss": "ojek-kampus", "exp": 9999999999})
        with pytest.raises(InvalidSignatureError):
            issuer.verify_access_token(f"{header}.{forged}.{signature}")

    def test_other_secret_is_rejected(self, store, tmp_path, clock, issuer):
        other = TokenIssuer(
            store,
            Settings(jwt_secret="another-secret-another-secret-another-1", shared_fs_root=str(tmp_path)),
            clock=clock,
        )
        token = other.issue_access_token(1, "PASSENGER", "PASSENGER")
        with pytest.raises(InvalidSignatureError):
            issuer.verify_access_token(token)

    def test_alg_none_is_rejected(self, issuer):
        token = issuer.issue_access_token(1, "PASSENGER", "PASSENGER")
        _, payload, signature = token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(InvalidSignatureError):
            issuer.verify_access_token(f"{header}.{payload}.{signature}")

    def test_wrong_issuer_is_rejected(self, store, tmp_path, clock, issuer):
        other = TokenIssuer(
            store,
            Settings(
                jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
                jwt_issuer="someone-else",
                shared_fs_root=str(tmp_path),
            ),
            clock=clock,
        )
        with pytest.raises(InvalidSignatureError):
            issuer.verify_access_token(other.issue_access_token(1, "PASSENGER", "PASSENGER"))

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"])
    def test_malformed_tokens(self, issuer, token):
        with pytest.raises(MalformedTokenError):
            issuer.verify_access_token(token)

    def test_missing_claims_are_malformed(self, issuer):
        header = _b64({"alg": "HS256", "typ": "JWT"})
        payload = _b64({"role": "PASSENGER"})
        signature = issuer._sign(f"{header}.{payload}")
        with pytest.raises(MalformedTokenError):
            issuer.verify_access_token(f"{header}.{payload}.{signature}")

    def test_missing_secret_is_fatal(self, store):
        settings = Settings.model_construct(jwt_secret="", jwt_issuer="ojek-kampus")
        with pytest.raises(RuntimeError):
            TokenIssuer(store, settings)


class TestRefreshTokens:
    async def test_issue_stores_digest_only(self, issuer, store, clock):
        token = await issuer.issue_refresh_token(
            3, "PASSENGER", DeviceInfo(device_info="pytest", ip_address="10.0.0.1")
        )
        assert len(token) == 64
        (record,) = store.refresh_tokens.values()
        assert record.token_hash == hash_refresh_token(token)
        assert record.token_hash != token
        assert record.user_type == "PASSENGER"
        assert record.ip_address == "10.0.0.1"
        assert record.expires_at == clock.now + timedelta(seconds=REFRESH_TOKEN_TTL_SECONDS)

    async def test_tokens_are_unique(self, issuer):
        first = await issuer.issue_refresh_token(3, "PASSENGER")
        second = await issuer.issue_refresh_token(3, "PASSENGER")
        assert first != second

    async def test_resolve_active_token(self, issuer):
        token = await issuer.issue_refresh_token(3, "PASSENGER")
        record = await issuer.resolve_refresh_token(token)
        assert record.user_id == 3

    async def test_resolve_unknown_token(self, issuer):
        with pytest.raises(InvalidTokenError):
            await issuer.resolve_refresh_token("0" * 64)

    async def test_resolve_revoked_token(self, issuer, store, clock):
        token = await issuer.issue_refresh_token(3, "PASSENGER")
        record = await issuer.resolve_refresh_token(token)
        store.revoke_refresh_token(record.id, RevokeReason.LOGOUT.value, clock.now)
        with pytest.raises(TokenRevokedError):
            await issuer.resolve_refresh_token(token)

    async def test_resolve_expired_token(self, issuer, clock):
        token = await issuer.issue_refresh_token(3, "PASSENGER")
        clock.advance(seconds=REFRESH_TOKEN_TTL_SECONDS)
        with pytest.raises(TokenExpiredError):
            await issuer.resolve_refresh_token(token)

    async def test_find_empty_token_returns_none(self, issuer):
        assert await issuer.find_refresh_token("") is None

    async def test_ledger_conflict_becomes_server_error(self, settings, clock):
        class CollidingLedger(MemoryStore):
            def create_refresh_token(self, *args, **kwargs):
                raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})

        issuer = TokenIssuer(CollidingLedger(), settings, clock=clock)
        with pytest.raises(ServerError) as exc_info:
            await issuer.issue_refresh_token(1, "PASSENGER")
        assert exc_info.value.message == "failed to create session"
