from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from ojekkampus.config import Settings
from ojekkampus.logging import get_logger
from ojekkampus.service.deadlines import call_with_deadline
from ojekkampus.service.errors import (
    InvalidSignatureError,
    InvalidTokenError,
    MalformedTokenError,
    ServerError,
    TokenExpiredError,
    TokenRevokedError,
)
from ojekkampus.storage.errors import ConstraintViolation
from ojekkampus.storage.models import RefreshToken

logger = get_logger(__name__)

ACCESS_TOKEN_TTL_SECONDS = 15 * 60
REFRESH_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60
REFRESH_TOKEN_BYTES = 32


class TokenLedger(Protocol):
    def create_refresh_token(
        self,
        user_id: int,
        user_type: str,
        token_hash: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
        device_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def touch_refresh_token(self, token_id: int, when: datetime) -> None: ...

    def revoke_refresh_token(self, token_id: int, reason: str, when: datetime) -> bool: ...

    def revoke_user_refresh_tokens(
        self, user_id: int, reason: str, when: datetime
    ) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...


@dataclass
class DeviceInfo:
    device_info: Optional[str] = None
    device_name: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class AccessClaims:
    user_id: int
    role: str
    user_type: str
    issuer: str
    issued_at: int
    expires_at: int


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class TokenIssuer:
    """Mints signed access tokens and opaque, ledger-backed refresh tokens.

    Access tokens are stateless HS256 JWTs verified locally; they stay valid
    until ``exp`` even after the refresh token that produced them is revoked.
    Refresh tokens are random secrets returned once; only their SHA-256
    digest is written to the token ledger.
    """

    def __init__(
        self,
        ledger: TokenLedger,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not settings.jwt_secret:
            raise RuntimeError("JWT signing key is not configured")
        self.ledger = ledger
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
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

    # -- access tokens ----------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access_token(self, user_id: int, role: str, user_type: str) -> str:
        issued_at = int(self._now().timestamp())
        return self._encode_jwt(
            {
                "user_id": user_id,
                "role": role,
                "user_type": user_type,
                "iss": self.settings.jwt_issuer,
                "iat": issued_at,
                "exp": issued_at + ACCESS_TOKEN_TTL_SECONDS,
            }
        )

    def verify_access_token(self, token: str) -> AccessClaims:
        parts = token.split(".") if token else []
        if len(parts) != 3:
            raise MalformedTokenError()
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, binascii.Error):
            raise MalformedTokenError()
        if not isinstance(header, dict):
            raise MalformedTokenError()
        # Only HS256 is accepted to prevent algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidSignatureError()

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidSignatureError()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, binascii.Error):
            raise MalformedTokenError()
        if not isinstance(payload, dict):
            raise MalformedTokenError()
        try:
            claims = AccessClaims(
                user_id=int(payload["user_id"]),
                role=str(payload["role"]),
                user_type=str(payload["user_type"]),
                issuer=str(payload.get("iss", "")),
                issued_at=int(payload.get("iat", 0)),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError):
            raise MalformedTokenError()
        if claims.issuer != self.settings.jwt_issuer:
            raise InvalidSignatureError("invalid token issuer")
        if claims.expires_at <= int(self._now().timestamp()):
            raise TokenExpiredError()
        return claims

    # -- refresh tokens ---------------------------------------------------

    async def issue_refresh_token(
        self,
        user_id: int,
        user_type: str,
        device: Optional[DeviceInfo] = None,
    ) -> str:
        """Persist a new refresh grant and return its plaintext exactly once."""

        device = device or DeviceInfo()
        token = secrets.token_bytes(REFRESH_TOKEN_BYTES).hex()
        now = self._now()
        try:
            await self._call(
                self.ledger.create_refresh_token,
                user_id,
                user_type,
                hash_refresh_token(token),
                now + timedelta(seconds=REFRESH_TOKEN_TTL_SECONDS),
                device_info=device.device_info,
                device_name=device.device_name,
                ip_address=device.ip_address,
                now=now,
                operation="create_refresh_token",
            )
        except ConstraintViolation as exc:
            self.logger.error(
                "refresh_token_persist_failed", user_id=user_id, error=exc.message
            )
            raise ServerError("failed to create session") from exc
        self.logger.info("refresh_token_issued", user_id=user_id, user_type=user_type)
        return token

    async def resolve_refresh_token(self, token: str) -> RefreshToken:
        """Look a presented token up by digest and check its lifecycle state."""

        record = await self.find_refresh_token(token)
        if record is None:
            raise InvalidTokenError()
        if record.is_revoked:
            raise TokenRevokedError()
        if record.is_expired(self._now()):
            raise TokenExpiredError()
        return record

    async def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        if not token:
            return None
        return await self._call(
            self.ledger.get_refresh_token_by_hash,
            hash_refresh_token(token),
            operation="get_refresh_token",
        )
