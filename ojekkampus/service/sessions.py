from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Protocol

from ojekkampus.config import Settings
from ojekkampus.logging import get_logger
from ojekkampus.service.credentials import (
    CredentialVerifier,
    normalize_phone,
    validate_password,
)
from ojekkampus.service.deadlines import call_with_deadline, run_with_deadline
from ojekkampus.service.documents import DocumentStorage, UploadedDocument
from ojekkampus.service.errors import (
    AccountSuspendedError,
    ConflictError,
    DuplicateEmailError,
    DuplicatePhoneError,
    DuplicatePlateError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ServerError,
    ServiceError,
    ServiceTimeoutError,
    TokenRevokedError,
    ValidationError,
)
from ojekkampus.service.tokens import (
    ACCESS_TOKEN_TTL_SECONDS,
    DeviceInfo,
    TokenIssuer,
    TokenLedger,
)
from ojekkampus.storage.errors import ConstraintViolation
from ojekkampus.storage.models import (
    DOCUMENT_TYPES,
    VEHICLE_TYPE_MOTOR,
    DriverProfile,
    PassengerProfile,
    RevokeReason,
    User,
    UserRole,
    UserStatus,
)

logger = get_logger(__name__)

Profile = PassengerProfile | DriverProfile


class CredentialStore(Protocol):
    def create_user_with_profile(
        self,
        phone_number: str,
        password_hash: str,
        full_name: str,
        *,
        role: str = UserRole.PASSENGER.value,
        status: str = UserStatus.ACTIVE.value,
        email: Optional[str] = None,
        build_profile: Optional[Callable[[int], Dict]] = None,
        now: Optional[datetime] = None,
    ) -> tuple[User, Profile]: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_phone(self, phone_number: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_last_login(self, user_id: int, when: datetime) -> None: ...

    def mark_phone_verified(self, phone_number: str, when: datetime) -> bool: ...

    def update_user_status(self, user_id: int, status: str) -> Optional[User]: ...


class ProfileStore(Protocol):
    def get_passenger_profile(self, user_id: int) -> Optional[PassengerProfile]: ...

    def get_driver_profile(self, user_id: int) -> Optional[DriverProfile]: ...

    def driver_plate_exists(self, vehicle_plate: str) -> bool: ...


class SessionStore(CredentialStore, ProfileStore, TokenLedger, Protocol):
    pass


@dataclass
class AuthResult:
    user: User
    profile: Optional[Profile]
    access_token: str
    refresh_token: str
    expires_in: int = ACCESS_TOKEN_TTL_SECONDS


@dataclass
class LoginResult(AuthResult):
    pass


@dataclass
class TokenPair:
    access_token: str
    expires_in: int = ACCESS_TOKEN_TTL_SECONDS


@dataclass
class DriverRegistration:
    vehicle_plate: str
    documents: Mapping[str, UploadedDocument]
    vehicle_brand: Optional[str] = None
    vehicle_model: Optional[str] = None
    vehicle_color: Optional[str] = None


_DUPLICATE_ERRORS = {
    "phone_number": DuplicatePhoneError,
    "email": DuplicateEmailError,
    "vehicle_plate": DuplicatePlateError,
}


def _duplicate_from_violation(exc: ConstraintViolation) -> ServiceError:
    error_cls = _DUPLICATE_ERRORS.get(exc.field or "")
    if error_cls is None:
        return ConflictError(exc.message, detail=exc.detail)
    return error_cls()


class SessionManager:
    """Registration, login, refresh and logout over the token ledger.

    Refresh tokens move ACTIVE -> REVOKED on logout, or are treated as
    EXPIRED once ``expires_at`` passes; neither state is ever reactivated.
    """

    def __init__(
        self,
        store: SessionStore,
        tokens: TokenIssuer,
        verifier: CredentialVerifier,
        settings: Settings,
        *,
        documents: Optional[DocumentStorage] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.verifier = verifier
        self.settings = settings
        self.documents = documents
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

    async def _best_effort(self, func, *args, operation: str) -> None:
        try:
            await self._call(func, *args, operation=operation)
        except Exception as exc:
            self.logger.warning(f"{operation}_failed", error=str(exc))

    async def _issue_pair(
        self, user: User, device: Optional[DeviceInfo]
    ) -> tuple[str, str]:
        access_token = self.tokens.issue_access_token(user.id, user.role, user.role)
        refresh_token = await self.tokens.issue_refresh_token(user.id, user.role, device)
        return access_token, refresh_token

    async def _ensure_unique(
        self, phone: str, email: Optional[str], vehicle_plate: Optional[str] = None
    ) -> None:
        if await self._call(self.store.get_user_by_phone, phone, operation="get_user_by_phone"):
            self.logger.warning("registration_duplicate_phone", phone=phone)
            raise DuplicatePhoneError()
        if email and await self._call(
            self.store.get_user_by_email, email, operation="get_user_by_email"
        ):
            self.logger.warning("registration_duplicate_email", email=email)
            raise DuplicateEmailError()
        if vehicle_plate and await self._call(
            self.store.driver_plate_exists, vehicle_plate, operation="driver_plate_exists"
        ):
            self.logger.warning("registration_duplicate_plate", vehicle_plate=vehicle_plate)
            raise DuplicatePlateError()

    # -- registration -----------------------------------------------------

    async def register_passenger(
        self,
        phone_number: str,
        password: str,
        full_name: str,
        *,
        email: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
        deadline: Optional[float] = None,
    ) -> AuthResult:
        return await run_with_deadline(
            self._register(
                phone_number, password, full_name, email=email, device=device
            ),
            deadline,
            "register_passenger",
        )

    async def register_driver(
        self,
        phone_number: str,
        password: str,
        full_name: str,
        driver: DriverRegistration,
        *,
        email: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
        deadline: Optional[float] = None,
    ) -> AuthResult:
        return await run_with_deadline(
            self._register(
                phone_number,
                password,
                full_name,
                email=email,
                device=device,
                driver=driver,
            ),
            deadline,
            "register_driver",
        )

    async def _register(
        self,
        phone_number: str,
        password: str,
        full_name: str,
        *,
        email: Optional[str],
        device: Optional[DeviceInfo],
        driver: Optional[DriverRegistration] = None,
    ) -> AuthResult:
        role = UserRole.DRIVER.value if driver else UserRole.PASSENGER.value
        self.logger.info("registration_attempt", phone=phone_number, role=role)
        validate_password(password)
        phone = normalize_phone(phone_number)
        email = email.strip() if email and email.strip() else None
        plate = driver.vehicle_plate.strip().upper() if driver else None
        if driver:
            if not plate:
                raise ValidationError("vehicle plate is required")
            self._check_documents(driver.documents)
        await self._ensure_unique(phone, email, plate)

        password_hash = await asyncio.to_thread(self.verifier.hash, password)
        saved_paths: List[str] = []
        build_profile = None
        if driver:
            build_profile = self._driver_profile_builder(driver, plate, saved_paths)

        try:
            user, profile = await self._call(
                self.store.create_user_with_profile,
                phone,
                password_hash,
                full_name.strip(),
                role=role,
                status=(
                    UserStatus.PENDING_VERIFICATION.value
                    if driver
                    else UserStatus.ACTIVE.value
                ),
                email=email,
                build_profile=build_profile,
                now=self._now(),
                operation="create_user",
            )
        except ServiceTimeoutError:
            # Outcome unknown: the insert may still commit, so stored files stay
            self.logger.error("registration_outcome_unknown", phone=phone, role=role)
            raise
        except ConstraintViolation as exc:
            self._discard_documents(saved_paths)
            self.logger.warning(
                "registration_constraint_violation", phone=phone, field=exc.field
            )
            raise _duplicate_from_violation(exc) from exc
        except ServiceError:
            self._discard_documents(saved_paths)
            raise
        except Exception as exc:
            self._discard_documents(saved_paths)
            self.logger.error("registration_failed", phone=phone, error=str(exc))
            raise ServerError("failed to create user") from exc

        self.logger.info("user_registered", user_id=user.id, role=role)
        access_token, refresh_token = await self._issue_pair(user, device)
        return AuthResult(
            user=user,
            profile=profile,
            access_token=access_token,
            refresh_token=refresh_token,
        )

    def _check_documents(self, documents: Mapping[str, UploadedDocument]) -> None:
        if self.documents is None:
            raise ServerError("document storage is not configured")
        for doc_type in DOCUMENT_TYPES:
            upload = documents.get(doc_type)
            if upload is None or not upload.content:
                raise ValidationError(
                    f"{doc_type} document is required", detail={"field": doc_type}
                )
            self.documents.validate(doc_type, upload.content)

    def _driver_profile_builder(
        self,
        driver: DriverRegistration,
        plate: str,
        saved_paths: List[str],
    ) -> Callable[[int], Dict]:
        documents = self.documents

        def build(user_id: int) -> Dict:
            columns: Dict = {
                "vehicle_type": VEHICLE_TYPE_MOTOR,
                "vehicle_plate": plate,
                "vehicle_brand": driver.vehicle_brand,
                "vehicle_model": driver.vehicle_model,
                "vehicle_color": driver.vehicle_color,
                "is_verified": False,
                "is_active": False,
            }
            for doc_type in DOCUMENT_TYPES:
                upload = driver.documents[doc_type]
                path = documents.save(user_id, doc_type, upload.filename, upload.content)
                saved_paths.append(path)
                columns[f"{doc_type}_photo"] = path
            return columns

        return build

    def _discard_documents(self, saved_paths: List[str]) -> None:
        for path in saved_paths:
            self.documents.delete(path)

    # -- login / refresh / logout -----------------------------------------

    async def login(
        self,
        phone_number: str,
        password: str,
        *,
        device: Optional[DeviceInfo] = None,
        deadline: Optional[float] = None,
    ) -> LoginResult:
        return await run_with_deadline(
            self._login(phone_number, password, device), deadline, "login"
        )

    async def _login(
        self, phone_number: str, password: str, device: Optional[DeviceInfo]
    ) -> LoginResult:
        phone = normalize_phone(phone_number)
        self.logger.info("login_attempt", phone=phone)
        user = await self._call(
            self.store.get_user_by_phone, phone, operation="get_user_by_phone"
        )
        if user is None:
            await asyncio.to_thread(self.verifier.verify_absent, password)
            self.logger.warning("login_failed", phone=phone, reason="unknown_phone")
            raise InvalidCredentialsError()
        if not await asyncio.to_thread(self.verifier.verify, user.password_hash, password):
            self.logger.warning("login_failed", user_id=user.id, reason="bad_password")
            raise InvalidCredentialsError()
        if user.is_suspended:
            self.logger.warning("login_suspended_account", user_id=user.id)
            raise AccountSuspendedError()

        now = self._now()
        await self._best_effort(
            self.store.update_last_login, user.id, now, operation="update_last_login"
        )
        user.last_login_at = now
        access_token, refresh_token = await self._issue_pair(user, device)
        profile = await self._load_profile(user)
        self.logger.info("login_success", user_id=user.id, role=user.role)
        return LoginResult(
            user=user,
            profile=profile,
            access_token=access_token,
            refresh_token=refresh_token,
        )

    async def _load_profile(self, user: User) -> Optional[Profile]:
        if user.role == UserRole.DRIVER.value:
            return await self._call(
                self.store.get_driver_profile, user.id, operation="get_driver_profile"
            )
        if user.role == UserRole.PASSENGER.value:
            return await self._call(
                self.store.get_passenger_profile,
                user.id,
                operation="get_passenger_profile",
            )
        return None

    async def refresh(
        self, refresh_token: str, *, deadline: Optional[float] = None
    ) -> TokenPair:
        """Mint a new access token; the refresh token itself is not rotated."""

        return await run_with_deadline(
            self._refresh(refresh_token), deadline, "refresh"
        )

    async def _refresh(self, refresh_token: str) -> TokenPair:
        try:
            record = await self.tokens.resolve_refresh_token(refresh_token)
        except ServiceError as exc:
            self.logger.warning("refresh_rejected", reason=exc.message)
            raise
        await self._best_effort(
            self.store.touch_refresh_token,
            record.id,
            self._now(),
            operation="touch_refresh_token",
        )
        user = await self._call(self.store.get_user, record.user_id, operation="get_user")
        if user is None:
            self.logger.error("refresh_user_missing", user_id=record.user_id)
            raise InvalidTokenError("user not found")
        access_token = self.tokens.issue_access_token(user.id, user.role, record.user_type)
        self.logger.info("token_refreshed", user_id=user.id)
        return TokenPair(access_token=access_token)

    async def logout(
        self, refresh_token: str, *, deadline: Optional[float] = None
    ) -> None:
        """Revoke one refresh token.

        An already-revoked token raises ``TokenRevokedError``; an expired but
        unrevoked token is still revoked.
        """

        await run_with_deadline(self._logout(refresh_token), deadline, "logout")

    async def _logout(self, refresh_token: str) -> None:
        record = await self.tokens.find_refresh_token(refresh_token)
        if record is None:
            self.logger.warning("logout_unknown_token")
            raise InvalidTokenError()
        if record.is_revoked:
            self.logger.warning("logout_already_revoked", token_id=record.id)
            raise TokenRevokedError()
        revoked = await self._call(
            self.store.revoke_refresh_token,
            record.id,
            RevokeReason.LOGOUT.value,
            self._now(),
            operation="revoke_refresh_token",
        )
        if not revoked:
            # Lost a race with a concurrent logout
            raise TokenRevokedError()
        self.logger.info("logout_success", user_id=record.user_id, token_id=record.id)

    async def logout_all(
        self, user_id: int, *, deadline: Optional[float] = None
    ) -> int:
        return await run_with_deadline(
            self._call(
                self.store.revoke_user_refresh_tokens,
                user_id,
                RevokeReason.LOGOUT_ALL.value,
                self._now(),
                operation="revoke_user_refresh_tokens",
            ),
            deadline,
            "logout_all",
        )

    async def current_user(self, user_id: int) -> User:
        user = await self._call(self.store.get_user, user_id, operation="get_user")
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def sweep_expired_tokens(self) -> int:
        removed = await self._call(
            self.store.delete_expired_refresh_tokens,
            self._now(),
            operation="delete_expired_refresh_tokens",
        )
        if removed:
            self.logger.info("expired_refresh_tokens_purged", count=removed)
        return removed


__all__ = [
    "AuthResult",
    "CredentialStore",
    "DriverRegistration",
    "LoginResult",
    "ProfileStore",
    "SessionManager",
    "SessionStore",
    "TokenPair",
]
