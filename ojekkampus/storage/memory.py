from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ojekkampus.logging import get_logger
from ojekkampus.storage.errors import ConstraintViolation
from ojekkampus.storage.models import (
    DriverProfile,
    OTPCode,
    PassengerProfile,
    RefreshToken,
    User,
    UserRole,
    UserStatus,
    utcnow,
)

ProfileBuilder = Callable[[int], Dict]


class MemoryStore:
    """In-memory backing store used by tests and ``USE_MEMORY_STORE``.

    Every ledger lives in a plain dict keyed by integer id. Uniqueness on
    phone, email, vehicle plate and refresh digest is enforced here the same
    way the Postgres unique constraints do, so callers see the identical
    ``ConstraintViolation`` from both backends.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.passenger_profiles: Dict[int, PassengerProfile] = {}
        self.driver_profiles: Dict[int, DriverProfile] = {}
        self.refresh_tokens: Dict[int, RefreshToken] = {}
        self.otp_codes: Dict[int, OTPCode] = {}
        self._seq: Dict[str, int] = {}
        # Using RLock so build_profile callbacks may read back through the store
        self._data_lock = threading.RLock()

    def _next_id(self, table: str) -> int:
        value = self._seq.get(table, 0) + 1
        self._seq[table] = value
        return value

    # -- credential store -------------------------------------------------

    def create_user_with_profile(
        self,
        phone_number: str,
        password_hash: str,
        full_name: str,
        *,
        role: str = UserRole.PASSENGER.value,
        status: str = UserStatus.ACTIVE.value,
        email: Optional[str] = None,
        build_profile: Optional[ProfileBuilder] = None,
        now: Optional[datetime] = None,
    ) -> tuple[User, PassengerProfile | DriverProfile]:
        """Create a user and its role profile in one lock scope.

        ``build_profile(user_id)`` returns the extra profile columns; if it
        raises, nothing is written.
        """

        created_at = now or utcnow()
        with self._data_lock:
            self._check_user_unique(phone_number, email)
            user_id = self._seq.get("users", 0) + 1
            extra = build_profile(user_id) if build_profile else {}
            if role == UserRole.DRIVER.value:
                plate = extra.get("vehicle_plate")
                if plate and self.driver_plate_exists(plate):
                    raise ConstraintViolation(
                        "vehicle plate already exists", {"field": "vehicle_plate"}
                    )
            self._seq["users"] = user_id
            user = User(
                id=user_id,
                phone_number=phone_number,
                password_hash=password_hash,
                full_name=full_name,
                role=role,
                status=status,
                email=email,
                created_at=created_at,
                updated_at=created_at,
            )
            self.users[user_id] = user
            profile: PassengerProfile | DriverProfile
            if role == UserRole.DRIVER.value:
                profile = DriverProfile(
                    id=self._next_id("driver_profiles"),
                    user_id=user_id,
                    created_at=created_at,
                    updated_at=created_at,
                    **extra,
                )
                self.driver_profiles[user_id] = profile
            else:
                profile = PassengerProfile(
                    id=self._next_id("passenger_profiles"),
                    user_id=user_id,
                    created_at=created_at,
                    updated_at=created_at,
                    **extra,
                )
                self.passenger_profiles[user_id] = profile
            return replace(user), replace(profile)

    def _check_user_unique(self, phone_number: str, email: Optional[str]) -> None:
        for existing in self.users.values():
            if existing.phone_number == phone_number:
                raise ConstraintViolation(
                    "phone number already exists", {"field": "phone_number"}
                )
            if email and existing.email and existing.email.lower() == email.lower():
                raise ConstraintViolation("email already exists", {"field": "email"})

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.phone_number == phone_number:
                    return replace(user)
        return None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email and user.email.lower() == email.lower():
                    return replace(user)
        return None

    def update_last_login(self, user_id: int, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = when
                user.updated_at = when

    def mark_phone_verified(self, phone_number: str, when: datetime) -> bool:
        with self._data_lock:
            for user in self.users.values():
                if user.phone_number == phone_number:
                    user.phone_verified = True
                    user.updated_at = when
                    return True
        return False

    def update_user_status(self, user_id: int, status: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            user.updated_at = utcnow()
            return replace(user)

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = utcnow()
            return replace(user)

    # -- profile store ----------------------------------------------------

    def get_passenger_profile(self, user_id: int) -> Optional[PassengerProfile]:
        with self._data_lock:
            profile = self.passenger_profiles.get(user_id)
            return replace(profile) if profile else None

    def get_driver_profile(self, user_id: int) -> Optional[DriverProfile]:
        with self._data_lock:
            profile = self.driver_profiles.get(user_id)
            return replace(profile) if profile else None

    def driver_plate_exists(self, vehicle_plate: str) -> bool:
        needle = vehicle_plate.strip().upper()
        with self._data_lock:
            return any(
                p.vehicle_plate.strip().upper() == needle
                for p in self.driver_profiles.values()
            )

    # -- token ledger -----------------------------------------------------

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
    ) -> RefreshToken:
        with self._data_lock:
            if any(t.token_hash == token_hash for t in self.refresh_tokens.values()):
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "token_hash"}
                )
            token = RefreshToken(
                id=self._next_id("refresh_tokens"),
                user_id=user_id,
                user_type=user_type,
                token_hash=token_hash,
                expires_at=expires_at,
                device_info=device_info,
                device_name=device_name,
                ip_address=ip_address,
                created_at=now or utcnow(),
            )
            self.refresh_tokens[token.id] = token
            return replace(token)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            for token in self.refresh_tokens.values():
                if token.token_hash == token_hash:
                    return replace(token)
        return None

    def touch_refresh_token(self, token_id: int, when: datetime) -> None:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token:
                token.last_used_at = when

    def revoke_refresh_token(self, token_id: int, reason: str, when: datetime) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token or token.is_revoked:
                return False
            token.is_revoked = True
            token.revoked_at = when
            token.revoke_reason = reason
            return True

    def revoke_user_refresh_tokens(
        self, user_id: int, reason: str, when: datetime
    ) -> int:
        revoked = 0
        with self._data_lock:
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and not token.is_revoked:
                    token.is_revoked = True
                    token.revoked_at = when
                    token.revoke_reason = reason
                    revoked += 1
        return revoked

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [tid for tid, t in self.refresh_tokens.items() if t.is_expired(now)]
            for tid in stale:
                self.refresh_tokens.pop(tid, None)
        return len(stale)

    # -- OTP ledger -------------------------------------------------------

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
    ) -> OTPCode:
        with self._data_lock:
            otp = OTPCode(
                id=self._next_id("otp_codes"),
                phone_number=phone_number,
                otp_code=otp_code,
                purpose=purpose,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now or utcnow(),
            )
            self.otp_codes[otp.id] = otp
            return replace(otp)

    def _most_recent(self, rows: List[OTPCode]) -> Optional[OTPCode]:
        if not rows:
            return None
        return replace(max(rows, key=lambda o: (o.created_at, o.id)))

    def get_latest_otp(self, phone_number: str, purpose: str) -> Optional[OTPCode]:
        with self._data_lock:
            rows = [
                o
                for o in self.otp_codes.values()
                if o.phone_number == phone_number and o.purpose == purpose
            ]
            return self._most_recent(rows)

    def find_otp(self, phone_number: str, otp_code: str) -> Optional[OTPCode]:
        with self._data_lock:
            rows = [
                o
                for o in self.otp_codes.values()
                if o.phone_number == phone_number and o.otp_code == otp_code
            ]
            return self._most_recent(rows)

    def increment_otp_attempts(self, otp_id: int) -> None:
        with self._data_lock:
            otp = self.otp_codes.get(otp_id)
            if otp:
                otp.attempts += 1

    def mark_otp_used(self, otp_id: int, when: datetime) -> bool:
        with self._data_lock:
            otp = self.otp_codes.get(otp_id)
            if not otp or otp.is_used:
                return False
            otp.is_used = True
            otp.used_at = when
            return True

    def invalidate_otps(self, phone_number: str, purpose: str, when: datetime) -> int:
        invalidated = 0
        with self._data_lock:
            for otp in self.otp_codes.values():
                if (
                    otp.phone_number == phone_number
                    and otp.purpose == purpose
                    and not otp.is_used
                ):
                    otp.is_used = True
                    otp.used_at = when
                    invalidated += 1
        return invalidated

    # -- lifecycle --------------------------------------------------------

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None
