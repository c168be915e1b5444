from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Account roles; ADMIN accounts are provisioned out of band."""

    PASSENGER = "PASSENGER"
    DRIVER = "DRIVER"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    REJECTED = "REJECTED"


class OTPPurpose(str, Enum):
    REGISTRATION = "REGISTRATION"
    PASSWORD_RESET = "PASSWORD_RESET"
    PHONE_VERIFICATION = "PHONE_VERIFICATION"


class RevokeReason(str, Enum):
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    SECURITY = "SECURITY"
    EXPIRED = "EXPIRED"


class VerificationStatus(str, Enum):
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


VEHICLE_TYPE_MOTOR = "MOTOR"
DOCUMENT_TYPES = ("ktp", "sim", "stnk", "ktm")


@dataclass
class User:
    id: int
    phone_number: str
    password_hash: str
    full_name: str
    role: str = UserRole.PASSENGER.value
    status: str = UserStatus.ACTIVE.value
    email: Optional[str] = None
    phone_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_suspended(self) -> bool:
        return self.status == UserStatus.SUSPENDED.value


@dataclass
class RefreshToken:
    """Ledger row for an issued refresh token.

    ``user_type`` is the role frozen at issuance; later role changes on the
    user do not alter the claims minted from a live session.
    """

    id: int
    user_id: int
    user_type: str
    token_hash: str
    expires_at: datetime
    device_info: Optional[str] = None
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class OTPCode:
    id: int
    phone_number: str
    otp_code: str
    purpose: str
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None
    attempts: int = 0
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class PassengerProfile:
    id: int
    user_id: int
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    home_address: Optional[str] = None
    total_completed_orders: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class DriverProfile:
    id: int
    user_id: int
    vehicle_plate: str
    vehicle_type: str = VEHICLE_TYPE_MOTOR
    vehicle_brand: Optional[str] = None
    vehicle_model: Optional[str] = None
    vehicle_color: Optional[str] = None
    ktp_photo: Optional[str] = None
    sim_photo: Optional[str] = None
    stnk_photo: Optional[str] = None
    ktm_photo: Optional[str] = None
    is_verified: bool = False
    verification_notes: Optional[str] = None
    verified_by: Optional[int] = None
    verified_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    is_active: bool = False
    total_completed_orders: int = 0
    total_cancelled_orders: int = 0
    rating_avg: float = 0.0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def verification_status(self) -> str:
        if self.is_verified:
            return VerificationStatus.VERIFIED.value
        if self.rejection_reason:
            return VerificationStatus.REJECTED.value
        return VerificationStatus.PENDING_VERIFICATION.value

    @property
    def documents(self) -> Dict[str, bool]:
        return {
            f"{doc_type}_uploaded": bool(getattr(self, f"{doc_type}_photo"))
            for doc_type in DOCUMENT_TYPES
        }
