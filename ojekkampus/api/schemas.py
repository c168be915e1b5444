from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ojekkampus.storage.models import DriverProfile, PassengerProfile, User

MAX_NAME_LENGTH = 255
MAX_DEVICE_FIELD_LENGTH = 255

# Stable error codes carried in the envelope
_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "timeout",
})

_PHONE_PATTERN = re.compile(r"^\+?[0-9]{8,15}$")


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(
        ch for ch in normalized if unicodedata.category(ch) != "Cf"
    )


def _validate_phone(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("phone number must be a string")
    cleaned = re.sub(r"[\s\-()]", "", value)
    if not _PHONE_PATTERN.match(cleaned):
        raise ValueError("invalid phone number")
    return cleaned


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address")
    labels = domain.split(".")
    if len(labels) < 2 or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels):
        raise ValueError("invalid email address")
    return normalized


def validate_optional_email(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return _validate_email(value)


def validate_full_name(value: str) -> str:
    normalized = _normalize_unicode(value).strip()
    if not normalized:
        raise ValueError("full name is required")
    if len(normalized) > MAX_NAME_LENGTH:
        raise ValueError(f"full name exceeds {MAX_NAME_LENGTH} characters")
    return normalized


# -- requests -----------------------------------------------------------


class RegisterPassengerRequest(BaseModel):
    phone_number: str
    password: str = Field(..., max_length=128)
    full_name: str
    email: Optional[str] = None
    device_info: Optional[str] = Field(default=None, max_length=MAX_DEVICE_FIELD_LENGTH)
    device_name: Optional[str] = Field(default=None, max_length=MAX_DEVICE_FIELD_LENGTH)

    @field_validator("phone_number")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        return _validate_phone(value)

    @field_validator("full_name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return validate_full_name(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return validate_optional_email(value)


class LoginRequest(BaseModel):
    phone_number: str
    password: str = Field(..., max_length=128)
    device_info: Optional[str] = Field(default=None, max_length=MAX_DEVICE_FIELD_LENGTH)
    device_name: Optional[str] = Field(default=None, max_length=MAX_DEVICE_FIELD_LENGTH)

    @field_validator("phone_number")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        return _validate_phone(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class SendOTPRequest(BaseModel):
    phone_number: str
    purpose: str = Field(..., max_length=32)

    @field_validator("phone_number")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        return _validate_phone(value)


class ResendOTPRequest(SendOTPRequest):
    pass


class VerifyOTPRequest(BaseModel):
    phone_number: str
    otp_code: str = Field(..., min_length=6, max_length=6, pattern=r"^[0-9]{6}$")

    @field_validator("phone_number")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        return _validate_phone(value)


# -- responses ----------------------------------------------------------


class UserResponse(BaseModel):
    id: int
    phone_number: str
    email: Optional[str] = None
    full_name: str
    role: str
    status: str
    phone_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            phone_number=user.phone_number,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            status=user.status,
            phone_verified=user.phone_verified,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class PassengerProfileResponse(BaseModel):
    id: int
    user_id: int
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    home_address: Optional[str] = None
    total_completed_orders: int = 0


class DriverProfileResponse(BaseModel):
    id: int
    user_id: int
    vehicle_type: str
    vehicle_plate: str
    vehicle_brand: Optional[str] = None
    vehicle_model: Optional[str] = None
    vehicle_color: Optional[str] = None
    is_verified: bool = False
    verification_status: str
    rejection_reason: Optional[str] = None
    is_active: bool = False
    total_completed_orders: int = 0
    rating_avg: float = 0.0
    documents: Dict[str, bool] = Field(default_factory=dict)


def profile_response(
    profile: Union[PassengerProfile, DriverProfile, None]
) -> Union[PassengerProfileResponse, DriverProfileResponse, None]:
    if isinstance(profile, DriverProfile):
        return DriverProfileResponse(
            id=profile.id,
            user_id=profile.user_id,
            vehicle_type=profile.vehicle_type,
            vehicle_plate=profile.vehicle_plate,
            vehicle_brand=profile.vehicle_brand,
            vehicle_model=profile.vehicle_model,
            vehicle_color=profile.vehicle_color,
            is_verified=profile.is_verified,
            verification_status=profile.verification_status,
            rejection_reason=profile.rejection_reason,
            is_active=profile.is_active,
            total_completed_orders=profile.total_completed_orders,
            rating_avg=profile.rating_avg,
            documents=profile.documents,
        )
    if isinstance(profile, PassengerProfile):
        return PassengerProfileResponse(
            id=profile.id,
            user_id=profile.user_id,
            emergency_contact_name=profile.emergency_contact_name,
            emergency_contact_phone=profile.emergency_contact_phone,
            home_address=profile.home_address,
            total_completed_orders=profile.total_completed_orders,
        )
    return None


class AuthResponse(BaseModel):
    user: UserResponse
    profile: Optional[Union[DriverProfileResponse, PassengerProfileResponse]] = None
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class LoginResponse(AuthResponse):
    pass


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class LogoutResponse(BaseModel):
    message: str = "logged out successfully"


class LogoutAllResponse(BaseModel):
    revoked: int
    message: str = "all sessions revoked"


class SendOTPResponse(BaseModel):
    phone_number: str
    expires_in: int
    message: str


class VerifyOTPResponse(BaseModel):
    phone_number: str
    verified: bool
    outcome: str
    message: str
