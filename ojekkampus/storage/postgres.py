from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

# Unique constraint name fragments installed by scripts/schema.sql
_CONSTRAINT_FIELDS = (
    ("users_phone_number_key", "phone_number"),
    ("users_email_key", "email"),
    ("driver_profiles_vehicle_plate_key", "vehicle_plate"),
    ("refresh_tokens_token_hash_key", "token_hash"),
)

_DRIVER_PROFILE_COLUMNS = (
    "vehicle_type",
    "vehicle_plate",
    "vehicle_brand",
    "vehicle_model",
    "vehicle_color",
    "ktp_photo",
    "sim_photo",
    "stnk_photo",
    "ktm_photo",
    "is_verified",
    "is_active",
)

_PASSENGER_PROFILE_COLUMNS = (
    "emergency_contact_name",
    "emergency_contact_phone",
    "home_address",
)


def _constraint_field(exc: errors.UniqueViolation) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    name = getattr(diag, "constraint_name", None) or str(exc)
    for fragment, field in _CONSTRAINT_FIELDS:
        if fragment in name:
            return field
    return None


class PostgresStore:
    """Postgres-backed credential, token and OTP ledgers."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the ledger tables exist before serving requests."""

        required_tables = [
            "users",
            "passenger_profiles",
            "driver_profiles",
            "refresh_tokens",
            "otp_codes",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # -- row mappers ------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            phone_number=row["phone_number"],
            password_hash=row["password_hash"],
            full_name=row["full_name"],
            role=row.get("role", UserRole.PASSENGER.value),
            status=row.get("status", UserStatus.ACTIVE.value),
            email=row.get("email"),
            phone_verified=bool(row.get("phone_verified", False)),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _passenger_from_row(row: Dict[str, Any]) -> PassengerProfile:
        return PassengerProfile(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            emergency_contact_name=row.get("emergency_contact_name"),
            emergency_contact_phone=row.get("emergency_contact_phone"),
            home_address=row.get("home_address"),
            total_completed_orders=row.get("total_completed_orders") or 0,
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _driver_from_row(row: Dict[str, Any]) -> DriverProfile:
        return DriverProfile(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            vehicle_plate=row["vehicle_plate"],
            vehicle_type=row.get("vehicle_type") or "MOTOR",
            vehicle_brand=row.get("vehicle_brand"),
            vehicle_model=row.get("vehicle_model"),
            vehicle_color=row.get("vehicle_color"),
            ktp_photo=row.get("ktp_photo"),
            sim_photo=row.get("sim_photo"),
            stnk_photo=row.get("stnk_photo"),
            ktm_photo=row.get("ktm_photo"),
            is_verified=bool(row.get("is_verified", False)),
            verification_notes=row.get("verification_notes"),
            verified_by=row.get("verified_by"),
            verified_at=row.get("verified_at"),
            rejection_reason=row.get("rejection_reason"),
            is_active=bool(row.get("is_active", False)),
            total_completed_orders=row.get("total_completed_orders") or 0,
            total_cancelled_orders=row.get("total_cancelled_orders") or 0,
            rating_avg=float(row.get("rating_avg") or 0.0),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            user_type=row["user_type"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            device_info=row.get("device_info"),
            device_name=row.get("device_name"),
            ip_address=row.get("ip_address"),
            is_revoked=bool(row.get("is_revoked", False)),
            revoked_at=row.get("revoked_at"),
            revoke_reason=row.get("revoke_reason"),
            created_at=row.get("created_at") or utcnow(),
            last_used_at=row.get("last_used_at"),
        )

    @staticmethod
    def _otp_from_row(row: Dict[str, Any]) -> OTPCode:
        return OTPCode(
            id=int(row["id"]),
            phone_number=row["phone_number"],
            otp_code=row["otp_code"],
            purpose=row["purpose"],
            expires_at=row["expires_at"],
            is_used=bool(row.get("is_used", False)),
            used_at=row.get("used_at"),
            attempts=row.get("attempts") or 0,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
        )

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
        """Insert a user and its role profile in a single transaction.

        ``build_profile(user_id)`` runs inside the transaction; raising from
        it rolls the user insert back.
        """

        created_at = now or utcnow()
        try:
            with self._connect() as conn, conn.transaction():
                user_row = conn.execute(
                    """
                    INSERT INTO users (phone_number, email, password_hash, full_name, role, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        phone_number,
                        email,
                        password_hash,
                        full_name,
                        role,
                        status,
                        created_at,
                        created_at,
                    ),
                ).fetchone()
                user = self._user_from_row(user_row)
                extra = build_profile(user.id) if build_profile else {}
                if role == UserRole.DRIVER.value:
                    columns = [c for c in _DRIVER_PROFILE_COLUMNS if c in extra]
                    table = "driver_profiles"
                else:
                    columns = [c for c in _PASSENGER_PROFILE_COLUMNS if c in extra]
                    table = "passenger_profiles"
                names = ", ".join(["user_id", *columns, "created_at", "updated_at"])
                placeholders = ", ".join(["%s"] * (len(columns) + 3))
                profile_row = conn.execute(
                    f"INSERT INTO {table} ({names}) VALUES ({placeholders}) RETURNING *",
                    (user.id, *[extra[c] for c in columns], created_at, created_at),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(
                f"{field or 'value'} already exists", {"field": field}
            ) from exc
        if role == UserRole.DRIVER.value:
            return user, self._driver_from_row(profile_row)
        return user, self._passenger_from_row(profile_row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE phone_number = %s", (phone_number,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_last_login(self, user_id: int, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET last_login_at = %s, updated_at = %s WHERE id = %s",
                (when, when, user_id),
            )

    def mark_phone_verified(self, phone_number: str, when: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET phone_verified = TRUE, updated_at = %s WHERE phone_number = %s",
                (when, phone_number),
            )
            return cur.rowcount > 0

    def update_user_status(self, user_id: int, status: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                (status, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # -- profile store ----------------------------------------------------

    def get_passenger_profile(self, user_id: int) -> Optional[PassengerProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM passenger_profiles WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._passenger_from_row(row) if row else None

    def get_driver_profile(self, user_id: int) -> Optional[DriverProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM driver_profiles WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._driver_from_row(row) if row else None

    def driver_plate_exists(self, vehicle_plate: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM driver_profiles WHERE upper(vehicle_plate) = upper(%s)",
                (vehicle_plate.strip(),),
            ).fetchone()
        return bool(row)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_tokens (user_id, user_type, token_hash, device_info, device_name, ip_address, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        user_type,
                        token_hash,
                        device_info,
                        device_name,
                        ip_address,
                        expires_at,
                        now or utcnow(),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "token_hash"}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "refresh token owner missing", {"user_id": user_id}
            ) from exc
        return self._refresh_from_row(row)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def touch_refresh_token(self, token_id: int, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_tokens SET last_used_at = %s WHERE id = %s",
                (when, token_id),
            )

    def revoke_refresh_token(self, token_id: int, reason: str, when: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens
                SET is_revoked = TRUE, revoked_at = %s, revoke_reason = %s
                WHERE id = %s AND is_revoked = FALSE
                """,
                (when, reason, token_id),
            )
            return cur.rowcount > 0

    def revoke_user_refresh_tokens(
        self, user_id: int, reason: str, when: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens
                SET is_revoked = TRUE, revoked_at = %s, revoke_reason = %s
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (when, reason, user_id),
            )
            return cur.rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO otp_codes (phone_number, otp_code, purpose, expires_at, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    phone_number,
                    otp_code,
                    purpose,
                    expires_at,
                    ip_address,
                    user_agent,
                    now or utcnow(),
                ),
            ).fetchone()
        return self._otp_from_row(row)

    def get_latest_otp(self, phone_number: str, purpose: str) -> Optional[OTPCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_codes
                WHERE phone_number = %s AND purpose = %s
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (phone_number, purpose),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def find_otp(self, phone_number: str, otp_code: str) -> Optional[OTPCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_codes
                WHERE phone_number = %s AND otp_code = %s
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (phone_number, otp_code),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def increment_otp_attempts(self, otp_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE otp_codes SET attempts = attempts + 1 WHERE id = %s", (otp_id,)
            )

    def mark_otp_used(self, otp_id: int, when: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE otp_codes SET is_used = TRUE, used_at = %s WHERE id = %s AND is_used = FALSE",
                (when, otp_id),
            )
            return cur.rowcount > 0

    def invalidate_otps(self, phone_number: str, purpose: str, when: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE otp_codes SET is_used = TRUE, used_at = %s
                WHERE phone_number = %s AND purpose = %s AND is_used = FALSE
                """,
                (when, phone_number, purpose),
            )
            return cur.rowcount

    # -- lifecycle --------------------------------------------------------

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()
