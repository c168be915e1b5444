#!/usr/bin/env python3
"""Bootstrap an admin account for initial setup.

Admins cannot register through the public API; this script creates one
(or promotes an existing account) directly against the configured store.

Usage:
    # Using environment variables:
    ADMIN_PHONE=081234567890 ADMIN_PASSWORD=rahasia123 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --phone 081234567890 --password rahasia123 --name "Admin Kampus"

Environment Variables:
    ADMIN_PHONE: Phone number for the admin account
    ADMIN_PASSWORD: Password (8+ characters with a letter and a digit)
    ADMIN_NAME: Display name (default "Administrator")
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_admin(
    phone: str, password: str, full_name: str, dry_run: bool = False
) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with user_id, phone_number and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from ojekkampus.service.credentials import normalize_phone
    from ojekkampus.service.runtime import get_runtime
    from ojekkampus.storage.models import UserRole

    runtime = get_runtime()
    phone = normalize_phone(phone)

    existing_user = runtime.store.get_user_by_phone(phone)
    if existing_user:
        if existing_user.role == UserRole.ADMIN.value:
            print(f"User {phone} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "phone_number": phone, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {phone} to admin")
            return {"user_id": existing_user.id, "phone_number": phone, "status": "dry_run"}

        runtime.store.update_user_role(existing_user.id, UserRole.ADMIN.value)
        print(f"Promoted existing user {phone} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "phone_number": phone, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {phone}")
        return {"user_id": None, "phone_number": phone, "status": "dry_run"}

    result = await runtime.sessions.register_passenger(phone, password, full_name)
    runtime.store.update_user_role(result.user.id, UserRole.ADMIN.value)
    # The registration session carried the passenger role; drop it
    await runtime.sessions.logout_all(result.user.id)

    print(f"Created admin user: {phone} (id: {result.user.id})")
    return {"user_id": result.user.id, "phone_number": phone, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Ojek Kampus",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--phone",
        default=os.environ.get("ADMIN_PHONE"),
        help="Admin phone number (or set ADMIN_PHONE env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Admin display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.phone:
        print("Error: --phone or ADMIN_PHONE environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from ojekkampus.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(args.phone, args.password, args.name, args.dry_run)
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Phone: {result['phone_number']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
