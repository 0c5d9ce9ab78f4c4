#!/usr/bin/env python3
"""Create or promote the first super admin.

Usage:
    ADMIN_EMAIL=root@campus.example ADMIN_PASSWORD=Secure123 python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email root@campus.example --password Secure123

Environment Variables:
    ADMIN_EMAIL: Email for the super admin
    ADMIN_PASSWORD: Password (at least 8 characters with upper, lower and digit)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    FIELD_ENCRYPTION_KEY or JWT_SECRET: required with DATABASE_URL
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from typing import Optional

from dotenv import dotenv_values


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote a super admin.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Imported late so the environment defaults below are seen by Settings
    from campusauth.clock import utc_now
    from campusauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_identity_by_email(email)

    if existing:
        if existing.role == "super_admin":
            print(f"User {email} already exists as super_admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to super_admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.set_role(existing.id, "super_admin", now=utc_now())
        runtime.auth.audit.record(
            "role_changed", subject_id=existing.id, role="super_admin", source="bootstrap"
        )
        print(f"Promoted existing user {email} to super_admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create super_admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    identity = runtime.auth.register_identity(
        email, password, name="Administrator", role="super_admin"
    )
    print(f"Created super_admin user: {email} (id: {identity.id})")
    return {"user_id": identity.id, "email": email, "status": "created"}


def _configured(name: str) -> bool:
    return bool(os.environ.get(name) or dotenv_values(".env").get(name))


def prepare_environment() -> Optional[str]:
    """Fill in local defaults; returns an error message when none are safe.

    Phone numbers in the database are encrypted with FIELD_ENCRYPTION_KEY,
    falling back to JWT_SECRET, so a generated secret is only acceptable
    against the memory store.
    """
    if not _configured("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        if not _configured("JWT_SECRET"):
            os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
        return None
    if not (_configured("JWT_SECRET") or _configured("FIELD_ENCRYPTION_KEY")):
        return "JWT_SECRET or FIELD_ENCRYPTION_KEY must be set when DATABASE_URL is used"
    if not _configured("JWT_SECRET"):
        # Only the field key is needed to read and write identities here
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    return None


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super admin for campusauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    error = prepare_environment()
    if error:
        print(f"Error: {error}")
        sys.exit(1)

    from campusauth.service.errors import ServiceError

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except ServiceError as e:
        print(f"Error: {e.message}")
        for problem in e.detail.get("problems", []):
            print(f"  - {problem}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to super_admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already a super admin.")


if __name__ == "__main__":
    main()
