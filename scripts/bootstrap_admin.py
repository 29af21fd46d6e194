#!/usr/bin/env python3
"""Create the first administrator account.

Administrators must have a verified email before they can log in, and the
first one has nobody to receive a verification link from, so this script
writes the account directly with the email already marked verified.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='correct horse battery' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'correct horse battery'

Environment Variables:
    ADMIN_EMAIL: Email for the administrator
    ADMIN_PASSWORD: Password for the administrator
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    # Imported late so the environment defaults below are in place first
    from authledger.config import Role
    from authledger.service.auth import normalize_email, validate_password
    from authledger.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    validate_password(password)

    existing = runtime.store.get_principal_by_email(Role.ADMINISTRATOR.value, email)
    if existing:
        return {"principal_id": existing.id, "email": email, "status": "already_exists"}
    if dry_run:
        return {"principal_id": None, "email": email, "status": "dry_run"}

    principal = runtime.store.create_principal(
        Role.ADMINISTRATOR.value,
        email,
        runtime.auth.hasher.hash(password),
        email_verified=True,
    )
    return {"principal_id": principal.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create the first Authledger administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Administrator email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Administrator password (or set ADMIN_PASSWORD env var)",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from authledger.service.errors import ServiceError
    from authledger.storage.errors import ConstraintViolation, StorageUnavailable

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except (ServiceError, ConstraintViolation, StorageUnavailable) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Administrator created: {result['email']} (id: {result['principal_id']})")
    elif result["status"] == "already_exists":
        print(f"Administrator {result['email']} already exists (id: {result['principal_id']})")
    else:
        print(f"[DRY RUN] Would create administrator: {result['email']}")


if __name__ == "__main__":
    main()
