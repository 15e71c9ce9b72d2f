#!/usr/bin/env python3
"""Create the first admin account, or promote an existing account to admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Secret' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Secret'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (in-memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns a dict with ``account_id``, ``email`` and ``status`` (one of
    ``created``, ``promoted``, ``already_admin``, ``dry_run``).
    """
    # Imported late so the environment is final before settings load
    from deepref_auth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)

    if existing is not None:
        if existing.role == "admin":
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"account_id": existing.id, "email": existing.email, "status": "dry_run"}
        runtime.store.set_role(existing.id, "admin")
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "promoted"}

    runtime.policy.validate(password)
    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        email, runtime.hasher.hash(password), role="admin"
    )
    runtime.store.mark_email_verified(account.id)
    print(f"Created admin account: {account.email} (id: {account.id})")
    return {"account_id": account.id, "email": account.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for DeepRef",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/deepref-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from deepref_auth.service.errors import ServiceError

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
