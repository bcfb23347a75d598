#!/usr/bin/env python3
"""Create or promote an administrator account.

Privileged roles cannot be obtained through public registration, so the first
admin (usually a superadmin) is created with this script.

Usage:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD='Secure#Pass123' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email ops@example.com --password 'Secure#Pass123' --role superadmin

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must meet the password policy)
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str, password: str, role: str = "superadmin", dry_run: bool = False
) -> dict:
    """Create the account, or promote an existing one to ``role``.

    Returns a dict with account_id, email and status
    ('created', 'promoted', 'unchanged' or 'dry_run').
    """
    # Imported late so the environment defaults below are applied first
    from tourpass.service.auth import normalize_email
    from tourpass.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.role == role:
            print(f"Account {email} already has role {role} (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "unchanged"}
        if dry_run:
            print(f"[DRY RUN] Would promote {email} to {role}")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_account_role(existing.id, role)
        print(f"Promoted {email} to {role} (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        email, "Administrator", role=role, email_verified=True
    )
    runtime.auth.save_password(account.id, password)
    print(f"Created {role} account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account for Tourpass",
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
        "--role",
        choices=["admin", "superadmin"],
        default="superadmin",
        help="Role to grant (default: superadmin)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    from tourpass.api.schemas import _validate_password_strength

    try:
        _validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.role, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted.")
    elif result["status"] == "unchanged":
        print("\nNo changes needed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
