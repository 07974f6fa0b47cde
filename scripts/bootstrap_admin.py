#!/usr/bin/env python3
"""Seed the default roles and an Administrator account.

Usage:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username admin --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_USERNAME / ADMIN_EMAIL / ADMIN_PASSWORD: the administrator account
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    username: str, email: str, password: str, dry_run: bool = False
) -> dict:
    from staffauth.service.auth import ensure_default_roles
    from staffauth.service.runtime import get_runtime
    from staffauth.storage.models import ADMINISTRATOR_ROLE

    runtime = get_runtime()
    if dry_run:
        print("[DRY RUN] Would ensure default roles exist")
    else:
        roles = ensure_default_roles(runtime.store)
        print("Roles: " + ", ".join(role.name for role in roles))

    admin_role = runtime.store.get_role_by_name(ADMINISTRATOR_ROLE)
    existing = runtime.store.get_account_by_email(email)
    if existing:
        if admin_role and existing.role_id == admin_role.id:
            print(f"User {email} already is an Administrator (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to Administrator")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        await runtime.auth.set_user_role(existing.id, admin_role.id)
        print(f"Promoted existing user {email} to Administrator (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create Administrator: {username} <{email}>")
        return {"user_id": None, "email": email, "status": "dry_run"}

    account = await runtime.auth.register(
        username, email, password, role_id=admin_role.id
    )
    await runtime.auth.verify_email(account.id)
    print(f"Created Administrator: {username} <{email}> (id: {account.id})")
    return {"user_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed default roles and an Administrator account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email, args.password, args.dry_run)
        )
        if result["status"] == "created":
            print("\nAdministrator created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "promoted":
            print("\nExisting user promoted to Administrator!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - user is already an Administrator.")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
