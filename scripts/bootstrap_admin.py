#!/usr/bin/env python3
"""Bootstrap an administrator account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Str0ngPassword python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password Str0ngPassword

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_USERNAME: Username for the admin account (defaults to the email local part)
    ADMIN_PASSWORD: Password (8-72 characters with upper, lower and digit)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import re
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "admin"


def default_username(email: str) -> str:
    local = email.split("@", 1)[0]
    cleaned = re.sub(r"[^a-zA-Z0-9_-]", "_", local)
    return cleaned if len(cleaned) >= 3 else f"{cleaned}_admin"


async def bootstrap_admin(
    email: str, password: str, username: str | None = None, dry_run: bool = False
) -> dict:
    """Create an active admin account, or grant the admin role to an existing one.

    Returns:
        dict with account_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from aegis.service.runtime import get_runtime
    from aegis.storage.models import AccountStatus, AccountType

    runtime = get_runtime()
    admin_role = await runtime.rbac.get_role_by_name(ADMIN_ROLE)

    existing = runtime.store.get_account_by_email(email.strip().lower())
    if existing:
        role_names = {r.name for r in await runtime.rbac.account_roles(existing.id)}
        if ADMIN_ROLE in role_names:
            print(f"Account {email} already has the admin role (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would grant the admin role to {email}")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}

        await runtime.rbac.assign_role(existing.id, admin_role.id)
        print(f"Granted admin role to existing account {email} (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = await runtime.accounts.register(
        email,
        password,
        username or default_username(email),
        account_type=AccountType.ADMIN,
    )
    if account.status != AccountStatus.ACTIVE:
        account = await runtime.accounts.activate(account.id)
    await runtime.rbac.assign_role(account.id, admin_role.id)

    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Aegis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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

    from aegis.service.errors import ServiceError
    from aegis.service.passwords import check_strength

    try:
        check_strength(args.password)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("TOKEN_PURGE_ENABLED", "false")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, args.username, args.dry_run)
        )

        if result["status"] == "created":
            print("\nAdmin account created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  Account ID: {result['account_id']}")
        elif result["status"] == "promoted":
            print("\nExisting account granted the admin role!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - account is already an admin.")

    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
