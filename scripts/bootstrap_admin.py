#!/usr/bin/env python3
"""Seed the built-in roles and create or promote an admin account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng-Passphrase!' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng-Passphrase!'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (the in-memory store is used if unset)
    JWT_SECRET: Signing secret; a throwaway one is generated if unset
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "admin"


async def bootstrap_admin(runtime, email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    existing = await runtime.db.call("get_user_by_email", email)

    if existing:
        if ADMIN_ROLE in existing.roles:
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        await runtime.db.call("assign_role", existing.id, ADMIN_ROLE)
        print(f"Promoted existing user {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(email, password, name="Administrator")
    await runtime.db.call("assign_role", user.id, ADMIN_ROLE)
    # Operators bootstrap the first account by hand; skip the mailed link
    await runtime.db.call("mark_email_verified", user.id)
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for authcore",
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
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    from authcore.service.credentials import validate_password_policy

    policy = validate_password_policy(args.password)
    if not policy.is_valid:
        print("Error: password does not meet requirements:")
        for error in policy.errors:
            print(f"       - {error}")
        return 1

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    else:
        os.environ.setdefault("USE_MEMORY_STORE", "false")

    from authcore.service.errors import InvalidConfiguration, ServiceError
    from authcore.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        result = asyncio.run(bootstrap_admin(runtime, args.email, args.password, args.dry_run))
    except (InvalidConfiguration, ServiceError) as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
