#!/usr/bin/env python3
"""Create the first owner or admin account.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=root ADMIN_EMAIL=root@example.com ADMIN_PASSWORD='Blue-Harbor-42' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username root --email root@example.com \
        --password 'Blue-Harbor-42' --role owner

Environment Variables:
    ADMIN_USERNAME: Login name for the account
    ADMIN_EMAIL: Email for the account
    ADMIN_PASSWORD: Password (must pass the configured strength policy)
    ADMIN_ROLE: owner or admin (default: owner)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
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

BOOTSTRAP_ROLES = ("owner", "admin")


async def bootstrap_admin(
    username: str, email: str, password: str, role: str = "owner", dry_run: bool = False
) -> dict:
    """Create the account unless the username or email is already taken.

    Returns:
        dict with user_id, username and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from heimdall.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.get_user_by_username(username) or runtime.store.get_user_by_email(
        email
    )
    if existing:
        print(f"User {existing.username} already exists as {existing.role} (id: {existing.id})")
        return {"user_id": existing.id, "username": existing.username, "status": "exists"}

    if dry_run:
        runtime.passwords.check_for_user(password, username, email)
        print(f"[DRY RUN] Would create {role} user: {username} <{email}>")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = await runtime.accounts.create_user(
        username, email, password, role=role, display_name=username
    )
    print(f"Created {role} user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an owner or admin account for the Heimdall admin API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Login name (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--role",
        default=os.environ.get("ADMIN_ROLE", "owner"),
        choices=BOOTSTRAP_ROLES,
        help="Account role (or set ADMIN_ROLE env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate inputs and show what would be done without writing",
    )

    args = parser.parse_args()

    for flag, value in (("username", args.username), ("email", args.email), ("password", args.password)):
        if not value:
            print(f"Error: --{flag} or ADMIN_{flag.upper()} environment variable required")
            sys.exit(1)

    if not os.environ.get("AUTH_ACCESS_SECRET"):
        # The runtime refuses to start without a signing key; bootstrap never issues tokens.
        import secrets
        os.environ["AUTH_ACCESS_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email, args.password, args.role, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes made - the account already exists.")


if __name__ == "__main__":
    main()
