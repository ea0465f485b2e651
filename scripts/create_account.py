#!/usr/bin/env python3
"""Create a security record (account) in the configured store.

Usage:
    ACCOUNT_EMAIL=editor@example.com ACCOUNT_PASSWORD='Long-enough-pass1!' python scripts/create_account.py

    python scripts/create_account.py --email editor@example.com --password 'Long-enough-pass1!' \
        --name editor --must-change-password

Environment Variables:
    ACCOUNT_EMAIL: Login identity for the account
    ACCOUNT_PASSWORD: Initial password (must meet the password policy)
    REDIS_URL: Redis connection string for the record store
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_account(
    email: str,
    password: str,
    *,
    name: str = "",
    must_change_password: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the account unless the identity is already taken.

    Returns:
        dict with record_id, email and status ('created', 'exists' or 'dry_run')
    """
    # Imported late so config is read after argument handling
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        existing = await runtime.store.find_one(identity=email)
        if existing:
            print(f"Account {email} already exists (id: {existing.id})")
            return {"record_id": existing.id, "email": email, "status": "exists"}

        runtime.password_policy.validate_strength(password)
        if dry_run:
            print(f"[DRY RUN] Would create account: {email}")
            return {"record_id": None, "email": email, "status": "dry_run"}

        record = await runtime.credentials.create_account(
            email,
            password,
            name=name,
            must_change_password=must_change_password,
        )
        print(f"Created account: {email} (id: {record.id})")
        return {"record_id": record.id, "email": email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create an account for the authentication gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ACCOUNT_EMAIL"),
        help="Account email (or set ACCOUNT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="Initial password (or set ACCOUNT_PASSWORD env var)",
    )
    parser.add_argument("--name", default="", help="Display name, also accepted as a login handle")
    parser.add_argument(
        "--must-change-password",
        action="store_true",
        help="Force a password change on first login",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ACCOUNT_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ACCOUNT_PASSWORD environment variable required")
        sys.exit(1)

    from authgate.service.errors import ServiceError

    try:
        result = asyncio.run(
            create_account(
                args.email,
                args.password,
                name=args.name,
                must_change_password=args.must_change_password,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Record ID: {result['record_id']}")


if __name__ == "__main__":
    main()
