#!/usr/bin/env python3
"""Create the first administrator account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secret123 python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password Secret123 --name "Ops"

Environment Variables:
    ADMIN_EMAIL: Email for the administrator
    ADMIN_PASSWORD: Password (8-128 chars with lowercase, uppercase and a digit)
    ADMIN_NAME: Display name (defaults to "Administrator")
    DATABASE_URL: PostgreSQL connection string (uses a snapshotting memory store if unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, full_name: str, dry_run: bool = False) -> dict:
    """Create the administrator unless the email is already taken.

    Returns:
        dict with account_id, email and status (``created``, ``already_admin``,
        ``conflict`` or ``dry_run``)
    """
    # imported late so the env defaults set in main() are seen by Settings
    from authkernel.service.runtime import build_runtime
    from authkernel.storage.models import Role

    runtime = build_runtime()
    existing = runtime.accounts.find_by_identifier(email)
    if existing is not None:
        if existing.role == Role.ADMIN:
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        print(f"Account {email} exists with role {existing.role.value}; refusing to reuse it")
        return {"account_id": existing.id, "email": email, "status": "conflict"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.accounts.create_admin(
        email=email, password=password, full_name=full_name
    )
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account",
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
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Display name (or set ADMIN_NAME env var)",
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

    from authkernel.service.passwords import validate_password_complexity

    problems = validate_password_complexity(args.password)
    if problems:
        for problem in problems:
            print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/authkernel-bootstrap")
        print("Note: Using the memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "conflict":
        sys.exit(2)
    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
