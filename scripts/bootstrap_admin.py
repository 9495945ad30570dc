#!/usr/bin/env python3
"""Create or promote the seed admin account.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='S3cure-enough' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com --password 'S3cure-enough'

The admin is created with a verified email. An existing account with the
same username or email is promoted instead.

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: account details
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    username: str,
    email: str,
    password: str,
    *,
    dry_run: bool = False,
    runtime=None,
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, username, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from cobaltauth.service.runtime import get_runtime

    runtime = runtime or get_runtime()
    store = runtime.store
    existing = store.get_user_by_username(username) or store.get_user_by_email(email.lower())

    if existing:
        result = {"user_id": existing.id, "username": existing.username, "email": existing.email}
        if existing.is_admin:
            print(f"User {existing.username} is already an admin (id: {existing.id})")
            return {**result, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {existing.username} to admin")
            return {**result, "status": "dry_run"}
        store.set_user_role(existing.id, "admin")
        if not existing.email_verified:
            store.mark_email_verified(existing.id)
        print(f"Promoted existing user {existing.username} to admin (id: {existing.id})")
        return {**result, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username} <{email}>")
        return {"user_id": None, "username": username, "email": email, "status": "dry_run"}

    password_hash = runtime.hasher.hash(password)
    user = store.create_user(
        username, email.lower(), password_hash, role="admin", email_verified=True
    )
    print(f"Created admin user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "email": user.email, "status": "created"}


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Create or promote the Cobalt seed admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/cobaltauth-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from cobaltauth.service.errors import AuthError
    from cobaltauth.storage.errors import ConstraintViolation

    try:
        result = bootstrap_admin(args.username, args.email, args.password, dry_run=args.dry_run)
    except (AuthError, ConstraintViolation) as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created. Change the password after first login.")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin.")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
