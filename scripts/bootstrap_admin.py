#!/usr/bin/env python3
"""Bootstrap an admin account for initial setup.

The account is created active and already verified, so it can sign in
immediately. Pass --protected to mark it system-protected (it then cannot be
deactivated or deleted).

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Pass' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Pass' --name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must pass the password policy)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str, password: str, full_name: str, *, protected: bool = False, dry_run: bool = False
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from learnquest.service.runtime import get_runtime
    from learnquest.storage.models import UserRole

    runtime = get_runtime()
    store = runtime.store

    existing = store.get_user_by_email(email)
    if existing:
        if existing.role is UserRole.ADMIN:
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        with store.transaction():
            store.update_user_role(existing.id, UserRole.ADMIN)
            if protected:
                store.set_user_protected(existing.id, True)
        print(f"Promoted existing user {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    password_hash = runtime.hasher.hash(password)
    with store.transaction():
        user = store.create_user(
            email,
            full_name,
            password_hash,
            role=UserRole.ADMIN,
            is_active=True,
            is_system_protected=protected,
        )
        store.add_verification(
            user.id, runtime.hasher.generate_code(), user.created_at, checked_ok=True
        )
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for LearnQuest",
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
    parser.add_argument("--name", default="Administrator", help="Display name")
    parser.add_argument(
        "--protected",
        action="store_true",
        help="Mark the account system-protected",
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

    from learnquest.service.passwords import password_problems

    problems = password_problems(args.password)
    if problems:
        print("Error: password " + "; ".join(problems))
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    if not os.environ.get("JWT_SECRET") and not os.environ.get("STATE_DIR"):
        os.environ["STATE_DIR"] = "/tmp/learnquest-bootstrap"

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            args.name,
            protected=args.protected,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
