#!/usr/bin/env python3
"""Create the first super admin account.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=root ADMIN_PASSWORD='Secure-Password-123!' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username root --password 'Secure-Password-123!'

Environment Variables:
    ADMIN_USERNAME: Username for the super admin
    ADMIN_EMAIL: Optional email for the super admin
    ADMIN_PASSWORD: Password (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_super_admin(
    runtime,
    username: str,
    password: str,
    *,
    email: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create a super admin unless the username is already taken.

    Returns:
        dict with user_id, username, and status ('created', 'exists' or 'dry_run')
    """
    from kitchguard.service.passwords import check_password_strength
    from kitchguard.storage.models import Role

    existing = runtime.store.get_principal_by_username(username)
    if existing is not None:
        status = "exists" if existing.role is Role.SUPER_ADMIN else "conflict"
        return {"user_id": existing.id, "username": username, "status": status}

    violations = check_password_strength(password)
    if violations:
        return {
            "user_id": None,
            "username": username,
            "status": "weak_password",
            "violations": [v.message for v in violations],
        }

    if dry_run:
        return {"user_id": None, "username": username, "status": "dry_run"}

    def _create():
        principal = runtime.store.create_principal(
            username,
            runtime.passwords.hash(password),
            Role.SUPER_ADMIN,
            email=email,
        )
        runtime.audit.record("super_admin_bootstrapped", target_id=principal.id)
        return principal

    principal = runtime.store.run_in_transaction(_create)
    return {"user_id": principal.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super admin for KitchGuard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Super admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Super admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Super admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Import here so the environment above is seen by the settings loader
    from kitchguard.service.runtime import Runtime

    runtime = Runtime()
    try:
        result = bootstrap_super_admin(
            runtime, args.username, args.password, email=args.email, dry_run=args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        runtime.close()

    status = result["status"]
    if status == "created":
        print("\nSuper admin created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif status == "exists":
        print("\nNo changes needed - user is already a super admin.")
    elif status == "dry_run":
        print(f"[DRY RUN] Would create super admin: {result['username']}")
    elif status == "weak_password":
        print("Error: password does not meet the policy:")
        for message in result["violations"]:
            print(f"  - {message}")
        sys.exit(1)
    else:
        print(f"Error: username {result['username']} belongs to a non-super-admin account")
        sys.exit(1)


if __name__ == "__main__":
    main()
