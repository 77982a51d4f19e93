#!/usr/bin/env python3
"""Create or promote the first super admin operator.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD='Str0ng!Passw0rd' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email ops@example.com --username ops

    Without a password a temporary one is generated and printed once; the
    account is then flagged to change it at first login.

Environment Variables:
    ADMIN_EMAIL: Email for the operator
    ADMIN_PASSWORD: Password (at least 12 characters with upper, lower, digit and one of @$!%*?&)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


def bootstrap_admin(
    email: str,
    username: str,
    password: Optional[str],
    dry_run: bool = False,
) -> dict:
    """Create or promote a super admin.

    Returns:
        dict with user_id, email and status ('created', 'promoted',
        'already_super_admin' or 'dry_run'); 'temporary_password' is set
        when one was generated.
    """
    # Import here to avoid loading config before env vars are set
    from autohealer.service.runtime import get_runtime
    from autohealer.storage.models import Role

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == Role.SUPER_ADMIN:
            print(f"User {email} already exists as super admin (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": email,
                "status": "already_super_admin",
            }

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to super admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        runtime.store.update_user_role(existing_user.id, Role.SUPER_ADMIN)
        print(f"Promoted existing user {email} to super admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create super admin: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    temporary = None
    if password is None:
        temporary = runtime.credentials.generate_temporary_password()
        password = temporary
    else:
        runtime.credentials.policy.enforce(password)

    user = runtime.store.create_user(
        email,
        username,
        runtime.credentials.hash_password(password),
        role=Role.SUPER_ADMIN,
        must_change_password=temporary is not None,
        email_verified=True,
    )
    print(f"Created super admin: {email} (id: {user.id})")
    result = {"user_id": user.id, "email": email, "status": "created"}
    if temporary:
        result["temporary_password"] = temporary
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super admin for WP-AutoHealer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Operator email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Operator username (defaults to the email local part)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Operator password (or set ADMIN_PASSWORD env var)",
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

    username = args.username or args.email.split("@", 1)[0]

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/autohealer-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from autohealer.service.errors import PolicyViolationError

    try:
        result = bootstrap_admin(args.email, username, args.password, args.dry_run)
    except PolicyViolationError as e:
        print("Error: password does not meet the policy:")
        for reason in e.reasons:
            print(f"  - {reason}")
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        if result.get("temporary_password"):
            print(f"  Temporary password: {result['temporary_password']}")
            print("  The password must be changed at first login.")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to super admin!")
    elif result["status"] == "already_super_admin":
        print("\nNo changes needed - user is already a super admin.")


if __name__ == "__main__":
    main()
