#!/usr/bin/env python3
"""Create the first administrator account, or promote an existing one.

This is the supported way to get an admin into a fresh deployment; the
service itself never ships default or fallback credentials.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.edu ADMIN_PASSWORD='Str0ng!Passw0rd' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.edu --password 'Str0ng!Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password (must satisfy the portal password policy)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

BOOTSTRAP_ACTOR = "bootstrap"


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an approved, active admin account.

    Returns:
        dict with account_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # imported late so env defaults set by main() are honoured
    from academic_portal.service.errors import ValidationError
    from academic_portal.service.registration import validate_email_address
    from academic_portal.service.runtime import get_runtime
    from academic_portal.storage.models import RegistrationStatus, Role, StatusAudit

    try:
        email = validate_email_address(email)
    except ValueError as exc:
        raise ValidationError(str(exc), detail={"field": "email"}) from exc

    runtime = get_runtime()
    store = runtime.store
    now = datetime.now(timezone.utc)
    audit = StatusAudit(actor_id=BOOTSTRAP_ACTOR)

    existing = store.get_account_by_email(email)
    if existing and existing.role == Role.ADMIN and existing.can_login:
        print(f"Account {existing.email} is already an active admin (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "already_admin"}

    if dry_run:
        action = "promote" if existing else "create"
        print(f"[DRY RUN] Would {action} admin account: {email}")
        return {
            "account_id": existing.id if existing else None,
            "email": email,
            "status": "dry_run",
        }

    runtime.policy.enforce(password)
    credential_hash = runtime.verifier.hash(password)

    if existing is None:
        account = store.create_account(email, credential_hash, Role.ADMIN)
        store.transition_status(
            account.id,
            expected=RegistrationStatus.PENDING,
            new_status=RegistrationStatus.APPROVED,
            is_active=True,
            audit=audit,
            now=now,
        )
        print(f"Created admin account: {account.email} (id: {account.id})")
        return {"account_id": account.id, "email": account.email, "status": "created"}

    # the supplied password replaces whatever the account had before
    store.update_credential(existing.id, credential_hash, now=now)
    store.update_role(existing.id, Role.ADMIN, now=now)
    if existing.status == RegistrationStatus.PENDING:
        store.transition_status(
            existing.id,
            expected=RegistrationStatus.PENDING,
            new_status=RegistrationStatus.APPROVED,
            is_active=True,
            audit=audit,
            now=now,
        )
    elif existing.status == RegistrationStatus.REJECTED:
        store.transition_status(
            existing.id,
            expected=RegistrationStatus.REJECTED,
            new_status=RegistrationStatus.APPROVED,
            is_active=True,
            audit=audit,
            now=now,
            reactivation=True,
        )
    elif not existing.is_active:
        store.set_active(existing.id, True, now=now)
    print(
        f"Promoted existing account {existing.email} to admin and set its password"
        f" (id: {existing.id})"
    )
    return {"account_id": existing.id, "email": existing.email, "status": "promoted"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for the Academic Portal",
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

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from academic_portal.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except ServiceError as e:
        print(f"Error: {e.message}")
        for reason in e.detail.get("reasons", []):
            print(f"  - password {reason}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an active admin.")


if __name__ == "__main__":
    main()
