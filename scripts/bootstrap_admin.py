#!/usr/bin/env python3
"""Create the first library administrator, or promote an existing account.

Usage:
    ADMIN_EMAIL=librarian@example.com ADMIN_PASSWORD='long passphrase' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email librarian@example.com --password 'long passphrase'

Environment Variables:
    ADMIN_EMAIL, ADMIN_PASSWORD: credentials for the administrator
    DATABASE_URL: PostgreSQL connection string (in-memory store when unset)
    JWT_SECRET: signing key; a throwaway one is generated when unset
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_ADMIN_PASSWORD_LENGTH = 12


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from three or more character classes."""
    if len(password) < MIN_ADMIN_PASSWORD_LENGTH or len(password) > 128:
        return False
    classes = [
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    ]
    return sum(classes) >= 3


async def bootstrap_admin(runtime, email: str, password: str, dry_run: bool = False) -> dict:
    from shelfkeeper.storage.models import Role, normalize_email, utcnow

    email = normalize_email(email)
    existing = runtime.store.find_by_email(email)
    if existing:
        if existing.role == Role.ADMIN.value:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.set_role(existing.id, Role.ADMIN.value)
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.signup(email, password)
    user = result.user
    # Operator-created accounts skip the mailed verification step
    runtime.store.consume_verification_token(user.email_verification_token, utcnow())
    runtime.store.set_role(user.id, Role.ADMIN.value)
    return {"user_id": user.id, "email": email, "status": "created"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap a Shelfkeeper administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/--password or ADMIN_EMAIL/ADMIN_PASSWORD required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: password must be 12-128 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from shelfkeeper.service.runtime import get_runtime

    try:
        result = asyncio.run(
            bootstrap_admin(get_runtime(), args.email, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
