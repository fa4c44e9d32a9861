#!/usr/bin/env python3
"""Create the first administrator account.

Registration only ever produces inactive USER accounts, so the first
ADMINISTRATOR has to be written straight into the database.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password 'Secure#Pass1' --full-name 'Site Admin'

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: the account to create
    DATABASE_URL: PostgreSQL connection string (required)
"""
from __future__ import annotations

import argparse
import os
import sys

from riskgate.config import get_settings
from riskgate.service.passwords import CredentialHasher, PasswordPolicy
from riskgate.storage.common import IdentityStore, normalize_identifier
from riskgate.storage.errors import ConstraintViolation
from riskgate.storage.models import ROLE_ADMINISTRATOR, ROLE_USER, utcnow


def bootstrap_admin(
    store: IdentityStore,
    hasher: CredentialHasher,
    *,
    username: str,
    email: str,
    password: str,
    full_name: str,
    dry_run: bool = False,
) -> dict:
    """Create an active, verified administrator.

    Returns:
        dict with user_id, username, and status ('created', 'already_admin',
        'dry_run')

    Raises:
        ValueError: if the password is too weak or the username/email belongs
            to a non-administrator
    """
    problems = PasswordPolicy.complexity_errors(password)
    if problems:
        raise ValueError("; ".join(problems))

    username = normalize_identifier(username)
    email = normalize_identifier(email)
    existing = store.get_user_by_username(username) or store.get_user_by_email(email)
    if existing:
        if existing.has_role(ROLE_ADMINISTRATOR):
            return {"user_id": existing.id, "username": existing.username, "status": "already_admin"}
        raise ValueError(
            f"{existing.username} already exists without the {ROLE_ADMINISTRATOR} role"
        )

    if dry_run:
        return {"user_id": None, "username": username, "status": "dry_run"}

    try:
        with store.transaction():
            user = store.create_user(
                username,
                email,
                hasher.hash_sync(password),
                full_name=full_name,
                roles=(ROLE_USER, ROLE_ADMINISTRATOR),
                is_active=True,
                is_verified=True,
                password_changed_at=utcnow(),
            )
    except ConstraintViolation as exc:
        raise ValueError(exc.message) from exc
    return {"user_id": user.id, "username": user.username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for riskgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--full-name", default=os.environ.get("ADMIN_FULL_NAME", "Administrator"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    for name in ("username", "email", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or ADMIN_{name.upper()} environment variable required")
            sys.exit(1)
    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required; an in-memory account would vanish on exit")
        sys.exit(1)

    from riskgate.storage.postgres import PostgresStore

    settings = get_settings()
    store = PostgresStore(settings.database_url, min_size=1, max_size=1)
    try:
        result = bootstrap_admin(
            store,
            CredentialHasher(settings),
            username=args.username,
            email=args.email,
            password=args.password,
            full_name=args.full_name,
            dry_run=args.dry_run,
        )
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    finally:
        store.close()

    if result["status"] == "created":
        print(f"Administrator created: {result['username']} (id: {result['user_id']})")
    elif result["status"] == "already_admin":
        print(f"No changes needed: {result['username']} is already an administrator")
    else:
        print(f"[DRY RUN] Would create administrator {result['username']}")


if __name__ == "__main__":
    main()
