#!/usr/bin/env python3
"""Seed a client application, a role and an account holder.

Usage:
    # Using environment variables:
    ACCOUNT_ID=alice ACCOUNT_PASSWORD='correct horse battery' python scripts/bootstrap_app.py \
        --application-id notes --redirect-uri https://notes.example.com/callback --scope read --scope write

    # Print what would be created:
    python scripts/bootstrap_app.py --application-id notes --redirect-uri https://notes.example.com/cb \
        --account-id alice --password 'correct horse battery' --scope read --dry-run

Environment Variables:
    ACCOUNT_ID: Account to create
    ACCOUNT_PASSWORD: Password for the account
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)

The client secret is generated and printed once; only its argon2 hash is stored.
"""
from __future__ import annotations

import argparse
import base64
import os
import secrets
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Passphrases of 12+ characters, or shorter ones mixing 3+ character classes."""
    if len(password) >= 12:
        return True
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return len(password) >= 8 and sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap(
    *,
    application_id: str,
    application_name: str,
    redirect_uri: str,
    scopes: List[str],
    account_id: str,
    password: str,
    role: str,
    with_totp: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the application, role and account; returns the one-time secrets."""
    # Import here to avoid loading config before env vars are set
    from feblr_sso.service.runtime import get_runtime
    from feblr_sso.storage.errors import ConstraintViolation
    from feblr_sso.storage.models import Application

    if dry_run:
        print(f"[DRY RUN] Would create application {application_id} with scopes {sorted(scopes)}")
        print(f"[DRY RUN] Would create role {role} and account {account_id}")
        return {"status": "dry_run"}

    runtime = get_runtime()
    store = runtime.store
    verifier = runtime.verifier

    client_secret = secrets.token_urlsafe(32)
    try:
        store.create_application(
            Application(
                id=application_id,
                name=application_name,
                secret_hash=verifier.hash_secret(client_secret),
                redirect_uri=redirect_uri,
                allowed_scopes=frozenset(scopes),
            )
        )
    except ConstraintViolation:
        print(f"Application {application_id} already exists; leaving its secret unchanged")
        client_secret = None

    store.create_role(role, scopes)
    try:
        store.create_account(account_id)
    except ConstraintViolation:
        print(f"Account {account_id} already exists; resetting its password")
    store.set_password(account_id, verifier.hash_secret(password))
    store.assign_role(account_id, role)

    totp_secret: Optional[str] = None
    if with_totp:
        totp_secret = base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")
        store.set_second_factor(account_id, totp_secret, enabled=True)

    return {
        "status": "created",
        "application_id": application_id,
        "client_secret": client_secret,
        "account_id": account_id,
        "totp_secret": totp_secret,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Seed a Feblr SSO application and account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--application-id", required=True)
    parser.add_argument("--application-name", default=None)
    parser.add_argument("--redirect-uri", required=True)
    parser.add_argument(
        "--scope",
        action="append",
        dest="scopes",
        default=[],
        help="Scope the application may request and the role grants (repeatable)",
    )
    parser.add_argument("--role", default="member")
    parser.add_argument(
        "--account-id",
        default=os.environ.get("ACCOUNT_ID"),
        help="Account id (or set ACCOUNT_ID env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="Account password (or set ACCOUNT_PASSWORD env var)",
    )
    parser.add_argument("--with-totp", action="store_true", help="Enroll a TOTP second factor")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.account_id:
        print("Error: --account-id or ACCOUNT_ID environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ACCOUNT_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be 12+ characters, or 8+ with 3 character classes")
        sys.exit(1)
    if not args.scopes:
        print("Error: at least one --scope is required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap(
            application_id=args.application_id,
            application_name=args.application_name or args.application_id,
            redirect_uri=args.redirect_uri,
            scopes=args.scopes,
            account_id=args.account_id,
            password=args.password,
            role=args.role,
            with_totp=args.with_totp,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSeed complete!")
        print(f"  Application: {result['application_id']}")
        if result["client_secret"]:
            print(f"  Client secret (shown once): {result['client_secret']}")
        print(f"  Account: {result['account_id']}")
        if result["totp_secret"]:
            print(f"  TOTP secret: {result['totp_secret']}")


if __name__ == "__main__":
    main()
