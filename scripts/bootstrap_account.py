#!/usr/bin/env python3
"""Create an account, optionally with a pending TOTP device and backup codes.

Usage:
    # Using environment variables:
    ACCOUNT_EMAIL=user@example.com ACCOUNT_PASSWORD=Secret123! python scripts/bootstrap_account.py

    # Or with command line args:
    python scripts/bootstrap_account.py --email user@example.com --password Secret123! \
        --with-device "Phone" --backup-codes 10

Environment Variables:
    ACCOUNT_EMAIL: Email for the account
    ACCOUNT_PASSWORD: Password for the account
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_account(
    email: str,
    password: str,
    *,
    device_label: str | None = None,
    backup_codes: int = 0,
    dry_run: bool = False,
) -> dict:
    """Create the account (and extras) unless it already exists.

    Returns:
        dict with account_id, email, status and any enrollment material
    """
    # Import here so env defaults set in main() apply to settings
    from totpgate.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)
    if existing:
        print(f"Account {existing.email} already exists (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.auth.register(email, password)
    result = {"account_id": account.id, "email": account.email, "status": "created"}
    if device_label:
        enrollment = runtime.devices.bind_device(account.id, device_label)
        result["device_id"] = enrollment.device.id
        result["provisioning_uri"] = enrollment.provisioning_uri
    if backup_codes:
        result["backup_codes"] = runtime.backup_codes.generate(account.id, backup_codes)
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a totpgate account",
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
        help="Account password (or set ACCOUNT_PASSWORD env var)",
    )
    parser.add_argument("--with-device", metavar="LABEL", help="Bind a pending TOTP device")
    parser.add_argument(
        "--backup-codes", type=int, default=0, metavar="N", help="Generate N backup codes"
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

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/totpgate-bootstrap"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from totpgate.service.errors import ServiceError

    try:
        result = bootstrap_account(
            args.email,
            args.password,
            device_label=args.with_device,
            backup_codes=args.backup_codes,
            dry_run=args.dry_run,
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
        if result.get("provisioning_uri"):
            print(f"  Provisioning URI: {result['provisioning_uri']}")
            print("  Confirm the device with a code from the authenticator app to activate it.")
        for code in result.get("backup_codes", []):
            print(f"  Backup code: {code}")


if __name__ == "__main__":
    main()
