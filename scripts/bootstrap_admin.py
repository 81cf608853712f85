#!/usr/bin/env python3
"""Grant or revoke admin rights on a user who has already signed in.

Accounts only come into existence through a Facebook or Instagram login, so
the user must log in once before they can be promoted.

Usage:
    # By local user id:
    python scripts/bootstrap_admin.py --user-id 1f0c...e2

    # By provider identity:
    python scripts/bootstrap_admin.py --provider facebook --external-id 10221...

    # Take admin rights away again:
    python scripts/bootstrap_admin.py --user-id 1f0c...e2 --revoke

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: set to true to edit the JSON-backed development store
    SHARED_FS_ROOT: where the development store keeps its state file
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def set_admin(
    *,
    user_id: str | None = None,
    provider: str | None = None,
    external_id: str | None = None,
    revoke: bool = False,
    dry_run: bool = False,
) -> dict:
    """Flip the admin flag on one user.

    Returns:
        dict with user_id, display_name and status ('promoted', 'demoted',
        'unchanged', 'dry_run' or 'not_found')
    """
    # Import here to avoid loading config before env vars are set
    from free2free.config import get_settings
    from free2free.service.runtime import build_store

    store = build_store(get_settings())
    try:
        if user_id:
            user = store.get_user(user_id)
        else:
            user = store.get_user_by_external(provider, external_id)
        if user is None:
            return {"user_id": user_id, "status": "not_found"}

        target = not revoke
        if user.is_admin == target:
            return {"user_id": user.id, "display_name": user.display_name, "status": "unchanged"}

        if dry_run:
            action = "revoke admin from" if revoke else "promote"
            print(f"[DRY RUN] Would {action} {user.display_name} (id: {user.id})")
            return {"user_id": user.id, "display_name": user.display_name, "status": "dry_run"}

        store.set_user_admin(user.id, target)
        return {
            "user_id": user.id,
            "display_name": user.display_name,
            "status": "demoted" if revoke else "promoted",
        }
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Grant or revoke free2free admin rights",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--user-id", help="Local user id")
    parser.add_argument(
        "--provider",
        choices=("facebook", "instagram"),
        help="Login provider of the user (with --external-id)",
    )
    parser.add_argument(
        "--external-id",
        default=os.environ.get("ADMIN_EXTERNAL_ID"),
        help="Provider account id (or set ADMIN_EXTERNAL_ID env var)",
    )
    parser.add_argument("--revoke", action="store_true", help="Remove admin rights instead")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.user_id and not (args.provider and args.external_id):
        print("Error: --user-id or --provider with --external-id required")
        sys.exit(1)

    try:
        result = set_admin(
            user_id=args.user_id,
            provider=args.provider,
            external_id=args.external_id,
            revoke=args.revoke,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "not_found":
        print("Error: no such user; they must sign in once before promotion")
        sys.exit(1)
    if status == "promoted":
        print(f"{result['display_name']} (id: {result['user_id']}) is now an admin.")
    elif status == "demoted":
        print(f"{result['display_name']} (id: {result['user_id']}) is no longer an admin.")
    elif status == "unchanged":
        print("No changes needed.")


if __name__ == "__main__":
    main()
