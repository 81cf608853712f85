#!/usr/bin/env python3
"""Delete expired refresh tokens and sessions.

Expired rows are already unusable; this only reclaims space. Run it from
cron, e.g. hourly:

    python scripts/sweep_expired.py
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def sweep() -> dict[str, int]:
    from free2free.config import get_settings
    from free2free.service.refresh_tokens import RefreshTokenStore
    from free2free.service.runtime import build_store
    from free2free.service.sessions import SessionStore

    store = build_store(get_settings())
    try:
        return {
            "refresh_tokens": RefreshTokenStore(store).sweep_expired(),
            "sessions": SessionStore(store).sweep_expired(),
        }
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Remove expired free2free refresh tokens and sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.parse_args()

    try:
        removed = sweep()
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Removed {removed['refresh_tokens']} refresh tokens and {removed['sessions']} sessions.")


if __name__ == "__main__":
    main()
