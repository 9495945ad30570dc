#!/usr/bin/env python3
"""Delete refresh-token and email-verification records past retention.

Usage:
    python scripts/cleanup_tokens.py [--retention-days 30]

Refresh tokens that expired more than ``--retention-days`` ago (default
REFRESH_TOKEN_RETENTION_DAYS) are removed, along with every expired email
verification record. Safe to run from cron; it never touches live tokens.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def cleanup_tokens(retention_days=None, *, runtime=None) -> dict:
    from cobaltauth.service.runtime import get_runtime

    runtime = runtime or get_runtime()
    return runtime.auth.cleanup_expired_tokens(retention_days)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Purge expired refresh and verification tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--retention-days", type=int, default=None)
    args = parser.parse_args(argv)

    from cobaltauth.service.errors import AuthError

    try:
        deleted = cleanup_tokens(args.retention_days)
    except AuthError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)
    print(
        f"Deleted {deleted['refresh_tokens']} refresh token(s) and "
        f"{deleted['email_verifications']} email verification(s)"
    )


if __name__ == "__main__":
    main()
