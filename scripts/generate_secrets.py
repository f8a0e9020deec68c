#!/usr/bin/env python3
"""Generate key material for the identity portal.

Usage:
    # Print lines for an .env file:
    python scripts/generate_secrets.py >> .env

    # Persist secrets under STATE_DIR the way the portal does on first start:
    python scripts/generate_secrets.py --persist /var/lib/idportal

Both secrets feed HKDF: TOKEN_SECRET keys emailed action tokens and
SESSION_SECRET keys the session cookie. Rotating either invalidates every
outstanding token or session respectively.
"""
from __future__ import annotations

import argparse
import json
import os
import secrets
import sys

SECRET_NAMES = ("token_secret", "session_secret")


def generate() -> dict[str, str]:
    return {name: secrets.token_hex(32) for name in SECRET_NAMES}


def persist(state_dir: str) -> dict[str, str]:
    # Import here so printing secrets never needs the package configured
    from idportal.config import _load_or_create_secret

    return {name: _load_or_create_secret(name, state_dir) for name in SECRET_NAMES}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate TOKEN_SECRET and SESSION_SECRET",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--format",
        choices=("env", "json"),
        default="env",
        help="Output format (default: env)",
    )
    parser.add_argument(
        "--persist",
        metavar="STATE_DIR",
        default=None,
        help="Write secrets under STATE_DIR instead of printing new ones "
        "(existing persisted secrets are kept)",
    )
    args = parser.parse_args()

    if args.persist:
        try:
            persist(args.persist)
        except RuntimeError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"Secrets persisted under {os.path.abspath(args.persist)}", file=sys.stderr)
        return

    values = generate()
    if args.format == "json":
        print(json.dumps({name.upper(): value for name, value in values.items()}, indent=2))
    else:
        for name, value in values.items():
            print(f"{name.upper()}={value}")


if __name__ == "__main__":
    main()
