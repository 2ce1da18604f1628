#!/usr/bin/env python3
"""Run OTP login and store maintenance against a configured environment.

Usage:
    # Log in and print the result (token is never printed in full):
    BASE_URL=https://api.example.test python scripts/authenticate.py login user@example.com --client-id iximatr

    # Clear rate-limit keys for an identity:
    python scripts/authenticate.py cleanup 9876543210

    # Check the key-value store pool:
    python scripts/authenticate.py health

Environment Variables:
    BASE_URL: Root of the API under test
    AUTH_OTP_MOCK: Use the mock OTP and skip the key-value store entirely
    REDIS_HOST / REDIS_PORT / REDIS_DATABASE: OTP store location
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _token_preview(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return token[:8] + "..." if len(token) > 8 else "***"


def login(identity: str, client_id: str, device_id: Optional[str] = None) -> dict:
    # Import here to avoid loading config before env vars are set
    from otpauth.service.runtime import get_runtime

    runtime = get_runtime()
    result = runtime.auth.authenticate(identity, client_id, device_id)
    payload = result.to_dict()
    payload["token_preview"] = _token_preview(result.access_token)
    return payload


def cleanup(identity: str) -> dict:
    from otpauth.service.runtime import get_runtime

    runtime = get_runtime()
    deleted = runtime.auth.cleanup_rate_limit(identity)
    return {"identity": identity, "deleted": deleted}


def health() -> dict:
    from otpauth.service.runtime import get_runtime

    runtime = get_runtime()
    healthy = runtime.auth.pool_healthy()
    state = runtime.auth.pool_stats()
    return {
        "healthy": healthy,
        "available": state.available,
        "active": state.active,
        "idle": state.idle,
        "info": runtime.auth.pool_connection_info(),
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="OTP login helper for API test environments",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    login_parser = commands.add_parser("login", help="Authenticate an email or phone identity")
    login_parser.add_argument("identity", help="Email address or phone number")
    login_parser.add_argument("--client-id", required=True, help="Client id sent with OTP and login calls")
    login_parser.add_argument("--device-id", default=None, help="Device id (generated when omitted)")

    cleanup_parser = commands.add_parser("cleanup", help="Delete rate-limit keys for an identity")
    cleanup_parser.add_argument("identity")

    commands.add_parser("health", help="Report key-value store pool health")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "login":
        result = login(args.identity, args.client_id, args.device_id)
        exit_code = 0 if result["success"] else 1
    elif args.command == "cleanup":
        result = cleanup(args.identity)
        exit_code = 0
    else:
        result = health()
        exit_code = 0 if result["healthy"] else 2

    print(json.dumps(result, indent=2))
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
