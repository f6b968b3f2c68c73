#!/usr/bin/env python3
"""
Grant or clear a manual plan override (support escape hatch).

Usage:
    python -m auditor.scripts.grant_override --user-id user_123 --plan pro \\
        --reason "press account" --expires-at 2026-12-31T00:00:00Z

    python -m auditor.scripts.grant_override --user-id user_123 --clear

Every change is written to entitlement_admin_audit with the CLI actor.
"""
import argparse
import getpass
import json
import sys
from datetime import datetime, timezone
from typing import List, Optional

from auditor.core.config import settings
from auditor.core.database import create_all_tables
from auditor.core.errors import AppError
from auditor.core.logging import configure_logging
from auditor.features.entitlements.service import clear_override, set_override, summarize


def _parse_expiry(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid ISO-8601 timestamp: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Grant or clear a manual entitlement override")
    parser.add_argument("--user-id", required=True, help="Identity-provider user id")
    parser.add_argument("--plan", help="Plan to grant (free|basic|pro|team)")
    parser.add_argument("--reason", help="Why the override exists (required when granting)")
    parser.add_argument("--expires-at", type=_parse_expiry, help="Optional UTC expiry (ISO-8601)")
    parser.add_argument("--clear", action="store_true", help="Remove the override instead of granting one")
    parser.add_argument("--actor", default=None, help="Actor recorded in the audit log (default: cli:<login>)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.clear and not (args.plan and args.reason):
        parser.error("--plan and --reason are required unless --clear is given")

    # stdout carries the JSON summary only
    configure_logging(settings.ENV, stream=sys.stderr)
    create_all_tables()
    actor = args.actor or f"cli:{getpass.getuser()}"

    try:
        if args.clear:
            entitlement = clear_override(args.user_id, actor=actor, actor_type="cli")
        else:
            entitlement = set_override(
                args.user_id,
                args.plan,
                reason=args.reason,
                expires_at=args.expires_at,
                actor=actor,
                actor_type="cli",
            )
    except AppError as e:
        print(f"ERROR [{e.code}]: {e.message}", file=sys.stderr)
        return 1

    print(json.dumps(summarize(entitlement), indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
