#!/usr/bin/env python3
"""
Run the expiry and low-stock sweeps for one tenant and print the alert
candidates as JSON lines.

Usage:
    python3 scripts/sweep_alerts.py --tenant <uuid> [--kind expiry|low-stock|all]
        [--as-of 2025-01-15T12:00:00+00:00] [--policy path/to/policy.yaml]
        [--db-url postgresql://...] [--verbose]

The database URL defaults to the DATABASE_URL environment variable.  The
sweeps are read-only; persisting and delivering alerts is up to whoever
consumes the output.
"""

import argparse
import json
import logging
import os
import sys
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from uuid import UUID

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from inventory_config import get_active_policy
from inventory_kernel.db.engine import get_session_factory, init_engine_from_url
from inventory_kernel.domain.dtos import AlertCandidate
from inventory_kernel.exceptions import InventoryKernelError
from inventory_kernel.logging_config import configure_logging
from inventory_kernel.services.inventory_orchestrator import InventoryOrchestrator

KINDS = ("expiry", "low-stock", "all")


def _json_default(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


def _as_of(text: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO timestamp: {text!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def candidate_to_dict(candidate: AlertCandidate) -> dict:
    return {
        "alert_type": candidate.alert_type,
        "priority": candidate.priority,
        "reference_type": candidate.reference_type,
        "reference_id": candidate.reference_id,
        "message": candidate.message,
        "triggered_at": candidate.triggered_at,
        "product_id": candidate.product_id,
        "location_id": candidate.location_id,
        "lot_id": candidate.lot_id,
        "details": dict(candidate.details),
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print inventory alert candidates as JSON lines.")
    parser.add_argument("--tenant", required=True, type=UUID, help="Tenant id")
    parser.add_argument("--kind", choices=KINDS, default="all")
    parser.add_argument("--as-of", type=_as_of, default=None, help="Snapshot time (ISO 8601)")
    parser.add_argument("--policy", type=Path, default=None, help="Policy YAML file")
    parser.add_argument("--db-url", default=os.environ.get("DATABASE_URL"))
    parser.add_argument("--verbose", action="store_true", help="Log at INFO to stderr")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if not args.db_url:
        print("  ERROR: no database URL (use --db-url or DATABASE_URL)", file=sys.stderr)
        return 2

    configure_logging(level=logging.INFO if args.verbose else logging.WARNING)

    try:
        policy = get_active_policy(args.policy)
        init_engine_from_url(args.db_url)
        orchestrator = InventoryOrchestrator(get_session_factory(), policy=policy)

        candidates: list[AlertCandidate] = []
        if args.kind in ("expiry", "all"):
            candidates.extend(orchestrator.sweep_expiry_alerts(args.tenant, as_of=args.as_of))
        if args.kind in ("low-stock", "all"):
            candidates.extend(orchestrator.sweep_low_stock_alerts(args.tenant, as_of=args.as_of))
    except (InventoryKernelError, FileNotFoundError) as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 1

    for candidate in candidates:
        print(json.dumps(candidate_to_dict(candidate), default=_json_default, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
