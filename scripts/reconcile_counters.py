#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os

from clearance.context import create_context_from_env
from clearance.workflow.counters import live_counts, reconcile_counters


def main() -> int:
    parser = argparse.ArgumentParser(description="Recompute dashboard counters from the live documents.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the recomputed counters without overwriting the dashboard.",
    )
    args = parser.parse_args()
    logging.basicConfig(level=os.environ.get("CLEARANCE_LOG_LEVEL", "INFO").upper())

    ctx = create_context_from_env()
    if args.dry_run:
        payload = {"success": True, "dryRun": True, "counters": live_counts(ctx)}
    else:
        payload = reconcile_counters(ctx)
    print(json.dumps(payload, ensure_ascii=True, sort_keys=True))
    return 0 if payload.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
