#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os

from clearance.context import create_context_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run resident worker loop for queued trigger events.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    args = parser.parse_args()
    logging.basicConfig(
        level=os.environ.get("CLEARANCE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    ctx = create_context_from_env()
    stats = ctx.worker.run_forever(stop_after_iterations=args.iterations if args.iterations > 0 else None)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
