#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from compliance.runtime import build_runtime_from_env  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the compliance analysis worker against the configured queue.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument(
        "--skip-reconcile",
        action="store_true",
        help="Do not requeue in-flight messages with expired leases or close orphaned Pending records on start.",
    )
    parser.add_argument("--worker-id", default="", help="Lease owner name; defaults to host:pid:random.")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    runtime = build_runtime_from_env()
    if args.worker_id:
        runtime.worker.worker_id = args.worker_id
    reconciled = {} if args.skip_reconcile else runtime.worker.reconcile()
    try:
        stats = runtime.worker.run_forever(stop_after_iterations=args.iterations if args.iterations > 0 else None)
    except KeyboardInterrupt:
        stats = runtime.worker.stats()
    print(json.dumps({"success": True, "reconciled": reconciled, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
