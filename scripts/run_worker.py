#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from snapwatch.services import build_services
from snapwatch.worker_runtime import create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the resident capture/diff/notify worker loop.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")

    services = build_services(with_workers=True)
    runtime = create_worker_runtime_from_env(orchestrator=services.orchestrator, lifecycle=services.lifecycle)
    stop_after = args.iterations if args.iterations > 0 else None
    try:
        stats = asyncio.run(runtime.run_forever(stop_after_iterations=stop_after))
    except KeyboardInterrupt:
        runtime.stop()
        print(json.dumps({"success": True, "interrupted": True}, ensure_ascii=True))
        return 130
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
