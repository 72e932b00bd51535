#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from soundpath.heartbeat import IntervalLoop
from soundpath.pipeline import ReleaseSweeper
from soundpath.settings import ReviewSettings
from soundpath.store import store
from soundpath.usage import UsageLimiter


def main() -> int:
    parser = argparse.ArgumentParser(description="Move due upcoming releases into the vault.")
    parser.add_argument("--today", default="", help="ISO date used as the release cutoff (default: today UTC)")
    parser.add_argument(
        "--forever",
        action="store_true",
        help="Keep sweeping on RELEASE_SWEEP_INTERVAL_S instead of running once.",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    cutoff = date.fromisoformat(args.today) if args.today.strip() else None
    sweeper = ReleaseSweeper(store, UsageLimiter(store), today=lambda: store.now().date())
    if args.forever:
        settings = ReviewSettings.from_env()
        loop = IntervalLoop(
            name="release-sweep",
            interval_s=settings.release_sweep_interval_s,
            fn=sweeper.sweep_all_workspaces,
        )
        loop.run_once()
        loop.start()
        try:
            while loop.running:
                loop.wait(1.0)
        except KeyboardInterrupt:
            loop.stop()
        print(json.dumps({"success": True, "stats": loop.stats.as_dict()}, ensure_ascii=True))
        return 0

    report = sweeper.sweep_all_workspaces(today=cutoff)
    print(json.dumps({"success": True, "report": report.as_dict()}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
