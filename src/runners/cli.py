"""Run one processing cycle from the command line."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Sequence

from config.logging import setup_logging
from config.settings import load_settings
from core.application.execution import check_health, run_cycle


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flag-level-cycle",
        description="Detect levels and flag patterns for one symbol and timeframe.",
    )
    parser.add_argument("--symbol", help="Trading pair, e.g. BTCUSDT (default: SYMBOL)")
    parser.add_argument("--timeframe", help="Bar timeframe, e.g. 5m (default: TIMEFRAME)")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Analyse the latest window even when no new bars closed",
    )
    parser.add_argument(
        "--health",
        action="store_true",
        help="Print cursor, counters and idle time instead of running a cycle",
    )
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    setup_logging(level=args.log_level or settings.LOG_LEVEL, mode=settings.LOG_FORMAT)

    symbol = args.symbol or settings.SYMBOL
    timeframe = args.timeframe or settings.TIMEFRAME
    if args.health:
        report = check_health(symbol, timeframe)
        json.dump(report, sys.stdout, indent=2, default=str)
        sys.stdout.write("\n")
        return 0 if report["healthy"] else 1

    result = run_cycle(symbol, timeframe, args.force)
    json.dump(result.to_dict(), sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0 if result.success else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
