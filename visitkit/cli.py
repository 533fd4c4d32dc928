"""
Command line entry point.

    visitkit recompute --study STUDY-1 [--days-ahead 60] [--date YYYY-MM-DD]
    visitkit recompute-all [--days-ahead 60] [--statuses enrolling,active]
    visitkit forecast --study STUDY-1 [--days-ahead 60] [--date YYYY-MM-DD]
    visitkit cron
    visitkit serve [--host 0.0.0.0] [--port 8000]
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from visitkit.config import Config
from visitkit.cron import CronTrigger
from visitkit.data_loader import load_store
from visitkit.dates import parse_date_utc
from visitkit.errors import VisitKitError
from visitkit.recommendation_engine import RecommendationEngine

logger = logging.getLogger(__name__)


def _engine(args) -> RecommendationEngine:
    store = load_store(Path(args.data_dir) if args.data_dir else None)
    return RecommendationEngine(store, Config.engine_settings())


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="visitkit", description="Visit scheduling and lab kit recommendations")
    parser.add_argument("--data-dir", help="Directory with the table CSV files (default: DATA_DIR)")
    parser.add_argument("--verbose", action="store_true", help="Log debug info")
    sub = parser.add_subparsers(dest="command", required=True)

    one = sub.add_parser("recompute", help="Recompute recommendations for one study")
    one.add_argument("--study", required=True, help="Study id")
    one.add_argument("--days-ahead", type=int, help="Forecast horizon in days")
    one.add_argument("--date", help="Treat YYYY-MM-DD as today (default: today, UTC)")

    batch = sub.add_parser("recompute-all", help="Recompute every study in the given statuses")
    batch.add_argument("--days-ahead", type=int, help="Forecast horizon in days")
    batch.add_argument("--statuses", help="Comma-separated study statuses (default: enrolling,active)")
    batch.add_argument("--date", help="Treat YYYY-MM-DD as today (default: today, UTC)")

    fc = sub.add_parser("forecast", help="Show per-kit-type demand and stock status for one study")
    fc.add_argument("--study", required=True, help="Study id")
    fc.add_argument("--days-ahead", type=int, help="Forecast horizon in days")
    fc.add_argument("--date", help="Treat YYYY-MM-DD as today (default: today, UTC)")

    sub.add_parser("cron", help="Call the running service's recompute-all endpoint once")

    serve = sub.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else Config.LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    today = None
    if getattr(args, "date", None):
        today = parse_date_utc(args.date)
        if today is None:
            parser.error(f"--date must be YYYY-MM-DD, got {args.date!r}")

    try:
        if args.command == "recompute":
            result = _engine(args).recompute(args.study, args.days_ahead, today)
            _print(result.model_dump(by_alias=True, exclude={"recommendations"}))
        elif args.command == "recompute-all":
            statuses = [s.strip() for s in args.statuses.split(",") if s.strip()] if args.statuses else None
            batch_result = _engine(args).recompute_all(args.days_ahead, statuses, today)
            _print(batch_result.model_dump(by_alias=True, exclude_none=True))
            return 1 if batch_result.failures else 0
        elif args.command == "forecast":
            forecast = _engine(args).forecast(args.study, args.days_ahead, today)
            _print(forecast.model_dump(by_alias=True))
        elif args.command == "cron":
            relayed = CronTrigger().run()
            print(relayed.text)
            return 0 if 200 <= relayed.status_code < 300 else 1
        elif args.command == "serve":
            import uvicorn
            from visitkit.api import app
            uvicorn.run(app, host=args.host, port=args.port)
    except (VisitKitError, FileNotFoundError) as e:
        logger.error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
