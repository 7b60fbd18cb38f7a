"""
Command line trigger for batch jobs.

Usage:
    python -m predictradar.jobs.cli init-db
    python -m predictradar.jobs.cli ingest-aggregate [--feed path.json ...]
    python -m predictradar.jobs.cli run-predictions [--formula v1-legacy]
    python -m predictradar.jobs.cli fetch-prices [--budget 30]
    python -m predictradar.jobs.cli track
    python -m predictradar.jobs.cli evaluate
    python -m predictradar.jobs.cli analyze [--model hype] [--sector Tech] ...
    python -m predictradar.jobs.cli reactivate AAPL
    python -m predictradar.jobs.cli schedule

Exit status is 0 when the job succeeded and 1 otherwise.
"""

import argparse
import json
import sys
from typing import List, Optional

from predictradar.db.repositories import EntityRepository
from predictradar.db.session import get_db_transaction, init_db
from predictradar.domain.scoring import FORMULA_VERSIONS
from predictradar.jobs import (
    analyze_performance,
    evaluate_predictions,
    fetch_prices,
    ingest_aggregate,
    run_predictions,
    track_predictions,
)
from predictradar.jobs.runner import BatchResult
from predictradar.log_config import logger
from predictradar.services.analytics import AnalyticsFilter
from predictradar.services.ingestion import JsonFileAdapter
from predictradar.utils.datetime import to_naive_utc
from predictradar.utils.errors import RecordNotFoundError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="predictradar", description="PredictRadar batch jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    ingest = sub.add_parser("ingest-aggregate", help="Ingest signals and recompute aggregates")
    ingest.add_argument("--feed", action="append", default=None, help="JSON signal feed (repeatable)")

    predict = sub.add_parser("run-predictions", help="Create predictions from aggregated signals")
    predict.add_argument("--formula", choices=FORMULA_VERSIONS, default=None, help="Confidence formula version")

    fetch = sub.add_parser("fetch-prices", help="Prioritized, budgeted quote refresh")
    fetch.add_argument("--budget", type=int, default=None, help="Maximum quote requests this run")

    sub.add_parser("track", help="Snapshot live predictions")
    sub.add_parser("evaluate", help="Close matured predictions")

    analyze = sub.add_parser("analyze", help="Performance and calibration report")
    analyze.add_argument("--model", default=None, help="Model variant")
    analyze.add_argument("--formula", choices=FORMULA_VERSIONS, default=None, help="Formula version")
    analyze.add_argument("--sector", default=None, help="Entity sector")
    analyze.add_argument("--start", default=None, help="Earliest target time (ISO 8601)")
    analyze.add_argument("--end", default=None, help="Latest target time (ISO 8601)")
    analyze.add_argument("--min-confidence", type=float, default=None)
    analyze.add_argument("--max-confidence", type=float, default=None)

    reactivate = sub.add_parser("reactivate", help="Re-enable an entity deactivated after fetch failures")
    reactivate.add_argument("symbol")

    sub.add_parser("schedule", help="Run all jobs on their configured intervals")

    return parser


def _print(result: BatchResult) -> int:
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.success else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "init-db":
        init_db()
        return 0

    if args.command == "ingest-aggregate":
        adapters = [JsonFileAdapter(path) for path in args.feed] if args.feed else None
        return _print(ingest_aggregate.run(adapters=adapters))

    if args.command == "run-predictions":
        return _print(run_predictions.run(formula_version=args.formula))

    if args.command == "fetch-prices":
        return _print(fetch_prices.run(budget=args.budget))

    if args.command == "track":
        return _print(track_predictions.run())

    if args.command == "evaluate":
        return _print(evaluate_predictions.run())

    if args.command == "analyze":
        filters = AnalyticsFilter(
            model_variant=args.model,
            formula_version=args.formula,
            sector=args.sector,
            start=to_naive_utc(args.start),
            end=to_naive_utc(args.end),
            min_confidence=args.min_confidence,
            max_confidence=args.max_confidence,
        )
        return _print(analyze_performance.run(filters=filters))

    if args.command == "reactivate":
        try:
            with get_db_transaction() as db:
                EntityRepository(db).reactivate(args.symbol)
        except RecordNotFoundError as e:
            logger.error(e.message)
            return 1
        return 0

    if args.command == "schedule":
        from predictradar.jobs.scheduler import run_forever

        run_forever()
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
