"""
Close every live prediction whose target time has passed.

Safe to run repeatedly: already closed predictions are never re-graded and
predictions still waiting for a settlement price are retried next run.
"""

import sys

from predictradar.jobs.runner import BatchResult, SessionFactory, run_batch
from predictradar.db.session import get_db_transaction
from predictradar.services.evaluator import PredictionEvaluator

JOB_NAME = "evaluate"


def run(session_factory: SessionFactory = get_db_transaction) -> BatchResult:
    return run_batch(JOB_NAME, lambda db: PredictionEvaluator(db).run(), session_factory)


def main():
    """Entry point for scheduled job."""
    result = run()
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
