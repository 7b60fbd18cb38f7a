"""Snapshot every unexpired live prediction against its latest price."""

import sys

from predictradar.jobs.runner import BatchResult, SessionFactory, run_batch
from predictradar.db.session import get_db_transaction
from predictradar.services.tracker import LiveDeviationTracker

JOB_NAME = "track"


def run(session_factory: SessionFactory = get_db_transaction) -> BatchResult:
    return run_batch(JOB_NAME, lambda db: LiveDeviationTracker(db).run(), session_factory)


def main():
    result = run()
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
