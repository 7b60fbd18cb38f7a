"""
Performance and calibration report over closed predictions.

The report is stored as the run's counts, so the latest report for any
filter set can be read back from the pipeline run log.
"""

import json
import sys
from typing import Optional

from predictradar.jobs.runner import BatchResult, SessionFactory, run_batch
from predictradar.db.session import get_db_transaction
from predictradar.services.analytics import AnalyticsFilter, PerformanceAnalyticsEngine

JOB_NAME = "analyze"


def run(
    filters: Optional[AnalyticsFilter] = None,
    session_factory: SessionFactory = get_db_transaction,
) -> BatchResult:
    return run_batch(JOB_NAME, lambda db: PerformanceAnalyticsEngine(db).analyze(filters), session_factory)


def main():
    """Entry point for scheduled job."""
    result = run()
    print(json.dumps(result.counts, indent=2, default=str))
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
