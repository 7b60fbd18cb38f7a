"""
Create live predictions from the latest aggregated signals.

Each run uses exactly one confidence formula, the configured one unless
overridden.
"""

import sys
from typing import Optional

from predictradar.jobs.runner import BatchResult, SessionFactory, run_batch
from predictradar.db.session import get_db_transaction
from predictradar.domain.scoring import ConfidenceScorer
from predictradar.services.predictions import PredictionLifecycleManager

JOB_NAME = "run-predictions"


def run(
    formula_version: Optional[str] = None,
    session_factory: SessionFactory = get_db_transaction,
) -> BatchResult:
    def work(db):
        scorer = ConfidenceScorer(formula_version) if formula_version else None
        return PredictionLifecycleManager(db, scorer=scorer).run()

    return run_batch(JOB_NAME, work, session_factory)


def main():
    """Entry point for scheduled job."""
    result = run()
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
