"""
Ingest signal items from every configured adapter and recompute aggregates.

Can be run:
- Manually: python -m predictradar.jobs.ingest_aggregate
- Scheduled via predictradar.jobs.scheduler
"""

import sys
from typing import Optional, Sequence

from predictradar.jobs.runner import BatchResult, SessionFactory, run_batch
from predictradar.db.session import get_db_transaction
from predictradar.log_config import logger
from predictradar.services.ingestion import IngestionAdapter, SignalIngestionService, configured_adapters

JOB_NAME = "ingest-aggregate"


def run(
    adapters: Optional[Sequence[IngestionAdapter]] = None,
    session_factory: SessionFactory = get_db_transaction,
) -> BatchResult:
    adapters = configured_adapters() if adapters is None else adapters
    if not adapters:
        logger.warning("No signal adapters configured (SIGNAL_FEEDS is empty)")
    return run_batch(JOB_NAME, lambda db: SignalIngestionService(db, adapters).run(), session_factory)


def main():
    """Entry point for scheduled job."""
    result = run()
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
