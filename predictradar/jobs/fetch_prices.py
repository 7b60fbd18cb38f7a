"""
Prioritized quote refresh.

Spends at most the configured budget of paced quote requests per run,
evaluation-blocking entities first, and evaluates whatever the refresh
unblocked.

Can be run:
- Manually: python -m predictradar.jobs.fetch_prices
- Scheduled via predictradar.jobs.scheduler (every few minutes)
"""

import sys
from typing import Optional

from predictradar.jobs.runner import BatchResult, SessionFactory, run_batch
from predictradar.db.session import get_db_transaction
from predictradar.services.market_data import QuoteProviderChain
from predictradar.services.scheduler import MarketDataScheduler
from predictradar.utils.rate_limit import RequestPacer

JOB_NAME = "fetch-prices"


def run(
    budget: Optional[int] = None,
    providers: Optional[QuoteProviderChain] = None,
    pacer: Optional[RequestPacer] = None,
    session_factory: SessionFactory = get_db_transaction,
) -> BatchResult:
    def work(db):
        return MarketDataScheduler(db, providers=providers, pacer=pacer, budget=budget).run_cycle()

    return run_batch(JOB_NAME, work, session_factory)


def main():
    """Entry point for scheduled job."""
    result = run()
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
