"""
Interval scheduler for the batch jobs.

Each job runs at most once at a time (``max_instances=1``) and missed runs
are collapsed into one (``coalesce=True``), so a slow pass is never
overlapped by the next trigger.
"""

from dataclasses import dataclass
from typing import Callable, List

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from predictradar.config import settings
from predictradar.db.session import init_db
from predictradar.jobs import (
    evaluate_predictions,
    fetch_prices,
    ingest_aggregate,
    run_predictions,
    track_predictions,
)
from predictradar.jobs.runner import BatchResult
from predictradar.log_config import logger


@dataclass(frozen=True)
class ScheduledJob:
    key: str
    label: str
    fn: Callable[[], BatchResult]
    interval_minutes: int


def scheduled_jobs() -> List[ScheduledJob]:
    return [
        ScheduledJob("ingest_aggregate", "Signal Ingestion", ingest_aggregate.run, settings.ingest_interval_minutes),
        ScheduledJob("run_predictions", "Prediction Creation", run_predictions.run, settings.predictions_interval_minutes),
        ScheduledJob("fetch_prices", "Prioritized Quote Fetch", fetch_prices.run, settings.fetch_prices_interval_minutes),
        ScheduledJob("track_predictions", "Live Deviation Tracking", track_predictions.run, settings.track_interval_minutes),
        ScheduledJob("evaluate_predictions", "Prediction Evaluation", evaluate_predictions.run, settings.evaluate_interval_minutes),
    ]


def _wrap(job: ScheduledJob) -> Callable[[], None]:
    def runner() -> None:
        result = job.fn()
        if not result.success:
            logger.warning(f"{job.label} reported failure: {result.errors[:5]}")

    return runner


def register_jobs(scheduler: BaseScheduler) -> int:
    """Add every job with a positive interval. Returns the number registered."""
    registered = 0
    for job in scheduled_jobs():
        if job.interval_minutes <= 0:
            logger.info(f"Skipping disabled job: {job.label}")
            continue
        scheduler.add_job(
            _wrap(job),
            trigger=IntervalTrigger(minutes=job.interval_minutes),
            id=job.key,
            name=job.label,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        registered += 1
        logger.info(f"Registered job: {job.label} (key={job.key}, interval={job.interval_minutes}min)")
    return registered


def run_forever() -> None:
    """Block and run the jobs until interrupted."""
    if not settings.scheduler_enabled:
        logger.warning("Scheduler disabled (SCHEDULER_ENABLED=false)")
        return

    init_db()
    scheduler = BlockingScheduler(timezone="UTC")
    count = register_jobs(scheduler)
    logger.info(f"Scheduler starting with {count} jobs")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    run_forever()
