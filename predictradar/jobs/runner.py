"""
Shared batch runner.

Every job goes through run_batch(), which records a PipelineRun, times the
work, and converts the service report into a BatchResult. Per-item problems
arrive as error strings inside the report and leave ``success`` True; only
configuration or systemic failures turn it False.
"""

import time
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from predictradar.db.repositories import PipelineRunRepository
from predictradar.db.session import get_db_transaction
from predictradar.log_config import get_logger, job_context, logger
from predictradar.utils.datetime import utcnow
from predictradar.utils.errors import PredictRadarError

SessionFactory = Callable[[], AbstractContextManager]

run_log = get_logger(__name__)


@dataclass
class BatchResult:
    success: bool
    counts: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "counts": self.counts,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
        }


def run_batch(
    job_name: str,
    work: Callable[[Session], Any],
    session_factory: SessionFactory = get_db_transaction,
) -> BatchResult:
    """
    Run one batch job and log it as a PipelineRun.

    ``work`` receives a session and returns a report exposing ``counts()`` and
    ``errors``. The work runs in its own transaction so a systemic failure
    rolls back its writes while the run record is still kept.
    """
    started = time.monotonic()
    with session_factory() as db:
        run_id = PipelineRunRepository(db).start(job_name, utcnow()).id

    success = True
    counts: Dict[str, Any] = {}
    errors: List[str] = []
    with job_context(job_name, run_id):
        logger.info(f"Starting job {job_name} (run {run_id})")
        try:
            with session_factory() as db:
                report = work(db)
                counts = report.counts()
                errors = list(report.errors)
                if getattr(report, "failed_adapters", None):
                    success = False
        except PredictRadarError as e:
            success = False
            errors.append(f"{e.__class__.__name__}: {e.message}")
            logger.error(f"Job {job_name} failed: {e.message}")
        except SQLAlchemyError as e:
            success = False
            errors.append(f"DatabaseError: {e}")
            logger.error(f"Job {job_name} failed: {e}")
        except Exception as e:
            # the run record must still be finished and a result returned
            success = False
            errors.append(f"{type(e).__name__}: {e}")
            logger.exception(f"Job {job_name} crashed: {e}")

        duration_ms = int((time.monotonic() - started) * 1000)
        run_log.info("batch_finished", success=success, error_count=len(errors), duration_ms=duration_ms)

    result = BatchResult(success=success, counts=counts, errors=errors, duration_ms=duration_ms)

    with session_factory() as db:
        repo = PipelineRunRepository(db)
        repo.finish(repo.get_by_id(run_id), success, counts, errors, duration_ms)

    if success:
        logger.info(f"Job {job_name} completed in {duration_ms}ms: {counts}")
    else:
        logger.warning(f"Job {job_name} finished with failures in {duration_ms}ms: {errors[:5]}")
    return result
