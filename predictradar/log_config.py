"""
Logging for the batch jobs, built on loguru and structlog.

Human-readable loguru output carries the name of the job that emitted each
line; structlog loggers emit one event per batch with the same job context
merged in from contextvars.
"""

import sys
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from loguru import logger
import structlog
from structlog.typing import EventDict, WrappedLogger

from predictradar.config import settings
from predictradar.utils.datetime import utcnow

NO_JOB = "-"

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[job]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

# Libraries that log through the standard library at INFO on every request
NOISY_LOGGERS = ("urllib3", "yfinance", "peewee", "apscheduler.executors", "sqlalchemy.engine")


def stamp_event(logger: WrappedLogger, name: str, event_dict: EventDict) -> EventDict:
    """Level and naive-UTC timestamp, matching the timestamps stored in the database."""
    event_dict["level"] = name.upper()
    event_dict["timestamp"] = utcnow().isoformat()
    return event_dict


class InterceptHandler(logging.Handler):
    """Route standard library records (SQLAlchemy, APScheduler, yfinance) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _add_sinks(serialize: bool) -> None:
    fmt = "{message}" if serialize else TEXT_FORMAT
    logger.add(
        sys.stderr,
        format=fmt,
        level=settings.log_level,
        serialize=serialize,
        backtrace=settings.debug,
        diagnose=settings.is_development,
    )

    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            settings.log_file,
            format=fmt,
            level=settings.log_level,
            serialize=serialize,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            compression="zip",
            diagnose=False,
        )


def configure_logging() -> None:
    """Configure loguru sinks, structlog and standard library interception."""
    serialize = settings.log_format == "json"

    logger.remove()
    logger.configure(extra={"job": NO_JOB})
    _add_sinks(serialize)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            stamp_event,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if serialize else structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(settings.log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def job_context(job_name: str, run_id: Optional[int] = None) -> Iterator[None]:
    """Tag every loguru line and structlog event inside the block with the job."""
    structlog.contextvars.bind_contextvars(job=job_name, run_id=run_id)
    try:
        with logger.contextualize(job=job_name):
            yield
    finally:
        structlog.contextvars.unbind_contextvars("job", "run_id")


def get_logger(name: str) -> Any:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


configure_logging()
