"""
Database session management with SQLAlchemy 2.0.

Provides engine configuration, session creation and context managers
for safe database access with automatic transaction rollback.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, scoped_session
from sqlalchemy.exc import SQLAlchemyError
from loguru import logger

from predictradar.config import settings
from predictradar.db.models import Base
from predictradar.utils.errors import DatabaseError


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine with options suited to the backend.

    SQLite gets foreign key enforcement; server databases get a
    pre-pinged, recycled connection pool.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,  # Recycle connections after 30 minutes
        echo=echo,
    )


engine = build_engine(settings.database_url, echo=settings.debug)

SessionLocal = scoped_session(
    sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,  # Prevent lazy load issues after commit
    )
)


def init_db(bind: Engine = None) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ensured")


def get_db() -> Session:
    """
    Get a database session.

    Note:
        Caller is responsible for closing the session with close_db()
        or using the get_db_transaction() context manager.
    """
    return SessionLocal()


def close_db() -> None:
    """Close and remove the current database session."""
    SessionLocal.remove()


@contextmanager
def get_db_transaction() -> Generator[Session, None, None]:
    """
    Get a database session with explicit transaction control.

    SQLAlchemy errors are wrapped in DatabaseError so that batch jobs can
    report them as systemic failures.
    """
    db = get_db()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database transaction failed: {e}")
        raise DatabaseError(f"Database transaction failed: {e}") from e
    except Exception:
        db.rollback()
        raise
    finally:
        close_db()
