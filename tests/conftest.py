"""
Shared pytest fixtures for the PredictRadar test suite.

Provides an in-memory SQLite database, a transactional session factory for
batch jobs, record factories, fake quote strategies and a fake clock.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from predictradar.db.models import (
    Base,
    Entity,
    Prediction,
    PriceQuote,
    PREDICTION_STATE_CLOSED,
    PREDICTION_STATE_LIVE,
)
from predictradar.domain.signals import SignalItem
from predictradar.services.market_data import (
    ERROR_TRANSIENT,
    ERROR_VALIDATION,
    FetchResult,
    Quote,
    QuoteProviderChain,
)
from predictradar.utils.rate_limit import RequestPacer

NOW = datetime(2025, 11, 21, 15, 0, 0)


@pytest.fixture
def engine():
    """Fresh in-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_maker(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_maker) -> Session:
    """Session for service-level tests. Rolled back after the test."""
    session = session_maker()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def session_factory(session_maker):
    """Drop-in replacement for get_db_transaction used by batch jobs."""

    @contextmanager
    def factory():
        session = session_maker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return factory


@pytest.fixture
def entity_factory(db):
    def make(symbol: str, sector: Optional[str] = None, active: bool = True, **kwargs) -> Entity:
        entity = Entity(symbol=symbol, sector=sector, active=active, consecutive_failures=0, **kwargs)
        db.add(entity)
        db.flush()
        return entity

    return make


@pytest.fixture
def quote_factory(db):
    def make(entity: Entity, price: float, fetched_at: datetime = NOW) -> PriceQuote:
        quote = PriceQuote(entity_id=entity.id, price=price, fetched_at=fetched_at, source="test")
        db.add(quote)
        db.flush()
        return quote

    return make


@pytest.fixture
def prediction_factory(db):
    def make(
        entity: Entity,
        direction: str = "up",
        confidence: float = 0.7,
        baseline_price: Optional[float] = 100.0,
        target_at: datetime = NOW + timedelta(hours=24),
        model_variant: str = "fundamentals",
        formula_version: str = "v2-gated",
        closed: bool = False,
        actual_change: Optional[float] = None,
        correct: Optional[bool] = None,
        **kwargs,
    ) -> Prediction:
        prediction = Prediction(
            entity_id=entity.id,
            model_variant=model_variant,
            formula_version=formula_version,
            predicted_direction=direction,
            confidence=confidence,
            baseline_price=baseline_price,
            baseline_at=target_at - timedelta(hours=24),
            target_at=target_at,
            state=PREDICTION_STATE_CLOSED if closed else PREDICTION_STATE_LIVE,
            actual_change=actual_change,
            correct=correct,
            **kwargs,
        )
        db.add(prediction)
        db.flush()
        return prediction

    return make


def signal(
    symbol: str,
    sentiment: str = "positive",
    confidence: float = 0.5,
    weight: float = 1.0,
    timestamp: datetime = NOW - timedelta(hours=1),
    channel: str = "news",
    source_id: Optional[str] = "reuters",
    engagement: Optional[float] = None,
) -> SignalItem:
    return SignalItem(
        source_id=source_id,
        entity_symbols=(symbol,),
        sentiment=sentiment,
        confidence=confidence,
        source_weight=weight,
        timestamp=timestamp,
        engagement_weight=engagement,
        channel=channel,
    )


@pytest.fixture
def make_signal():
    return signal


class FakeQuoteStrategy:
    """Scripted quote source that records every symbol it was asked for."""

    def __init__(
        self,
        name: str = "fake",
        prices: Optional[Dict[str, float]] = None,
        default_price: Optional[float] = 100.0,
        failing: Iterable[str] = (),
        invalid: Iterable[str] = (),
    ):
        self.name = name
        self.prices = prices or {}
        self.default_price = default_price
        self.failing = set(failing)
        self.invalid = set(invalid)
        self.calls: List[str] = []

    def fetch(self, symbol: str) -> FetchResult:
        self.calls.append(symbol)
        if symbol in self.failing:
            return FetchResult.failure(self.name, ERROR_TRANSIENT, "connection reset")
        if symbol in self.invalid:
            return FetchResult.failure(self.name, ERROR_VALIDATION, f"No price data available for {symbol}")
        price = self.prices.get(symbol, self.default_price)
        if price is None:
            return FetchResult.failure(self.name, ERROR_TRANSIENT, "no price scripted")
        return FetchResult.success(self.name, Quote(symbol=symbol, price=price, high=price, low=price, open=price))


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def pacer(fake_clock):
    return RequestPacer(min_interval=1.0, clock=fake_clock, sleep=fake_clock.sleep)


@pytest.fixture
def strategy():
    return FakeQuoteStrategy()


@pytest.fixture
def providers(strategy):
    return QuoteProviderChain([strategy])
