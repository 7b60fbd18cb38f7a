"""
Repository pattern for data access.

Provides clean interfaces for database operations, abstracting SQLAlchemy details.
Each repository handles a single aggregate (Entity, Signal, Quote, Prediction, PipelineRun).
"""

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

import numpy as np
from sqlalchemy import and_, exists, func, select
from sqlalchemy.orm import Session, joinedload
from loguru import logger

from predictradar.db.models import (
    AggregatedImpact,
    Entity,
    PipelineRun,
    Prediction,
    PredictionSnapshot,
    PriceQuote,
    SignalRecord,
    PREDICTION_STATE_CLOSED,
    PREDICTION_STATE_LIVE,
)
from predictradar.domain.signals import SignalItem
from predictradar.utils.datetime import utcnow
from predictradar.utils.errors import RecordNotFoundError


class EntityRepository:
    """Repository for Entity operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, entity_id: int) -> Optional[Entity]:
        return self.db.get(Entity, entity_id)

    def get_by_symbol(self, symbol: str) -> Optional[Entity]:
        return self.db.execute(
            select(Entity).where(Entity.symbol == symbol.upper())
        ).scalar_one_or_none()

    def get_or_create(self, symbol: str, **kwargs) -> Entity:
        """Return the entity for a symbol, creating it on first discovery."""
        entity = self.get_by_symbol(symbol)
        if entity:
            return entity

        entity = Entity(symbol=symbol.upper(), active=True, consecutive_failures=0, **kwargs)
        self.db.add(entity)
        self.db.flush()
        logger.info(f"Discovered new entity {entity.symbol}")
        return entity

    def record_fetch_success(self, entity: Entity, fetched_at: datetime) -> None:
        entity.consecutive_failures = 0
        entity.last_fetch_at = fetched_at
        entity.last_error = None

    def record_fetch_failure(
        self,
        entity: Entity,
        fetched_at: datetime,
        error: str,
        max_failures: int,
    ) -> bool:
        """
        Count a failed fetch and deactivate once the threshold is reached.

        Returns:
            True if this failure deactivated the entity
        """
        entity.consecutive_failures = (entity.consecutive_failures or 0) + 1
        entity.last_fetch_at = fetched_at
        entity.last_error = error

        if entity.active and entity.consecutive_failures >= max_failures:
            entity.active = False
            logger.warning(
                f"Deactivated {entity.symbol} after {entity.consecutive_failures} consecutive failures"
            )
            return True
        return False

    def reactivate(self, symbol: str) -> Entity:
        """Manually re-enable an entity and clear its failure counter."""
        entity = self.get_by_symbol(symbol)
        if not entity:
            raise RecordNotFoundError(f"Entity {symbol} not found")
        entity.active = True
        entity.consecutive_failures = 0
        entity.last_error = None
        self.db.flush()
        logger.info(f"Reactivated {entity.symbol}")
        return entity

    # Scheduler tier queries

    def evaluation_blocking(self, now: datetime) -> List[Entity]:
        """Active entities backing a live prediction whose target has passed."""
        oldest_target = (
            select(Prediction.entity_id, func.min(Prediction.target_at).label("oldest_target"))
            .where(Prediction.state == PREDICTION_STATE_LIVE, Prediction.target_at <= now)
            .group_by(Prediction.entity_id)
            .subquery()
        )
        query = (
            select(Entity)
            .join(oldest_target, oldest_target.c.entity_id == Entity.id)
            .where(Entity.active.is_(True))
            .order_by(oldest_target.c.oldest_target, Entity.id)
        )
        return list(self.db.execute(query).scalars())

    def without_quotes(self) -> List[Entity]:
        """Active entities with no stored price data yet."""
        has_quote = exists().where(PriceQuote.entity_id == Entity.id)
        query = (
            select(Entity)
            .where(Entity.active.is_(True), ~has_quote)
            .order_by(Entity.created_at, Entity.id)
        )
        return list(self.db.execute(query).scalars())

    def by_staleness(self) -> List[Entity]:
        """Active entities, never-fetched first, then oldest fetch first."""
        query = (
            select(Entity)
            .where(Entity.active.is_(True))
            .order_by(Entity.last_fetch_at.is_(None).desc(), Entity.last_fetch_at.asc(), Entity.id)
        )
        return list(self.db.execute(query).scalars())


class SignalRepository:
    """Repository for signal items and aggregated impacts."""

    def __init__(self, db: Session):
        self.db = db

    def add_items(self, entity: Entity, items: Iterable[SignalItem]) -> int:
        count = 0
        for item in items:
            self.db.add(
                SignalRecord(
                    entity_id=entity.id,
                    source_id=item.source_id,
                    channel=item.channel,
                    sentiment=item.sentiment,
                    confidence=item.confidence,
                    source_weight=item.source_weight,
                    engagement_weight=item.engagement_weight,
                    timestamp=item.timestamp,
                )
            )
            count += 1
        self.db.flush()
        return count

    def items_for_entity(
        self,
        entity: Entity,
        since: datetime,
        until: datetime,
        channels: Optional[List[str]] = None,
    ) -> List[SignalItem]:
        """Load stored items back as immutable SignalItems."""
        query = select(SignalRecord).where(
            SignalRecord.entity_id == entity.id,
            SignalRecord.timestamp >= since,
            SignalRecord.timestamp <= until,
        )
        if channels:
            query = query.where(SignalRecord.channel.in_(channels))

        return [
            SignalItem(
                source_id=record.source_id,
                entity_symbols=(entity.symbol,),
                sentiment=record.sentiment,
                confidence=record.confidence,
                source_weight=record.source_weight,
                engagement_weight=record.engagement_weight,
                timestamp=record.timestamp,
                channel=record.channel,
            )
            for record in self.db.execute(query.order_by(SignalRecord.timestamp)).scalars()
        ]

    def entities_with_signals(self, since: datetime) -> List[Entity]:
        query = (
            select(Entity)
            .where(
                Entity.active.is_(True),
                exists().where(and_(SignalRecord.entity_id == Entity.id, SignalRecord.timestamp >= since)),
            )
            .order_by(Entity.id)
        )
        return list(self.db.execute(query).scalars())

    def add_impact(self, impact: AggregatedImpact) -> AggregatedImpact:
        self.db.add(impact)
        self.db.flush()
        return impact

    def latest_impact(self, entity_id: int, model_variant: str) -> Optional[AggregatedImpact]:
        return self.db.execute(
            select(AggregatedImpact)
            .where(AggregatedImpact.entity_id == entity_id, AggregatedImpact.model_variant == model_variant)
            .order_by(AggregatedImpact.computed_at.desc(), AggregatedImpact.id.desc())
            .limit(1)
        ).scalar_one_or_none()


class QuoteRepository:
    """Repository for fetched price quotes."""

    def __init__(self, db: Session):
        self.db = db

    def add(self, quote: PriceQuote) -> PriceQuote:
        self.db.add(quote)
        self.db.flush()
        return quote

    def latest(self, entity_id: int, max_age: Optional[timedelta] = None, now: Optional[datetime] = None) -> Optional[PriceQuote]:
        query = select(PriceQuote).where(PriceQuote.entity_id == entity_id)
        if max_age is not None:
            query = query.where(PriceQuote.fetched_at >= (now or utcnow()) - max_age)
        return self.db.execute(
            query.order_by(PriceQuote.fetched_at.desc(), PriceQuote.id.desc()).limit(1)
        ).scalar_one_or_none()

    def first_at_or_after(self, entity_id: int, moment: datetime) -> Optional[PriceQuote]:
        """Earliest quote taken at or after a moment (the price that settles a target)."""
        return self.db.execute(
            select(PriceQuote)
            .where(PriceQuote.entity_id == entity_id, PriceQuote.fetched_at >= moment)
            .order_by(PriceQuote.fetched_at.asc(), PriceQuote.id.asc())
            .limit(1)
        ).scalar_one_or_none()

    def daily_closes(self, entity_id: int, since: datetime) -> List[float]:
        """Last quote of each calendar day since a moment, oldest first."""
        quotes = self.db.execute(
            select(PriceQuote)
            .where(PriceQuote.entity_id == entity_id, PriceQuote.fetched_at >= since)
            .order_by(PriceQuote.fetched_at.asc(), PriceQuote.id.asc())
        ).scalars()

        closes: Dict[object, float] = {}
        for quote in quotes:
            closes[quote.fetched_at.date()] = quote.price
        return list(closes.values())

    def volatility(self, entity_id: int, days: int = 7, now: Optional[datetime] = None) -> Optional[float]:
        """
        Standard deviation of daily close-to-close returns.

        Returns None with fewer than two days of closes.
        """
        closes = self.daily_closes(entity_id, (now or utcnow()) - timedelta(days=days))
        if len(closes) < 2:
            return None
        prices = np.asarray(closes, dtype=float)
        returns = np.diff(prices) / prices[:-1]
        return float(np.std(returns))


class PredictionRepository:
    """Repository for predictions and their snapshots."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, prediction_id: int) -> Optional[Prediction]:
        return self.db.get(Prediction, prediction_id)

    def add(self, prediction: Prediction) -> Prediction:
        self.db.add(prediction)
        self.db.flush()
        return prediction

    def has_live(self, entity_id: int, model_variant: str) -> bool:
        return self.db.execute(
            select(
                exists().where(
                    Prediction.entity_id == entity_id,
                    Prediction.model_variant == model_variant,
                    Prediction.state == PREDICTION_STATE_LIVE,
                )
            )
        ).scalar()

    def live_before_target(self, now: datetime) -> List[Prediction]:
        """Live predictions whose target is still in the future."""
        return list(
            self.db.execute(
                select(Prediction)
                .options(joinedload(Prediction.entity))
                .where(Prediction.state == PREDICTION_STATE_LIVE, Prediction.target_at > now)
                .order_by(Prediction.target_at, Prediction.id)
            ).scalars()
        )

    def live_past_target(self, now: datetime, entity_ids: Optional[Iterable[int]] = None) -> List[Prediction]:
        """Live predictions whose target has passed, optionally for some entities only."""
        query = (
            select(Prediction)
            .options(joinedload(Prediction.entity))
            .where(Prediction.state == PREDICTION_STATE_LIVE, Prediction.target_at <= now)
        )
        if entity_ids is not None:
            query = query.where(Prediction.entity_id.in_(list(entity_ids)))
        return list(self.db.execute(query.order_by(Prediction.target_at, Prediction.id)).scalars())

    def closed(
        self,
        model_variant: Optional[str] = None,
        formula_version: Optional[str] = None,
        sector: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        min_confidence: Optional[float] = None,
        max_confidence: Optional[float] = None,
    ) -> List[Prediction]:
        """Closed predictions matching the filters, in chronological target order."""
        query = (
            select(Prediction)
            .join(Entity, Entity.id == Prediction.entity_id)
            .options(joinedload(Prediction.entity))
            .where(Prediction.state == PREDICTION_STATE_CLOSED, Prediction.actual_change.is_not(None))
        )
        if model_variant:
            query = query.where(Prediction.model_variant == model_variant)
        if formula_version:
            query = query.where(Prediction.formula_version == formula_version)
        if sector:
            query = query.where(Entity.sector == sector)
        if start:
            query = query.where(Prediction.target_at >= start)
        if end:
            query = query.where(Prediction.target_at <= end)
        if min_confidence is not None:
            query = query.where(Prediction.confidence >= min_confidence)
        if max_confidence is not None:
            query = query.where(Prediction.confidence <= max_confidence)
        return list(self.db.execute(query.order_by(Prediction.target_at, Prediction.id)).scalars())

    def add_snapshot(self, snapshot: PredictionSnapshot) -> PredictionSnapshot:
        self.db.add(snapshot)
        self.db.flush()
        return snapshot

    def snapshots(self, prediction_id: int) -> List[PredictionSnapshot]:
        return list(
            self.db.execute(
                select(PredictionSnapshot)
                .where(PredictionSnapshot.prediction_id == prediction_id)
                .order_by(PredictionSnapshot.sampled_at, PredictionSnapshot.id)
            ).scalars()
        )


class PipelineRunRepository:
    """Repository for batch job execution logs."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, run_id: int) -> Optional[PipelineRun]:
        return self.db.get(PipelineRun, run_id)

    def start(self, job_name: str, started_at: datetime) -> PipelineRun:
        run = PipelineRun(job_name=job_name, started_at=started_at, status="running")
        self.db.add(run)
        self.db.flush()
        return run

    def finish(
        self,
        run: PipelineRun,
        success: bool,
        counts: Dict,
        errors: List[str],
        duration_ms: int,
    ) -> PipelineRun:
        run.status = "success" if success else "failure"
        run.completed_at = utcnow()
        run.duration_ms = duration_ms
        run.counts_json = counts
        run.errors_json = errors
        self.db.flush()
        return run

    def recent(self, job_name: str, limit: int = 10) -> List[PipelineRun]:
        return list(
            self.db.execute(
                select(PipelineRun)
                .where(PipelineRun.job_name == job_name)
                .order_by(PipelineRun.started_at.desc(), PipelineRun.id.desc())
                .limit(limit)
            ).scalars()
        )
