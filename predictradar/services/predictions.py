"""
Prediction lifecycle manager.

Turns aggregated signals into live predictions. Each run is bound to one
confidence formula version. Suppressed scores create nothing; entities
without a current price are skipped without failing the batch.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session
from loguru import logger

from predictradar.config import settings
from predictradar.db.models import AggregatedImpact, Entity, Prediction, PREDICTION_STATE_LIVE
from predictradar.db.repositories import (
    EntityRepository,
    PredictionRepository,
    QuoteRepository,
    SignalRepository,
)
from predictradar.domain.scoring import ConfidenceScorer
from predictradar.domain.signals import aggregate_signals
from predictradar.utils.datetime import utcnow


@dataclass(frozen=True)
class PredictionPlan:
    """A prediction ready to be created."""

    entity_id: int
    symbol: str
    model_variant: str
    formula_version: str
    direction: str
    confidence: float
    signal_score: float
    volatility: Optional[float]
    baseline_price: float
    baseline_at: datetime
    target_at: datetime


@dataclass
class PredictionBatch:
    """Everything one run computed, written in a single step by apply()."""

    impacts: List[AggregatedImpact] = field(default_factory=list)
    plans: List[PredictionPlan] = field(default_factory=list)


@dataclass
class PredictionRunReport:
    created: int = 0
    suppressed: int = 0
    no_price: int = 0
    duplicates: int = 0
    by_variant: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def counts(self) -> Dict[str, object]:
        return {
            "created": self.created,
            "suppressed": self.suppressed,
            "no_price": self.no_price,
            "duplicates": self.duplicates,
            **{f"created_{variant}": n for variant, n in self.by_variant.items()},
        }


class PredictionLifecycleManager:
    """Creates predictions from scored signals, one formula per run."""

    def __init__(
        self,
        db: Session,
        scorer: Optional[ConfidenceScorer] = None,
        model_variants: Optional[Dict[str, List[str]]] = None,
        horizon: Optional[timedelta] = None,
        lookback: Optional[timedelta] = None,
        baseline_max_age: Optional[timedelta] = None,
        volatility_window_days: Optional[int] = None,
    ):
        self.db = db
        self.entities = EntityRepository(db)
        self.signals = SignalRepository(db)
        self.quotes = QuoteRepository(db)
        self.predictions = PredictionRepository(db)
        self.scorer = scorer or ConfidenceScorer(settings.confidence_formula)
        self.model_variants = model_variants or settings.model_variant_map
        self.horizon = horizon or timedelta(hours=settings.prediction_horizon_hours)
        self.lookback = lookback or timedelta(hours=settings.signal_lookback_hours)
        self.baseline_max_age = baseline_max_age or timedelta(minutes=settings.baseline_max_age_minutes)
        self.volatility_window_days = volatility_window_days or settings.volatility_window_days

    @property
    def formula_version(self) -> str:
        return self.scorer.formula_version

    def plan_for_entity(
        self,
        entity: Entity,
        model_variant: str,
        now: datetime,
        batch: PredictionBatch,
        report: PredictionRunReport,
        volatility: Optional[float] = None,
    ) -> Optional[PredictionPlan]:
        """Aggregate, score and price one entity for one model variant."""
        channels = self.model_variants.get(model_variant)
        items = self.signals.items_for_entity(entity, now - self.lookback, now, channels)
        impact = aggregate_signals(items, entity.symbol, now - self.lookback, now)

        batch.impacts.append(
            AggregatedImpact(
                entity_id=entity.id,
                model_variant=model_variant,
                window_start=impact.window_start,
                window_end=impact.window_end,
                score=impact.score,
                item_count=impact.item_count,
                total_weight=impact.total_weight,
                computed_at=now,
            )
        )

        result = self.scorer.score(impact.score, volatility)
        if result is None:
            report.suppressed += 1
            logger.debug(f"{entity.symbol} {model_variant}: signal {impact.score:+.3f} suppressed")
            return None

        if self.predictions.has_live(entity.id, model_variant):
            report.duplicates += 1
            return None

        quote = self.quotes.latest(entity.id, max_age=self.baseline_max_age, now=now)
        if quote is None:
            report.no_price += 1
            report.errors.append(f"{entity.symbol} {model_variant}: no current price")
            return None

        plan = PredictionPlan(
            entity_id=entity.id,
            symbol=entity.symbol,
            model_variant=model_variant,
            formula_version=result.formula_version,
            direction=result.direction,
            confidence=result.confidence,
            signal_score=impact.score,
            volatility=volatility,
            baseline_price=quote.price,
            baseline_at=now,
            target_at=now + self.horizon,
        )
        batch.plans.append(plan)
        return plan

    def plan(self, now: Optional[datetime] = None, report: Optional[PredictionRunReport] = None) -> PredictionBatch:
        """Compute the impacts and predictions this run would write, without writing them."""
        now = now or utcnow()
        report = report if report is not None else PredictionRunReport()
        batch = PredictionBatch()

        entities = self.signals.entities_with_signals(now - self.lookback)
        logger.info(
            f"Running {self.formula_version} predictions for {len(entities)} entities "
            f"across {len(self.model_variants)} model variants"
        )

        for entity in entities:
            volatility = self.quotes.volatility(entity.id, self.volatility_window_days, now)
            for variant in self.model_variants:
                self.plan_for_entity(entity, variant, now, batch, report, volatility)

        return batch

    def apply(self, batch: PredictionBatch, report: Optional[PredictionRunReport] = None) -> List[Prediction]:
        """Persist the batch's aggregated impacts and create its predictions as live."""
        report = report if report is not None else PredictionRunReport()
        created: List[Prediction] = []

        for impact in batch.impacts:
            self.db.add(impact)

        for plan in batch.plans:
            prediction = Prediction(
                entity_id=plan.entity_id,
                model_variant=plan.model_variant,
                formula_version=plan.formula_version,
                predicted_direction=plan.direction,
                confidence=plan.confidence,
                signal_score=plan.signal_score,
                volatility=plan.volatility,
                baseline_price=plan.baseline_price,
                baseline_at=plan.baseline_at,
                target_at=plan.target_at,
                state=PREDICTION_STATE_LIVE,
            )
            self.db.add(prediction)
            created.append(prediction)
            report.created += 1
            report.by_variant[plan.model_variant] = report.by_variant.get(plan.model_variant, 0) + 1
            logger.info(
                f"{plan.symbol} {plan.model_variant}: {plan.direction.upper()} ({plan.confidence * 100:.0f}%)"
            )

        self.db.flush()
        return created

    def run(self, now: Optional[datetime] = None) -> PredictionRunReport:
        report = PredictionRunReport()
        batch = self.plan(now=now, report=report)
        self.apply(batch, report)
        logger.info(
            f"Created {report.created} predictions, {report.suppressed} suppressed, {report.no_price} without price"
        )
        return report

    def create_prediction(
        self,
        symbol: str,
        model_variant: str,
        score: float,
        volatility: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Prediction]:
        """
        Create one prediction from an already aggregated score.

        Returns None when the score is suppressed, a live prediction already
        exists for the variant, or the entity has no current price.
        """
        now = now or utcnow()
        entity = self.entities.get_by_symbol(symbol)
        if entity is None or not entity.active:
            return None

        result = self.scorer.score(score, volatility)
        if result is None:
            return None

        if self.predictions.has_live(entity.id, model_variant):
            logger.info(f"{entity.symbol} {model_variant} already has a live prediction")
            return None

        quote = self.quotes.latest(entity.id, max_age=self.baseline_max_age, now=now)
        if quote is None:
            logger.warning(f"No current price for {entity.symbol}, prediction skipped")
            return None

        plan = PredictionPlan(
            entity_id=entity.id,
            symbol=entity.symbol,
            model_variant=model_variant,
            formula_version=result.formula_version,
            direction=result.direction,
            confidence=result.confidence,
            signal_score=score,
            volatility=volatility,
            baseline_price=quote.price,
            baseline_at=now,
            target_at=now + self.horizon,
        )
        return self.apply(PredictionBatch(plans=[plan]))[0]
