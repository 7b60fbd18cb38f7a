"""
Prediction evaluator.

Closes live predictions whose target time has passed by comparing the first
price at or after the target with the baseline. Closing is idempotent: a
prediction's state is checked before anything is computed, and a closed
prediction is never touched again.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session
from loguru import logger

from predictradar.config import settings
from predictradar.db.models import Prediction, PREDICTION_STATE_CLOSED
from predictradar.db.repositories import PredictionRepository, QuoteRepository
from predictradar.domain.scoring import DIRECTION_FLAT, classify_move, percent_change
from predictradar.utils.datetime import utcnow
from predictradar.utils.errors import DataConsistencyError, ScoringError


@dataclass(frozen=True)
class EvaluationOutcome:
    """Computed grade for one prediction, not yet persisted."""

    prediction_id: int
    actual_price: float
    actual_change: float
    actual_direction: str
    correct: bool
    evaluated_at: datetime


@dataclass
class EvaluationReport:
    evaluated: int = 0
    correct: int = 0
    incorrect: int = 0
    awaiting_price: int = 0
    already_closed: int = 0
    inconsistent: int = 0
    errors: List[str] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "evaluated": self.evaluated,
            "correct": self.correct,
            "incorrect": self.incorrect,
            "awaiting_price": self.awaiting_price,
            "already_closed": self.already_closed,
            "inconsistent": self.inconsistent,
        }


def grade_prediction(
    prediction: Prediction,
    settle_price: float,
    flat_threshold_pct: float,
    evaluated_at: datetime,
) -> EvaluationOutcome:
    """
    Grade one prediction against its settlement price.

    Raises:
        DataConsistencyError: if the prediction is closed or has no usable baseline
    """
    if not prediction.is_live:
        raise DataConsistencyError(f"Prediction {prediction.id} is already closed")
    try:
        change = percent_change(prediction.baseline_price, settle_price)
    except ScoringError as e:
        raise DataConsistencyError(f"Prediction {prediction.id}: {e.message}") from e

    direction = classify_move(change, flat_threshold_pct)
    correct = False if direction == DIRECTION_FLAT else direction == prediction.predicted_direction

    return EvaluationOutcome(
        prediction_id=prediction.id,
        actual_price=settle_price,
        actual_change=change,
        actual_direction=direction,
        correct=correct,
        evaluated_at=evaluated_at,
    )


class PredictionEvaluator:
    """Closes matured predictions in one batch pass."""

    def __init__(self, db: Session, flat_threshold_pct: Optional[float] = None):
        self.db = db
        self.predictions = PredictionRepository(db)
        self.quotes = QuoteRepository(db)
        self.flat_threshold_pct = (
            settings.flat_threshold_pct if flat_threshold_pct is None else flat_threshold_pct
        )

    def plan(
        self,
        now: Optional[datetime] = None,
        entity_ids: Optional[Iterable[int]] = None,
        report: Optional[EvaluationReport] = None,
    ) -> List[EvaluationOutcome]:
        """Compute outcomes for every matured live prediction without writing anything."""
        now = now or utcnow()
        report = report if report is not None else EvaluationReport()
        outcomes: List[EvaluationOutcome] = []

        for prediction in self.predictions.live_past_target(now, entity_ids):
            symbol = prediction.entity.symbol if prediction.entity else prediction.entity_id
            try:
                quote = self.quotes.first_at_or_after(prediction.entity_id, prediction.target_at)
                if quote is None:
                    report.awaiting_price += 1
                    logger.debug(f"No price at or after target for {symbol}, retrying next cycle")
                    continue
                outcomes.append(grade_prediction(prediction, quote.price, self.flat_threshold_pct, now))
            except DataConsistencyError as e:
                report.inconsistent += 1
                report.errors.append(f"{symbol}: {e.message}")
                logger.warning(f"Skipping prediction {prediction.id}: {e.message}")

        return outcomes

    def apply(self, outcomes: Iterable[EvaluationOutcome], report: Optional[EvaluationReport] = None) -> EvaluationReport:
        """Persist outcomes. Predictions closed in the meantime are left alone."""
        report = report if report is not None else EvaluationReport()

        for outcome in outcomes:
            prediction = self.predictions.get_by_id(outcome.prediction_id)
            if prediction is None or not prediction.is_live:
                report.already_closed += 1
                continue

            prediction.actual_price = outcome.actual_price
            prediction.actual_change = outcome.actual_change
            prediction.actual_direction = outcome.actual_direction
            prediction.correct = outcome.correct
            prediction.evaluated_at = outcome.evaluated_at
            prediction.state = PREDICTION_STATE_CLOSED

            report.evaluated += 1
            if outcome.correct:
                report.correct += 1
            else:
                report.incorrect += 1

            logger.info(
                f"{prediction.entity.symbol} {prediction.model_variant}: predicted "
                f"{prediction.predicted_direction.upper()}, actual {outcome.actual_direction.upper()} "
                f"({outcome.actual_change:+.2f}%) - {'CORRECT' if outcome.correct else 'WRONG'}"
            )

        self.db.flush()
        return report

    def run(self, now: Optional[datetime] = None, entity_ids: Optional[Iterable[int]] = None) -> EvaluationReport:
        """Evaluate all matured predictions (optionally limited to some entities)."""
        report = EvaluationReport()
        outcomes = self.plan(now=now, entity_ids=entity_ids, report=report)
        self.apply(outcomes, report)
        logger.info(
            f"Evaluated {report.evaluated}: {report.correct} correct, {report.incorrect} incorrect, "
            f"{report.awaiting_price} awaiting price"
        )
        return report

    def evaluate_one(self, prediction_id: int, now: Optional[datetime] = None) -> Optional[EvaluationOutcome]:
        """
        Evaluate a single prediction.

        Returns None when it is already closed, not yet due, or has no settlement price.
        """
        now = now or utcnow()
        prediction = self.predictions.get_by_id(prediction_id)
        if prediction is None or not prediction.is_live or prediction.target_at > now:
            return None

        quote = self.quotes.first_at_or_after(prediction.entity_id, prediction.target_at)
        if quote is None:
            return None

        try:
            outcome = grade_prediction(prediction, quote.price, self.flat_threshold_pct, now)
        except DataConsistencyError as e:
            logger.warning(f"Skipping prediction {prediction_id}: {e.message}")
            return None
        self.apply([outcome])
        return outcome
