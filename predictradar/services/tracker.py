"""
Live deviation tracker.

Samples every live prediction whose target is still ahead against the latest
known price and appends a snapshot. Snapshots are append-only and the
prediction's state and terminal fields are never touched here.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session
from loguru import logger

from predictradar.config import settings
from predictradar.db.models import Prediction, PredictionSnapshot
from predictradar.db.repositories import PredictionRepository, QuoteRepository
from predictradar.domain.scoring import DIRECTION_FLAT, classify_move, percent_change
from predictradar.utils.datetime import utcnow
from predictradar.utils.errors import DataConsistencyError, ScoringError


@dataclass(frozen=True)
class SnapshotSample:
    prediction_id: int
    sampled_at: datetime
    current_price: float
    price_change: float
    deviation: float
    is_correct: Optional[bool]


@dataclass
class TrackingReport:
    checked: int = 0
    snapshots_created: int = 0
    no_price: int = 0
    errors: List[str] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "predictions_checked": self.checked,
            "snapshots_created": self.snapshots_created,
            "no_price": self.no_price,
        }


def sample_prediction(
    prediction: Prediction,
    current_price: float,
    flat_threshold_pct: float,
    sampled_at: datetime,
) -> SnapshotSample:
    """
    Compare a live prediction with the current price.

    Correctness so far is None while the move is below the flat threshold.
    """
    try:
        change = percent_change(prediction.baseline_price, current_price)
    except ScoringError as e:
        raise DataConsistencyError(f"Prediction {prediction.id}: {e.message}") from e

    predicted_change = prediction.predicted_change or 0.0
    direction = classify_move(change, flat_threshold_pct)
    is_correct = None if direction == DIRECTION_FLAT else direction == prediction.predicted_direction

    return SnapshotSample(
        prediction_id=prediction.id,
        sampled_at=sampled_at,
        current_price=current_price,
        price_change=change,
        deviation=abs(change - predicted_change),
        is_correct=is_correct,
    )


class LiveDeviationTracker:
    """Snapshots unexpired predictions against current prices."""

    def __init__(self, db: Session, flat_threshold_pct: Optional[float] = None):
        self.db = db
        self.predictions = PredictionRepository(db)
        self.quotes = QuoteRepository(db)
        self.flat_threshold_pct = (
            settings.flat_threshold_pct if flat_threshold_pct is None else flat_threshold_pct
        )

    def plan(self, now: Optional[datetime] = None, report: Optional[TrackingReport] = None) -> List[SnapshotSample]:
        now = now or utcnow()
        report = report if report is not None else TrackingReport()
        samples: List[SnapshotSample] = []

        live = self.predictions.live_before_target(now)
        logger.info(f"Found {len(live)} active predictions")

        for prediction in live:
            report.checked += 1
            symbol = prediction.entity.symbol
            quote = self.quotes.latest(prediction.entity_id)
            if quote is None:
                report.no_price += 1
                report.errors.append(f"Could not find current price for {symbol}")
                continue
            try:
                samples.append(sample_prediction(prediction, quote.price, self.flat_threshold_pct, now))
            except DataConsistencyError as e:
                report.errors.append(f"Error tracking {symbol}: {e.message}")
                logger.warning(e.message)

        return samples

    def apply(self, samples: List[SnapshotSample], report: Optional[TrackingReport] = None) -> TrackingReport:
        report = report if report is not None else TrackingReport()
        for sample in samples:
            self.predictions.add_snapshot(
                PredictionSnapshot(
                    prediction_id=sample.prediction_id,
                    sampled_at=sample.sampled_at,
                    current_price=sample.current_price,
                    price_change=sample.price_change,
                    deviation=sample.deviation,
                    is_correct=sample.is_correct,
                )
            )
            prediction = self.predictions.get_by_id(sample.prediction_id)
            prediction.current_deviation = sample.deviation
            prediction.last_checked_at = sample.sampled_at
            report.snapshots_created += 1
        self.db.flush()
        return report

    def run(self, now: Optional[datetime] = None) -> TrackingReport:
        report = TrackingReport()
        samples = self.plan(now=now, report=report)
        self.apply(samples, report)
        logger.info(f"Created {report.snapshots_created} snapshots")
        return report

    def prediction_progress(self, prediction_id: int) -> Optional[Dict]:
        """Summarise a prediction's snapshots. None when it has none."""
        snapshots = self.predictions.snapshots(prediction_id)
        if not snapshots:
            return None

        latest = snapshots[-1]
        correct = sum(1 for s in snapshots if s.is_correct is True)
        incorrect = sum(1 for s in snapshots if s.is_correct is False)
        decided = correct + incorrect

        return {
            "latest": {
                "current_price": latest.current_price,
                "price_change": latest.price_change,
                "deviation": latest.deviation,
                "is_correct": latest.is_correct,
                "sampled_at": latest.sampled_at,
            },
            "accuracy": {
                "correct_checks": correct,
                "incorrect_checks": incorrect,
                "flat_checks": len(snapshots) - decided,
                "total_checks": len(snapshots),
                "accuracy_rate": correct / decided * 100 if decided else 0.0,
            },
        }
