"""
Performance Analytics Engine.

Loads closed predictions through the repository with the requested filters
and turns them into a report. A report always covers a single confidence
formula version so that legacy and current predictions are never mixed.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session
from loguru import logger

from predictradar.config import settings
from predictradar.db.models import Prediction
from predictradar.db.repositories import PredictionRepository
from predictradar.services.analytics.metrics import (
    CalibrationBucket,
    ClosedOutcome,
    PerformanceMetrics,
    benchmark_return,
    calibration,
    compute_metrics,
    expected_calibration_error,
)
from predictradar.utils.errors import ValidationError


@dataclass(frozen=True)
class AnalyticsFilter:
    model_variant: Optional[str] = None
    formula_version: Optional[str] = None
    sector: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    min_confidence: Optional[float] = None
    max_confidence: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "model_variant": self.model_variant,
            "formula_version": self.formula_version,
            "sector": self.sector,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "min_confidence": self.min_confidence,
            "max_confidence": self.max_confidence,
        }


@dataclass
class ModelComparison:
    accuracy: Dict[str, float]
    winner: str
    difference: float

    def to_dict(self) -> Dict:
        return {
            "accuracy": {k: round(v, 1) for k, v in self.accuracy.items()},
            "winner": self.winner,
            "difference": round(self.difference, 1),
        }


@dataclass
class PerformanceReport:
    filters: AnalyticsFilter
    formula_version: str
    metrics: PerformanceMetrics
    calibration: List[CalibrationBucket]
    expected_calibration_error: float
    benchmark_return: float
    by_sector: Dict[str, PerformanceMetrics] = field(default_factory=dict)
    by_model: Dict[str, PerformanceMetrics] = field(default_factory=dict)
    comparison: Optional[ModelComparison] = None
    errors: List[str] = field(default_factory=list)

    @property
    def miscalibrated_buckets(self) -> List[CalibrationBucket]:
        return [b for b in self.calibration if b.miscalibrated]

    def counts(self) -> Dict:
        return self.to_dict()

    def to_dict(self) -> Dict:
        return {
            "filters": self.filters.to_dict(),
            "formula_version": self.formula_version,
            "metrics": self.metrics.to_dict(),
            "calibration": {
                "buckets": [b.to_dict() for b in self.calibration],
                "expected_calibration_error": round(self.expected_calibration_error, 2),
                "miscalibrated": [b.label for b in self.miscalibrated_buckets],
            },
            "benchmark": {
                "return": round(self.benchmark_return, 2),
                "excess_return": round(
                    self.metrics.total_return / self.metrics.total_predictions - self.benchmark_return, 2
                ) if self.metrics.total_predictions else 0.0,
            },
            "by_sector": {k: v.to_dict() for k, v in self.by_sector.items()},
            "by_model": {k: v.to_dict() for k, v in self.by_model.items()},
            "comparison": self.comparison.to_dict() if self.comparison else None,
        }


def to_outcome(prediction: Prediction) -> ClosedOutcome:
    entity = prediction.entity
    return ClosedOutcome(
        prediction_id=prediction.id,
        symbol=entity.symbol if entity else "",
        sector=entity.sector if entity else None,
        model_variant=prediction.model_variant,
        formula_version=prediction.formula_version,
        predicted_direction=prediction.predicted_direction,
        confidence=prediction.confidence,
        actual_change=prediction.actual_change,
        correct=bool(prediction.correct),
        target_at=prediction.target_at,
    )


def compare_models(by_model: Dict[str, PerformanceMetrics]) -> Optional[ModelComparison]:
    """Winner by accuracy; ``tie`` when the best accuracies are equal. None with fewer than two models."""
    scored = {name: m.accuracy for name, m in by_model.items() if m.total_predictions}
    if len(scored) < 2:
        return None

    ranked = sorted(scored.items(), key=lambda kv: kv[1], reverse=True)
    (best_name, best), (_, runner_up) = ranked[0], ranked[1]
    return ModelComparison(
        accuracy=scored,
        winner="tie" if best == runner_up else best_name,
        difference=best - runner_up,
    )


class PerformanceAnalyticsEngine:
    """Builds performance reports from closed predictions."""

    def __init__(
        self,
        db: Session,
        bucket_edges: Optional[Sequence[float]] = None,
        gap_threshold: Optional[float] = None,
        min_count: Optional[int] = None,
    ):
        self.db = db
        self.predictions = PredictionRepository(db)
        self.bucket_edges = list(bucket_edges or settings.calibration_bucket_edges)
        self.gap_threshold = settings.calibration_gap_threshold if gap_threshold is None else gap_threshold
        self.min_count = settings.calibration_min_count if min_count is None else min_count

        if len(self.bucket_edges) < 2 or sorted(self.bucket_edges) != self.bucket_edges:
            raise ValidationError("Calibration bucket edges must be at least two ascending values")

    def load(self, filters: AnalyticsFilter) -> List[ClosedOutcome]:
        if (
            filters.min_confidence is not None
            and filters.max_confidence is not None
            and filters.min_confidence > filters.max_confidence
        ):
            raise ValidationError(
                "min_confidence must not exceed max_confidence",
                details={"min": filters.min_confidence, "max": filters.max_confidence},
            )

        rows = self.predictions.closed(
            model_variant=filters.model_variant,
            formula_version=filters.formula_version,
            sector=filters.sector,
            start=filters.start,
            end=filters.end,
            min_confidence=filters.min_confidence,
            max_confidence=filters.max_confidence,
        )
        return [to_outcome(p) for p in rows]

    def analyze(self, filters: Optional[AnalyticsFilter] = None) -> PerformanceReport:
        """
        Build the full report for the filtered predictions.

        Without an explicit formula version the configured formula is used.
        """
        filters = filters or AnalyticsFilter()
        if filters.formula_version is None:
            filters = replace(filters, formula_version=settings.confidence_formula)

        outcomes = self.load(filters)
        logger.info(f"Analyzing {len(outcomes)} closed {filters.formula_version} predictions")

        buckets = calibration(outcomes, self.bucket_edges, self.gap_threshold, self.min_count)
        for bucket in buckets:
            if bucket.miscalibrated:
                logger.warning(
                    f"Confidence bucket {bucket.label} miscalibrated: stated "
                    f"{bucket.mean_confidence * 100:.1f}% vs realized {bucket.accuracy:.1f}% over {bucket.count}"
                )

        by_model = self._grouped(outcomes, lambda o: o.model_variant)
        return PerformanceReport(
            filters=filters,
            formula_version=filters.formula_version,
            metrics=compute_metrics(outcomes),
            calibration=buckets,
            expected_calibration_error=expected_calibration_error(buckets),
            benchmark_return=benchmark_return(outcomes),
            by_sector=self._grouped(outcomes, lambda o: o.sector or "Unknown"),
            by_model=by_model,
            comparison=compare_models(by_model),
        )

    def _grouped(self, outcomes: List[ClosedOutcome], key) -> Dict[str, PerformanceMetrics]:
        groups: Dict[str, List[ClosedOutcome]] = {}
        for outcome in outcomes:
            groups.setdefault(key(outcome), []).append(outcome)
        return {name: compute_metrics(group) for name, group in sorted(groups.items())}
