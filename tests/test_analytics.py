"""
Performance analytics tests.

Covers the pure metric functions and the engine's filtering, calibration
flagging and model comparison over closed predictions.
"""

import math
from datetime import datetime, timedelta

import pytest

from predictradar.services.analytics import (
    AnalyticsFilter,
    ClosedOutcome,
    PerformanceAnalyticsEngine,
    calibration,
    compute_metrics,
    expected_calibration_error,
    max_drawdown,
    sharpe_ratio,
)
from predictradar.services.analytics.metrics import benchmark_return, monthly_returns, streaks
from predictradar.utils.errors import ValidationError

from conftest import NOW

EDGES = [0.5, 0.6, 0.7, 0.8, 0.95]


def outcome(
    change: float,
    direction: str = "up",
    confidence: float = 0.7,
    correct: bool = None,
    target_at: datetime = NOW,
    model_variant: str = "fundamentals",
) -> ClosedOutcome:
    if correct is None:
        correct = (change > 0) == (direction == "up")
    return ClosedOutcome(
        prediction_id=0,
        symbol="TEST",
        sector=None,
        model_variant=model_variant,
        formula_version="v2-gated",
        predicted_direction=direction,
        confidence=confidence,
        actual_change=change,
        correct=correct,
        target_at=target_at,
    )


class TestReturnMetrics:
    def test_max_drawdown_from_running_peak(self):
        assert max_drawdown([2, -1, 3, -5, 1]) == pytest.approx(5.0)

    def test_max_drawdown_counts_losing_start(self):
        assert max_drawdown([-2, -1]) == pytest.approx(3.0)

    def test_max_drawdown_of_gains_is_zero(self):
        assert max_drawdown([1, 2, 3]) == 0.0
        assert max_drawdown([]) == 0.0

    def test_sharpe_uses_sample_std(self):
        assert sharpe_ratio([1, 2, 3]) == pytest.approx(2 * math.sqrt(252))

    @pytest.mark.parametrize("returns", [[], [1.5], [2.0, 2.0, 2.0]])
    def test_sharpe_undefined_is_zero(self, returns):
        assert sharpe_ratio(returns) == 0.0

    def test_down_call_return_is_negated(self):
        assert outcome(-3.0, direction="down").trade_return == pytest.approx(3.0)

    def test_streaks(self):
        assert streaks([True, True, False, True, True, True, False, True]) == (1, 3)
        assert streaks([]) == (0, 0)

    def test_monthly_returns(self):
        outcomes = [
            outcome(1.0, target_at=datetime(2025, 9, 30)),
            outcome(2.0, target_at=datetime(2025, 10, 1)),
            outcome(-0.5, target_at=datetime(2025, 10, 15)),
        ]
        assert monthly_returns(outcomes) == {"2025-09": 1.0, "2025-10": pytest.approx(1.5)}

    def test_compute_metrics(self):
        outcomes = [outcome(2.0), outcome(-1.0), outcome(3.0, direction="down")]

        metrics = compute_metrics(outcomes)

        assert metrics.total_predictions == 3
        assert metrics.total_return == pytest.approx(-2.0)
        assert metrics.winning_trades == 1
        assert metrics.losing_trades == 2
        assert metrics.win_rate == pytest.approx(100 / 3)
        assert metrics.avg_loss == pytest.approx(2.0)
        assert metrics.best_trade == pytest.approx(2.0)
        assert metrics.worst_trade == pytest.approx(-3.0)
        assert metrics.current_streak == 0
        assert metrics.best_streak == 1

    def test_empty_metrics(self):
        metrics = compute_metrics([])
        assert metrics.total_predictions == 0
        assert metrics.to_dict()["period"]["start_date"] is None

    def test_benchmark_ignores_direction(self):
        assert benchmark_return([outcome(2.0, direction="down"), outcome(-1.0)]) == pytest.approx(0.5)


class TestCalibration:
    def test_overconfident_bucket_is_flagged(self):
        outcomes = [outcome(1.0, confidence=0.70, correct=i < 9) for i in range(20)]

        (bucket,) = calibration(outcomes, EDGES)

        assert bucket.label == "70-80%"
        assert bucket.count == 20
        assert bucket.accuracy == pytest.approx(45.0)
        assert bucket.gap == pytest.approx(-25.0)
        assert bucket.miscalibrated

    def test_small_buckets_are_not_flagged(self):
        outcomes = [outcome(1.0, confidence=0.9, correct=False) for _ in range(4)]
        (bucket,) = calibration(outcomes, EDGES, min_count=5)
        assert not bucket.miscalibrated

    def test_bucket_edges(self):
        outcomes = [outcome(1.0, confidence=c) for c in (0.6, 0.95, 0.4)]

        buckets = calibration(outcomes, EDGES)

        assert [(b.label, b.count) for b in buckets] == [("60-70%", 1), ("80-95%", 1)]

    def test_expected_calibration_error_is_count_weighted(self):
        outcomes = [outcome(1.0, confidence=0.55, correct=True) for _ in range(3)]
        outcomes += [outcome(1.0, confidence=0.75, correct=False)]

        buckets = calibration(outcomes, EDGES)

        # (3 * 45 + 1 * 75) / 4
        assert expected_calibration_error(buckets) == pytest.approx(52.5)
        assert expected_calibration_error([]) == 0.0


@pytest.fixture
def engine_(db):
    return PerformanceAnalyticsEngine(db, bucket_edges=EDGES, gap_threshold=10.0, min_count=5)


@pytest.fixture
def history(entity_factory, prediction_factory):
    """Closed predictions across two models, two sectors and both formulas."""
    tech = entity_factory("AAPL", sector="Technology")
    energy = entity_factory("XOM", sector="Energy")
    start = NOW - timedelta(days=10)

    rows = [
        (tech, "fundamentals", "up", 0.72, 2.0, True),
        (tech, "fundamentals", "up", 0.74, -1.0, False),
        (energy, "fundamentals", "down", 0.66, -1.5, True),
        (tech, "hype", "up", 0.81, -2.0, False),
        (energy, "hype", "up", 0.55, 0.2, False),
    ]
    for i, (entity, variant, direction, conf, change, correct) in enumerate(rows):
        prediction_factory(
            entity,
            direction=direction,
            confidence=conf,
            model_variant=variant,
            target_at=start + timedelta(days=i),
            closed=True,
            actual_change=change,
            correct=correct,
        )
    prediction_factory(
        tech,
        formula_version="v1-legacy",
        target_at=start,
        closed=True,
        actual_change=5.0,
        correct=True,
    )
    prediction_factory(tech)
    return tech, energy


class TestAnalyticsEngine:
    def test_report_covers_one_formula(self, engine_, history):
        report = engine_.analyze()

        assert report.formula_version == "v2-gated"
        assert report.metrics.total_predictions == 5
        assert report.metrics.accuracy == pytest.approx(40.0)

    def test_legacy_formula_on_request(self, engine_, history):
        report = engine_.analyze(AnalyticsFilter(formula_version="v1-legacy"))
        assert report.metrics.total_predictions == 1

    def test_filter_by_model(self, engine_, history):
        report = engine_.analyze(AnalyticsFilter(model_variant="hype"))

        assert report.metrics.total_predictions == 2
        assert report.comparison is None

    def test_filter_by_sector(self, engine_, history):
        report = engine_.analyze(AnalyticsFilter(sector="Energy"))
        assert set(report.by_sector) == {"Energy"}
        assert report.metrics.total_predictions == 2

    def test_filter_by_confidence_and_date(self, engine_, history):
        report = engine_.analyze(
            AnalyticsFilter(min_confidence=0.7, max_confidence=0.8, start=NOW - timedelta(days=10))
        )
        assert report.metrics.total_predictions == 2

    def test_model_comparison_winner(self, engine_, history):
        report = engine_.analyze()

        assert report.comparison.winner == "fundamentals"
        assert report.comparison.difference == pytest.approx(100 * 2 / 3)

    def test_model_comparison_tie(self, engine_, entity_factory, prediction_factory):
        entity = entity_factory("MSFT")
        for variant in ("fundamentals", "hype"):
            prediction_factory(entity, model_variant=variant, target_at=NOW, closed=True, actual_change=1.0, correct=True)

        assert engine_.analyze().comparison.winner == "tie"

    def test_grouped_by_sector(self, engine_, history):
        report = engine_.analyze()
        assert set(report.by_sector) == {"Energy", "Technology"}
        assert report.by_sector["Technology"].total_predictions == 3

    def test_report_serializes(self, engine_, history):
        data = engine_.analyze().to_dict()

        assert data["formula_version"] == "v2-gated"
        assert data["comparison"]["winner"] == "fundamentals"
        assert "buckets" in data["calibration"]

    def test_inverted_confidence_range_is_rejected(self, engine_):
        with pytest.raises(ValidationError):
            engine_.analyze(AnalyticsFilter(min_confidence=0.8, max_confidence=0.6))

    def test_invalid_bucket_edges(self, db):
        with pytest.raises(ValidationError):
            PerformanceAnalyticsEngine(db, bucket_edges=[0.9, 0.5])

    def test_empty_history(self, engine_):
        report = engine_.analyze()
        assert report.metrics.total_predictions == 0
        assert report.calibration == []
