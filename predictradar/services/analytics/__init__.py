"""Performance analytics over closed predictions."""
from .engine import AnalyticsFilter, ModelComparison, PerformanceAnalyticsEngine, PerformanceReport
from .metrics import (
    CalibrationBucket,
    ClosedOutcome,
    PerformanceMetrics,
    calibration,
    compute_metrics,
    expected_calibration_error,
    max_drawdown,
    sharpe_ratio,
)

__all__ = [
    "AnalyticsFilter",
    "ModelComparison",
    "PerformanceAnalyticsEngine",
    "PerformanceReport",
    "CalibrationBucket",
    "ClosedOutcome",
    "PerformanceMetrics",
    "calibration",
    "compute_metrics",
    "expected_calibration_error",
    "max_drawdown",
    "sharpe_ratio",
]
