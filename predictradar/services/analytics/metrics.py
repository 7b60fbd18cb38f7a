"""
Performance metrics for closed predictions.

Provides:
- Returns (total, average win/loss, win rate, accuracy)
- Risk measures (max drawdown, annualized Sharpe-like ratio)
- Confidence calibration (per-bucket gap, expected calibration error)
- Streaks and monthly returns

Every function here is pure. A prediction's return is its actual change when
it called UP and the negated actual change when it called DOWN.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
import math

import numpy as np

from predictradar.domain.scoring import DIRECTION_UP

TRADING_DAYS_PER_YEAR = 252


@dataclass(frozen=True)
class ClosedOutcome:
    """The fields of a closed prediction that analytics needs."""

    prediction_id: int
    symbol: str
    sector: Optional[str]
    model_variant: str
    formula_version: str
    predicted_direction: str
    confidence: float
    actual_change: float
    correct: bool
    target_at: datetime

    @property
    def trade_return(self) -> float:
        return prediction_return(self.predicted_direction, self.actual_change)


@dataclass
class CalibrationBucket:
    lower: float
    upper: float
    count: int
    correct: int
    mean_confidence: float
    accuracy: float
    gap: float
    miscalibrated: bool

    @property
    def label(self) -> str:
        return f"{self.lower * 100:.0f}-{self.upper * 100:.0f}%"

    def to_dict(self) -> Dict:
        return {
            "bucket": self.label,
            "count": self.count,
            "correct": self.correct,
            "mean_confidence": round(self.mean_confidence * 100, 1),
            "accuracy": round(self.accuracy, 1),
            "gap": round(self.gap, 1),
            "miscalibrated": self.miscalibrated,
        }


@dataclass
class PerformanceMetrics:
    """Headline numbers for one set of closed predictions."""

    total_predictions: int
    total_return: float
    winning_trades: int
    losing_trades: int
    win_rate: float
    avg_win: float
    avg_loss: float
    accuracy: float
    max_drawdown: float
    sharpe_ratio: float
    best_trade: float
    worst_trade: float
    current_streak: int
    best_streak: int
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    monthly_returns: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "returns": {
                "total_return": round(self.total_return, 2),
                "best_trade": round(self.best_trade, 2),
                "worst_trade": round(self.worst_trade, 2),
            },
            "risk": {
                "max_drawdown": round(self.max_drawdown, 2),
                "sharpe_ratio": round(self.sharpe_ratio, 3),
            },
            "trades": {
                "total_predictions": self.total_predictions,
                "winning_trades": self.winning_trades,
                "losing_trades": self.losing_trades,
                "win_rate": round(self.win_rate, 1),
                "avg_win": round(self.avg_win, 2),
                "avg_loss": round(self.avg_loss, 2),
                "accuracy": round(self.accuracy, 1),
            },
            "streaks": {
                "current": self.current_streak,
                "best": self.best_streak,
            },
            "period": {
                "start_date": self.start_date.isoformat() if self.start_date else None,
                "end_date": self.end_date.isoformat() if self.end_date else None,
            },
            "monthly_returns": {k: round(v, 2) for k, v in self.monthly_returns.items()},
        }


def prediction_return(predicted_direction: str, actual_change: float) -> float:
    return actual_change if predicted_direction == DIRECTION_UP else -actual_change


def max_drawdown(returns: Sequence[float]) -> float:
    """
    Largest fall of the cumulative return from its running peak.

    The running peak starts at 0, so a losing first trade already counts.
    """
    if not returns:
        return 0.0
    cumulative = np.cumsum(np.asarray(returns, dtype=float))
    peaks = np.maximum.accumulate(np.concatenate(([0.0], cumulative)))[1:]
    return float(np.max(peaks - cumulative))


def sharpe_ratio(returns: Sequence[float]) -> float:
    """Mean over sample standard deviation, annualized with sqrt(252). 0 when undefined."""
    if len(returns) < 2:
        return 0.0
    values = np.asarray(returns, dtype=float)
    std = float(np.std(values, ddof=1))
    if std == 0 or not math.isfinite(std):
        return 0.0
    return float(np.mean(values)) / std * math.sqrt(TRADING_DAYS_PER_YEAR)


def streaks(correct_flags: Sequence[bool]) -> Tuple[int, int]:
    """(current, best) runs of correct calls, flags in chronological order."""
    best = 0
    run = 0
    for flag in correct_flags:
        if flag:
            run += 1
            best = max(best, run)
        else:
            run = 0
    return run, best


def monthly_returns(outcomes: Sequence[ClosedOutcome]) -> Dict[str, float]:
    """Summed returns keyed by target month (YYYY-MM), in month order."""
    months: Dict[str, float] = {}
    for outcome in outcomes:
        key = outcome.target_at.strftime("%Y-%m")
        months[key] = months.get(key, 0.0) + outcome.trade_return
    return dict(sorted(months.items()))


def compute_metrics(outcomes: Sequence[ClosedOutcome]) -> PerformanceMetrics:
    """Headline metrics. Outcomes must be in chronological target order."""
    if not outcomes:
        return PerformanceMetrics(
            total_predictions=0,
            total_return=0.0,
            winning_trades=0,
            losing_trades=0,
            win_rate=0.0,
            avg_win=0.0,
            avg_loss=0.0,
            accuracy=0.0,
            max_drawdown=0.0,
            sharpe_ratio=0.0,
            best_trade=0.0,
            worst_trade=0.0,
            current_streak=0,
            best_streak=0,
        )

    returns = [o.trade_return for o in outcomes]
    wins = [r for r in returns if r > 0]
    losses = [r for r in returns if r < 0]
    current, best = streaks([o.correct for o in outcomes])

    return PerformanceMetrics(
        total_predictions=len(outcomes),
        total_return=float(np.sum(returns)),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / len(returns) * 100,
        avg_win=float(np.mean(wins)) if wins else 0.0,
        avg_loss=abs(float(np.mean(losses))) if losses else 0.0,
        accuracy=sum(1 for o in outcomes if o.correct) / len(outcomes) * 100,
        max_drawdown=max_drawdown(returns),
        sharpe_ratio=sharpe_ratio(returns),
        best_trade=max(returns),
        worst_trade=min(returns),
        current_streak=current,
        best_streak=best,
        start_date=outcomes[0].target_at,
        end_date=outcomes[-1].target_at,
        monthly_returns=monthly_returns(outcomes),
    )


def calibration(
    outcomes: Sequence[ClosedOutcome],
    edges: Sequence[float],
    gap_threshold: float = 10.0,
    min_count: int = 5,
) -> List[CalibrationBucket]:
    """
    Stated confidence against realized accuracy per confidence bucket.

    Buckets are half-open ``[lower, upper)`` except the last, which includes
    its upper edge. Gap is realized accuracy minus mean stated confidence, in
    percentage points; negative means overconfident. Empty buckets are left out.
    """
    buckets: List[CalibrationBucket] = []
    last = len(edges) - 2

    for i in range(len(edges) - 1):
        lower, upper = edges[i], edges[i + 1]
        members = [
            o for o in outcomes
            if lower <= o.confidence < upper or (i == last and o.confidence == upper)
        ]
        if not members:
            continue

        correct = sum(1 for o in members if o.correct)
        mean_confidence = float(np.mean([o.confidence for o in members]))
        accuracy = correct / len(members) * 100
        gap = accuracy - mean_confidence * 100
        buckets.append(
            CalibrationBucket(
                lower=lower,
                upper=upper,
                count=len(members),
                correct=correct,
                mean_confidence=mean_confidence,
                accuracy=accuracy,
                gap=gap,
                miscalibrated=len(members) >= min_count and abs(gap) >= gap_threshold,
            )
        )

    return buckets


def expected_calibration_error(buckets: Sequence[CalibrationBucket]) -> float:
    """Count-weighted mean absolute gap, in percentage points."""
    total = sum(b.count for b in buckets)
    if total == 0:
        return 0.0
    return sum(b.count * abs(b.gap) for b in buckets) / total


def benchmark_return(outcomes: Sequence[ClosedOutcome]) -> float:
    """Buy-and-hold baseline: the mean actual change, ignoring the predicted direction."""
    if not outcomes:
        return 0.0
    return float(np.mean([o.actual_change for o in outcomes]))
