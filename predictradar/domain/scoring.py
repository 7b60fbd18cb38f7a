"""
Confidence scoring for aggregated impact scores.

Two formula versions exist. ``v2-gated`` is the system of record: weak
signals are suppressed outright instead of producing a low-confidence
prediction. ``v1-legacy`` is retained only to reproduce historical backtests.
A scorer is bound to exactly one version so the two are never mixed within
a run.
"""

import math
from dataclasses import dataclass
from typing import Optional

from predictradar.utils.errors import ScoringError


FORMULA_V2_GATED = "v2-gated"
FORMULA_V1_LEGACY = "v1-legacy"
FORMULA_VERSIONS = (FORMULA_V2_GATED, FORMULA_V1_LEGACY)

DIRECTION_UP = "up"
DIRECTION_DOWN = "down"
DIRECTION_FLAT = "flat"

# v2-gated constants
MIN_SIGNAL_THRESHOLD = 0.15
V2_BASE_CONFIDENCE = 0.40
V2_STRENGTH_SLOPE = 0.70
V2_MAX_VOLATILITY_PENALTY = 0.10
V2_VOLATILITY_MULTIPLIER = 2.0
V2_MIN_CONFIDENCE = 0.40
V2_MAX_CONFIDENCE = 0.95

# v1-legacy constants
V1_SCORE_WEIGHT = 0.6
V1_STRENGTH_SLOPE = 0.95
V1_BASE_CONFIDENCE = 0.25
V1_MAX_VOLATILITY_PENALTY = 0.15
V1_VOLATILITY_MULTIPLIER = 3.0
V1_MIN_CONFIDENCE = 0.30
V1_MAX_CONFIDENCE = 0.95


@dataclass(frozen=True)
class ConfidenceResult:
    """A non-suppressed scoring outcome. Confidence is always within [0, 1]."""

    direction: str
    confidence: float
    signal_strength: float
    volatility_penalty: float
    formula_version: str


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def direction_from_score(score: float) -> Optional[str]:
    """Sign of the score as a direction; zero has none."""
    if score > 0:
        return DIRECTION_UP
    if score < 0:
        return DIRECTION_DOWN
    return None


def _volatility(volatility: Optional[float]) -> float:
    if volatility is None or not math.isfinite(volatility) or volatility <= 0:
        return 0.0
    return volatility


def gated_confidence(score: float, volatility: Optional[float] = None) -> Optional[ConfidenceResult]:
    """
    Current confidence formula.

    signal_strength = |score|; below MIN_SIGNAL_THRESHOLD nothing is returned.
    confidence = clamp(0.40 + strength * 0.70 - min(0.10, volatility * 2), 0.40, 0.95)
    """
    direction = direction_from_score(score)
    if direction is None:
        return None

    strength = abs(score)
    if strength < MIN_SIGNAL_THRESHOLD:
        return None

    penalty = min(V2_MAX_VOLATILITY_PENALTY, _volatility(volatility) * V2_VOLATILITY_MULTIPLIER)
    raw = V2_BASE_CONFIDENCE + strength * V2_STRENGTH_SLOPE - penalty
    return ConfidenceResult(
        direction=direction,
        confidence=clamp(raw, V2_MIN_CONFIDENCE, V2_MAX_CONFIDENCE),
        signal_strength=strength,
        volatility_penalty=penalty,
        formula_version=FORMULA_V2_GATED,
    )


def legacy_confidence(score: float, volatility: Optional[float] = None) -> Optional[ConfidenceResult]:
    """
    Historical confidence formula, kept for reproducing old backtests.

    confidence = clamp(|clamp(score, -1, 1) * 0.6| * 0.95 + 0.25 - min(0.15, volatility * 3), 0.30, 0.95)
    """
    direction = direction_from_score(score)
    if direction is None:
        return None

    strength = abs(clamp(score, -1.0, 1.0) * V1_SCORE_WEIGHT)
    penalty = min(V1_MAX_VOLATILITY_PENALTY, _volatility(volatility) * V1_VOLATILITY_MULTIPLIER)
    raw = strength * V1_STRENGTH_SLOPE + V1_BASE_CONFIDENCE - penalty
    return ConfidenceResult(
        direction=direction,
        confidence=clamp(raw, V1_MIN_CONFIDENCE, V1_MAX_CONFIDENCE),
        signal_strength=strength,
        volatility_penalty=penalty,
        formula_version=FORMULA_V1_LEGACY,
    )


_FORMULAS = {
    FORMULA_V2_GATED: gated_confidence,
    FORMULA_V1_LEGACY: legacy_confidence,
}


class ConfidenceScorer:
    """Scores aggregates with a single, fixed formula version."""

    def __init__(self, formula_version: str = FORMULA_V2_GATED):
        if formula_version not in _FORMULAS:
            raise ScoringError(f"Unknown confidence formula '{formula_version}'")
        self.formula_version = formula_version
        self._formula = _FORMULAS[formula_version]

    def score(self, score: float, volatility: Optional[float] = None) -> Optional[ConfidenceResult]:
        """Return a confidence result, or None when the prediction is suppressed."""
        if score is None or not math.isfinite(score):
            return None
        return self._formula(score, volatility)


def score_confidence(
    score: float,
    volatility: Optional[float] = None,
    formula_version: str = FORMULA_V2_GATED,
) -> Optional[ConfidenceResult]:
    """Functional shortcut around ConfidenceScorer."""
    return ConfidenceScorer(formula_version).score(score, volatility)


def classify_move(change_pct: float, flat_threshold_pct: float) -> str:
    """Direction of a percentage move, ``flat`` when below the materiality threshold."""
    if abs(change_pct) < flat_threshold_pct:
        return DIRECTION_FLAT
    return DIRECTION_UP if change_pct > 0 else DIRECTION_DOWN


def percent_change(baseline: float, current: float) -> float:
    """Percentage change from baseline to current."""
    if baseline is None or baseline <= 0:
        raise ScoringError(f"Invalid baseline price {baseline}")
    return (current - baseline) / baseline * 100.0
