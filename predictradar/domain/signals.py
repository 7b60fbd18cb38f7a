"""
Signal items and the weighted aggregation that turns them into one impact score.

All functions are pure: they never touch the database and never mutate the
items they are given.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from predictradar.utils.datetime import to_naive_utc
from predictradar.utils.errors import ValidationError


SENTIMENT_POSITIVE = "positive"
SENTIMENT_NEGATIVE = "negative"
SENTIMENT_NEUTRAL = "neutral"

DIRECTION_VALUES = {
    SENTIMENT_POSITIVE: 1.0,
    SENTIMENT_NEGATIVE: -1.0,
    SENTIMENT_NEUTRAL: 0.0,
}

CHANNEL_NEWS = "news"
CHANNEL_SOCIAL = "social"
VALID_CHANNELS = {CHANNEL_NEWS, CHANNEL_SOCIAL}

UNKNOWN_SOURCE_ID = "unknown"


@dataclass(frozen=True)
class SignalItem:
    """One source's opinion about one or more entities."""

    source_id: Optional[str]
    entity_symbols: Tuple[str, ...]
    sentiment: str
    confidence: float
    source_weight: float
    timestamp: datetime
    engagement_weight: Optional[float] = None
    channel: str = CHANNEL_NEWS

    @property
    def direction_value(self) -> float:
        return DIRECTION_VALUES[self.sentiment]

    @property
    def effective_weight(self) -> float:
        """Source trust weight scaled by engagement, when the adapter supplied one."""
        engagement = 1.0 if self.engagement_weight is None else self.engagement_weight
        return self.source_weight * engagement

    @classmethod
    def from_dict(cls, data: Dict) -> "SignalItem":
        """
        Build an item from the adapter record shape.

        Accepts both ``entitySymbols``/``sourceWeight`` style keys and their
        snake_case equivalents.
        """
        def pick(*keys, default=None):
            for key in keys:
                if key in data:
                    return data[key]
            return default

        symbols = pick("entity_symbols", "entitySymbols", default=())
        if isinstance(symbols, str):
            symbols = (symbols,)

        try:
            timestamp = to_naive_utc(pick("timestamp"))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid signal timestamp: {e}", details={"record": data}) from e

        try:
            return cls(
                source_id=pick("source_id", "sourceId"),
                entity_symbols=tuple(str(s).strip().upper() for s in symbols),
                sentiment=str(pick("sentiment", default="")).lower(),
                confidence=float(pick("confidence", default=float("nan"))),
                source_weight=float(pick("source_weight", "sourceWeight", default=float("nan"))),
                timestamp=timestamp,
                engagement_weight=pick("engagement_weight", "engagementWeight"),
                channel=pick("channel", default=CHANNEL_NEWS),
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Malformed signal record: {e}", details={"record": data}) from e


@dataclass
class AggregatedImpactResult:
    """Aggregate for one entity and window. Recomputed, never updated."""

    entity_symbol: str
    window_start: Optional[datetime]
    window_end: Optional[datetime]
    score: float
    item_count: int
    total_weight: float
    sources: Dict[str, int] = field(default_factory=dict)


def _is_finite_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def validate_signal_item(item: SignalItem) -> SignalItem:
    """
    Check an item is usable for aggregation.

    Raises:
        ValidationError: if any field would break the score bounds
    """
    if item.sentiment not in DIRECTION_VALUES:
        raise ValidationError(f"Unknown sentiment '{item.sentiment}'", details={"source_id": item.source_id})
    if not item.entity_symbols or not all(s and s.strip() for s in item.entity_symbols):
        raise ValidationError("Signal item names no entity", details={"source_id": item.source_id})
    if not _is_finite_number(item.confidence) or not 0.0 <= item.confidence <= 1.0:
        raise ValidationError(
            f"Signal confidence {item.confidence} outside [0, 1]",
            details={"source_id": item.source_id},
        )
    if not _is_finite_number(item.source_weight) or item.source_weight < 0:
        raise ValidationError(
            f"Source weight {item.source_weight} must be a non-negative number",
            details={"source_id": item.source_id},
        )
    if item.engagement_weight is not None and (
        not _is_finite_number(item.engagement_weight) or item.engagement_weight < 0
    ):
        raise ValidationError(
            f"Engagement weight {item.engagement_weight} must be a non-negative number",
            details={"source_id": item.source_id},
        )
    if item.channel not in VALID_CHANNELS:
        raise ValidationError(f"Unknown channel '{item.channel}'", details={"source_id": item.source_id})
    if item.timestamp is None:
        raise ValidationError("Signal item has no timestamp", details={"source_id": item.source_id})
    return item


def resolve_source(
    item: SignalItem,
    source_weights: Optional[Dict[str, float]] = None,
    unknown_weight: float = 0.3,
) -> SignalItem:
    """
    Attribute an item to its source and apply the registered trust weight.

    Items without a source id go to the explicit unknown bucket with a
    conservative default weight. Returns a new item; the input is untouched.
    """
    source_weights = source_weights or {}
    source_id = (item.source_id or "").strip()

    if not source_id:
        return replace(item, source_id=UNKNOWN_SOURCE_ID, source_weight=unknown_weight)

    if source_id in source_weights:
        return replace(item, source_id=source_id, source_weight=source_weights[source_id])

    return replace(item, source_id=source_id)


def aggregate_signals(
    items: Iterable[SignalItem],
    entity_symbol: str,
    window_start: Optional[datetime] = None,
    window_end: Optional[datetime] = None,
) -> AggregatedImpactResult:
    """
    Merge per-source items into one weighted impact score for an entity.

    score = sum(direction x weight x confidence) / sum(weight)

    Items outside [window_start, window_end] or not naming the entity are
    ignored. A total weight of zero yields a score of exactly 0.0.
    """
    symbol = entity_symbol.upper()
    weighted_sum = 0.0
    total_weight = 0.0
    count = 0
    sources: Dict[str, int] = {}

    for item in items:
        if symbol not in (s.upper() for s in item.entity_symbols):
            continue
        if window_start is not None and item.timestamp < window_start:
            continue
        if window_end is not None and item.timestamp > window_end:
            continue

        weight = item.effective_weight
        weighted_sum += item.direction_value * weight * item.confidence
        total_weight += weight
        count += 1
        source = item.source_id or UNKNOWN_SOURCE_ID
        sources[source] = sources.get(source, 0) + 1

    score = weighted_sum / total_weight if total_weight > 0 else 0.0
    # Guard against float drift past the bounds
    score = max(-1.0, min(1.0, score))

    return AggregatedImpactResult(
        entity_symbol=symbol,
        window_start=window_start,
        window_end=window_end,
        score=score,
        item_count=count,
        total_weight=total_weight,
        sources=sources,
    )


def group_by_symbol(items: Iterable[SignalItem]) -> Dict[str, List[SignalItem]]:
    """Index items under every distinct entity symbol they name."""
    grouped: Dict[str, List[SignalItem]] = {}
    for item in items:
        for symbol in dict.fromkeys(s.upper() for s in item.entity_symbols):
            grouped.setdefault(symbol, []).append(item)
    return grouped
