"""
Signal ingestion and aggregation pass.

Runs each configured ingestion adapter, validates and attributes the items it
returns, stores them against their entities (discovering new entities on the
way), and recomputes the aggregated impact of every entity that received new
items. A misconfigured adapter only loses its own contribution; a malformed
item only loses itself.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from sqlalchemy.orm import Session
from loguru import logger

from predictradar.config import settings
from predictradar.db.models import AggregatedImpact
from predictradar.db.repositories import EntityRepository, SignalRepository
from predictradar.domain.signals import (
    SignalItem,
    aggregate_signals,
    group_by_symbol,
    resolve_source,
    validate_signal_item,
)
from predictradar.utils.datetime import utcnow
from predictradar.utils.errors import ConfigurationError, ValidationError


class IngestionAdapter(Protocol):
    """Produces signal items. Raises ConfigurationError when it cannot run at all."""

    name: str

    def fetch_signals(self) -> Iterable:
        ...


class JsonFileAdapter:
    """
    Reads signal items from a JSON file holding a list of item objects.

    The file is the hand-off point for external classifiers and scrapers.
    """

    def __init__(self, path: str, name: Optional[str] = None):
        self.path = Path(path)
        self.name = name or self.path.stem

    def fetch_signals(self) -> List[dict]:
        if not self.path.is_file():
            raise ConfigurationError(f"Signal feed not found: {self.path}", details={"path": str(self.path)})
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Signal feed {self.path} could not be read: {type(e).__name__}: {e}",
                details={"path": str(self.path)},
            ) from e
        if isinstance(payload, dict):
            payload = payload.get("items", [])
        if not isinstance(payload, list):
            raise ConfigurationError(f"Signal feed {self.path} must contain a list of items")
        return payload


def configured_adapters() -> List[IngestionAdapter]:
    """One JsonFileAdapter per path in SIGNAL_FEEDS."""
    return [JsonFileAdapter(p.strip()) for p in settings.signal_feeds.split(",") if p.strip()]


class StaticAdapter:
    """Adapter over an in-memory list of items or adapter-shaped dicts."""

    def __init__(self, name: str, records: Iterable):
        self.name = name
        self.records = list(records)

    def fetch_signals(self) -> List:
        return list(self.records)


@dataclass
class IngestionReport:
    adapters_run: int = 0
    items_received: int = 0
    items_stored: int = 0
    items_rejected: int = 0
    entities_discovered: int = 0
    impacts_computed: int = 0
    failed_adapters: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def counts(self) -> Dict[str, object]:
        return {
            "adapters_run": self.adapters_run,
            "items_received": self.items_received,
            "items_stored": self.items_stored,
            "items_rejected": self.items_rejected,
            "entities_discovered": self.entities_discovered,
            "impacts_computed": self.impacts_computed,
            "failed_adapters": list(self.failed_adapters),
        }


class SignalIngestionService:
    """Collects adapter output and recomputes aggregates."""

    def __init__(
        self,
        db: Session,
        adapters: Sequence[IngestionAdapter],
        source_weights: Optional[Dict[str, float]] = None,
        unknown_source_weight: Optional[float] = None,
        model_variants: Optional[Dict[str, List[str]]] = None,
        lookback: Optional[timedelta] = None,
    ):
        self.db = db
        self.adapters = list(adapters)
        self.entities = EntityRepository(db)
        self.signals = SignalRepository(db)
        self.source_weights = settings.source_weight_map if source_weights is None else source_weights
        self.unknown_source_weight = (
            settings.unknown_source_weight if unknown_source_weight is None else unknown_source_weight
        )
        self.model_variants = model_variants or settings.model_variant_map
        self.lookback = lookback or timedelta(hours=settings.signal_lookback_hours)

    def _coerce(self, record) -> SignalItem:
        if isinstance(record, SignalItem):
            return record
        if isinstance(record, dict):
            return SignalItem.from_dict(record)
        raise ValidationError(f"Unsupported signal record type {type(record).__name__}")

    def collect(self, report: IngestionReport) -> List[SignalItem]:
        """Run every adapter and return the valid, source-attributed items."""
        accepted: List[SignalItem] = []

        for adapter in self.adapters:
            try:
                records = list(adapter.fetch_signals())
            except ConfigurationError as e:
                report.failed_adapters.append(adapter.name)
                report.errors.append(f"{adapter.name}: configuration error: {e.message}")
                logger.error(f"Adapter {adapter.name} skipped: {e.message}")
                continue
            except Exception as e:
                report.failed_adapters.append(adapter.name)
                report.errors.append(f"{adapter.name}: {type(e).__name__}: {e}")
                logger.exception(f"Adapter {adapter.name} crashed, skipped")
                continue

            report.adapters_run += 1
            report.items_received += len(records)

            for record in records:
                try:
                    item = validate_signal_item(
                        resolve_source(self._coerce(record), self.source_weights, self.unknown_source_weight)
                    )
                except ValidationError as e:
                    report.items_rejected += 1
                    report.errors.append(f"{adapter.name}: {e.message}")
                    logger.warning(f"Rejected signal from {adapter.name}: {e.message}")
                    continue
                accepted.append(item)

            logger.info(f"Adapter {adapter.name}: {len(records)} records")

        return accepted

    def store(self, items: List[SignalItem], report: IngestionReport) -> List[int]:
        """Persist items under each entity they name. Returns the touched entity ids."""
        touched: List[int] = []
        for symbol, symbol_items in group_by_symbol(items).items():
            existed = self.entities.get_by_symbol(symbol) is not None
            entity = self.entities.get_or_create(symbol)
            if not existed:
                report.entities_discovered += 1
            report.items_stored += self.signals.add_items(entity, symbol_items)
            touched.append(entity.id)
        return touched

    def aggregate(self, entity_ids: List[int], now: datetime, report: IngestionReport) -> List[AggregatedImpact]:
        """Recompute each touched entity's impact for every model variant."""
        since = now - self.lookback
        impacts: List[AggregatedImpact] = []

        for entity_id in entity_ids:
            entity = self.entities.get_by_id(entity_id)
            for variant, channels in self.model_variants.items():
                items = self.signals.items_for_entity(entity, since, now, channels)
                result = aggregate_signals(items, entity.symbol, since, now)
                impacts.append(
                    self.signals.add_impact(
                        AggregatedImpact(
                            entity_id=entity.id,
                            model_variant=variant,
                            window_start=since,
                            window_end=now,
                            score=result.score,
                            item_count=result.item_count,
                            total_weight=result.total_weight,
                            computed_at=now,
                        )
                    )
                )
                report.impacts_computed += 1
        return impacts

    def run(self, now: Optional[datetime] = None) -> IngestionReport:
        now = now or utcnow()
        report = IngestionReport()

        items = self.collect(report)
        touched = self.store(items, report)
        self.aggregate(touched, now, report)

        logger.info(
            f"Ingested {report.items_stored} items for {len(touched)} entities, "
            f"rejected {report.items_rejected}, failed adapters {len(report.failed_adapters)}"
        )
        return report
