"""
Market data prioritization scheduler.

Each cycle picks at most ``budget`` active entities to refresh, in three tiers:

0. entities blocking evaluation (a live prediction whose target has passed)
1. entities with no stored price yet
2. everything else, stalest first (never-fetched before fetched)

Quotes are requested one at a time through a RequestPacer. Failures are
counted per entity; reaching the threshold deactivates the entity until it
is manually reactivated. After the fetches, matured predictions of the
tier-0 entities that refreshed successfully are evaluated right away.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session
from loguru import logger

from predictradar.config import settings
from predictradar.db.models import Entity, PriceQuote
from predictradar.db.repositories import EntityRepository, QuoteRepository
from predictradar.services.evaluator import EvaluationReport, PredictionEvaluator
from predictradar.services.market_data import Quote, QuoteProviderChain, default_quote_chain
from predictradar.utils.datetime import utcnow
from predictradar.utils.rate_limit import RequestPacer


TIER_EVALUATION_BLOCKING = 0
TIER_NO_DATA = 1
TIER_STALE = 2


@dataclass(frozen=True)
class Selection:
    entity_id: int
    symbol: str
    tier: int


@dataclass
class FetchOutcome:
    """Result of one entity's fetch, applied to the store after the loop."""

    selection: Selection
    ok: bool
    fetched_at: datetime
    quote: Optional[Quote] = None
    provider: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CycleReport:
    selected: int = 0
    by_tier: Dict[int, int] = field(default_factory=lambda: {0: 0, 1: 0, 2: 0})
    fetched: int = 0
    failed: int = 0
    transient_failures: int = 0
    validation_failures: int = 0
    deactivated: List[str] = field(default_factory=list)
    evaluation: Optional[EvaluationReport] = None
    errors: List[str] = field(default_factory=list)

    def counts(self) -> Dict[str, object]:
        counts = {
            "selected": self.selected,
            "tier0_selected": self.by_tier[TIER_EVALUATION_BLOCKING],
            "tier1_selected": self.by_tier[TIER_NO_DATA],
            "tier2_selected": self.by_tier[TIER_STALE],
            "fetched": self.fetched,
            "failed": self.failed,
            "transient_failures": self.transient_failures,
            "validation_failures": self.validation_failures,
            "deactivated": len(self.deactivated),
        }
        if self.evaluation is not None:
            counts.update({f"evaluation_{k}": v for k, v in self.evaluation.counts().items()})
        return counts


class MarketDataScheduler:
    """Budgeted, tiered, paced quote refresh."""

    def __init__(
        self,
        db: Session,
        providers: Optional[QuoteProviderChain] = None,
        pacer: Optional[RequestPacer] = None,
        budget: Optional[int] = None,
        max_failures: Optional[int] = None,
        evaluator_factory: Optional[Callable[[Session], PredictionEvaluator]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.entities = EntityRepository(db)
        self.quotes = QuoteRepository(db)
        self.providers = providers or default_quote_chain()
        self.pacer = pacer or RequestPacer(settings.fetch_min_interval_seconds)
        self.budget = settings.fetch_budget if budget is None else budget
        self.max_failures = settings.max_consecutive_failures if max_failures is None else max_failures
        self.evaluator_factory = evaluator_factory or PredictionEvaluator
        self.clock = clock

        if self.budget < 0:
            raise ValueError("budget must be non-negative")

    def select_entities(self, now: Optional[datetime] = None, budget: Optional[int] = None) -> List[Selection]:
        """Fill the budget greedily from tier 0, then 1, then 2, without repeats."""
        now = now or self.clock()
        budget = self.budget if budget is None else budget
        selected: List[Selection] = []
        seen = set()

        tiers = (
            (TIER_EVALUATION_BLOCKING, lambda: self.entities.evaluation_blocking(now)),
            (TIER_NO_DATA, self.entities.without_quotes),
            (TIER_STALE, self.entities.by_staleness),
        )
        for tier, candidates in tiers:
            if len(selected) >= budget:
                break
            for entity in candidates():
                if len(selected) >= budget:
                    break
                if entity.id in seen:
                    continue
                seen.add(entity.id)
                selected.append(Selection(entity_id=entity.id, symbol=entity.symbol, tier=tier))

        return selected

    def fetch(self, selections: List[Selection], now: Optional[datetime] = None) -> List[FetchOutcome]:
        """Issue one paced quote request per selection, strictly in order.

        Outcomes are stamped with ``now`` when given, otherwise with the clock
        at the moment each response arrived.
        """
        outcomes: List[FetchOutcome] = []
        for selection in selections:
            self.pacer.wait()
            result = self.providers.fetch(selection.symbol)
            fetched_at = now or self.clock()
            outcomes.append(
                FetchOutcome(
                    selection=selection,
                    ok=result.ok,
                    fetched_at=fetched_at,
                    quote=result.quote,
                    provider=result.provider,
                    error_kind=result.error_kind,
                    error=result.error,
                )
            )
        return outcomes

    def apply(self, outcomes: List[FetchOutcome], report: CycleReport) -> List[int]:
        """
        Store quotes and update failure bookkeeping.

        Returns:
            Ids of tier-0 entities that refreshed successfully
        """
        unblocked: List[int] = []
        for outcome in outcomes:
            entity: Entity = self.entities.get_by_id(outcome.selection.entity_id)
            if outcome.ok:
                quote = outcome.quote
                self.quotes.add(
                    PriceQuote(
                        entity_id=entity.id,
                        price=quote.price,
                        change=quote.change,
                        change_percent=quote.change_percent,
                        high=quote.high,
                        low=quote.low,
                        open=quote.open,
                        previous_close=quote.previous_close,
                        fetched_at=outcome.fetched_at,
                        source=outcome.provider or settings.quote_source,
                    )
                )
                self.entities.record_fetch_success(entity, outcome.fetched_at)
                report.fetched += 1
                if outcome.selection.tier == TIER_EVALUATION_BLOCKING:
                    unblocked.append(entity.id)
                logger.debug(f"{entity.symbol}: ${quote.price:.2f}")
                continue

            report.failed += 1
            if outcome.error_kind == "validation":
                report.validation_failures += 1
            else:
                report.transient_failures += 1
            report.errors.append(f"{entity.symbol}: {outcome.error}")

            if self.entities.record_fetch_failure(entity, outcome.fetched_at, outcome.error, self.max_failures):
                report.deactivated.append(entity.symbol)

        self.db.flush()
        return unblocked

    def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """
        Select, fetch, persist, then evaluate whatever the refresh unblocked.

        An explicit ``now`` stamps the whole cycle: selection, fetched_at and
        evaluation time.
        """
        report = CycleReport()
        selections = self.select_entities(now)
        report.selected = len(selections)
        for selection in selections:
            report.by_tier[selection.tier] += 1

        logger.info(
            f"Fetching {report.selected} quotes "
            f"(tier0={report.by_tier[0]}, tier1={report.by_tier[1]}, tier2={report.by_tier[2]})"
        )

        outcomes = self.fetch(selections, now)
        unblocked = self.apply(outcomes, report)

        if unblocked:
            evaluator = self.evaluator_factory(self.db)
            report.evaluation = evaluator.run(now=now or self.clock(), entity_ids=unblocked)
            report.errors.extend(report.evaluation.errors)

        logger.info(
            f"Fetched {report.fetched}, failed {report.failed}, deactivated {len(report.deactivated)}"
        )
        return report
