"""
Market data prioritization scheduler tests.

Budgeted tier selection, paced sequential fetching, failure bookkeeping with
deactivation, and the evaluation that follows a tier-0 refresh.
"""

from datetime import timedelta

import pytest

from predictradar.db.models import PriceQuote
from predictradar.db.repositories import EntityRepository
from predictradar.services.market_data import QuoteProviderChain
from predictradar.services.scheduler import (
    TIER_EVALUATION_BLOCKING,
    TIER_NO_DATA,
    TIER_STALE,
    MarketDataScheduler,
)
from predictradar.utils.errors import RecordNotFoundError

from conftest import NOW, FakeQuoteStrategy


class ExplodingStrategy(FakeQuoteStrategy):
    """Raises instead of returning a failure for the scripted symbols."""

    def __init__(self, exploding, **kwargs):
        super().__init__(**kwargs)
        self.exploding = set(exploding)

    def fetch(self, symbol):
        if symbol in self.exploding:
            self.calls.append(symbol)
            raise RuntimeError("provider SDK blew up")
        return super().fetch(symbol)


def make_scheduler(db, strategy, pacer, budget=10, max_failures=5):
    return MarketDataScheduler(
        db,
        providers=QuoteProviderChain([strategy]),
        pacer=pacer,
        budget=budget,
        max_failures=max_failures,
        clock=lambda: NOW,
    )


class TestSelection:
    """Tiered, greedy, budget-bounded selection."""

    def test_blocking_entities_come_first(self, db, entity_factory, quote_factory, prediction_factory, strategy, pacer):
        blocking = []
        for i in range(3):
            entity = entity_factory(f"BLK{i}")
            quote_factory(entity, 10.0, fetched_at=NOW - timedelta(hours=1))
            prediction_factory(entity, target_at=NOW - timedelta(minutes=10 * (i + 1)))
            blocking.append(entity)
        for i in range(20):
            entity = entity_factory(f"STL{i:02d}")
            quote_factory(entity, 10.0, fetched_at=NOW - timedelta(hours=2))
            entity.last_fetch_at = NOW - timedelta(minutes=100 - i)
        db.flush()

        selections = make_scheduler(db, strategy, pacer, budget=10).select_entities(NOW)

        tiers = [s.tier for s in selections]
        assert len(selections) == 10
        assert tiers.count(TIER_EVALUATION_BLOCKING) == 3
        assert tiers.count(TIER_STALE) == 7
        # oldest overdue target first
        assert [s.symbol for s in selections[:3]] == ["BLK2", "BLK1", "BLK0"]
        # stalest first within tier 2
        assert [s.symbol for s in selections[3:6]] == ["STL00", "STL01", "STL02"]

    def test_entities_without_quotes_precede_stale_ones(self, db, entity_factory, quote_factory, strategy, pacer):
        fetched = entity_factory("OLD", last_fetch_at=NOW - timedelta(days=1))
        quote_factory(fetched, 5.0, fetched_at=NOW - timedelta(days=1))
        fresh = entity_factory("NEW")

        selections = make_scheduler(db, strategy, pacer).select_entities(NOW)

        assert [(s.symbol, s.tier) for s in selections] == [("NEW", TIER_NO_DATA), ("OLD", TIER_STALE)]
        assert fresh.id == selections[0].entity_id

    def test_never_fetched_before_fetched_in_stale_tier(self, db, entity_factory, quote_factory, strategy, pacer):
        a = entity_factory("AAA", last_fetch_at=NOW - timedelta(minutes=1))
        b = entity_factory("BBB")
        for entity in (a, b):
            quote_factory(entity, 5.0, fetched_at=NOW - timedelta(days=1))

        selections = make_scheduler(db, strategy, pacer).select_entities(NOW)
        assert [s.symbol for s in selections] == ["BBB", "AAA"]

    @pytest.mark.parametrize("budget", [0, 1, 4, 50])
    def test_never_exceeds_budget_or_repeats(self, db, entity_factory, quote_factory, prediction_factory, strategy, pacer, budget):
        for i in range(6):
            entity = entity_factory(f"E{i}")
            if i % 2:
                quote_factory(entity, 1.0, fetched_at=NOW - timedelta(hours=3))
            if i < 2:
                prediction_factory(entity, target_at=NOW - timedelta(minutes=5))

        selections = make_scheduler(db, strategy, pacer, budget=budget).select_entities(NOW)
        ids = [s.entity_id for s in selections]

        assert len(ids) == min(budget, 6)
        assert len(ids) == len(set(ids))

    def test_inactive_entities_are_not_selected(self, db, entity_factory, strategy, pacer):
        entity_factory("OFF", active=False)
        assert make_scheduler(db, strategy, pacer).select_entities(NOW) == []

    def test_negative_budget_is_rejected(self, db, strategy, pacer):
        with pytest.raises(ValueError):
            make_scheduler(db, strategy, pacer, budget=-1)


class TestCycle:
    """Fetching, persistence and failure bookkeeping."""

    def test_successful_fetch_stores_quote_and_resets_failures(self, db, entity_factory, pacer):
        entity = entity_factory("AAPL")
        entity.consecutive_failures = 3
        db.flush()
        strategy = FakeQuoteStrategy(prices={"AAPL": 190.0})

        report = make_scheduler(db, strategy, pacer).run_cycle(NOW)

        assert report.fetched == 1
        assert entity.consecutive_failures == 0
        assert entity.last_fetch_at == NOW
        quote = db.query(PriceQuote).filter_by(entity_id=entity.id).one()
        assert quote.price == 190.0
        assert quote.source == "fake"

    def test_fetches_are_paced(self, db, entity_factory, pacer, fake_clock):
        for symbol in ("A", "B", "C"):
            entity_factory(symbol)

        make_scheduler(db, FakeQuoteStrategy(), pacer).run_cycle(NOW)

        assert fake_clock.sleeps == [pytest.approx(1.0), pytest.approx(1.0)]

    def test_deactivates_after_consecutive_failures(self, db, entity_factory, pacer):
        entity = entity_factory("DEAD")
        strategy = FakeQuoteStrategy(failing=["DEAD"])
        scheduler = make_scheduler(db, strategy, pacer, max_failures=5)

        for attempt in range(1, 5):
            report = scheduler.run_cycle(NOW)
            assert entity.consecutive_failures == attempt
            assert entity.active
            assert report.transient_failures == 1

        report = scheduler.run_cycle(NOW)

        assert entity.consecutive_failures == 5
        assert not entity.active
        assert report.deactivated == ["DEAD"]
        assert entity.last_error

        assert scheduler.select_entities(NOW) == []

    def test_validation_failures_also_count(self, db, entity_factory, pacer):
        entity = entity_factory("GONE")
        report = make_scheduler(db, FakeQuoteStrategy(invalid=["GONE"]), pacer).run_cycle(NOW)

        assert report.validation_failures == 1
        assert entity.consecutive_failures == 1
        assert entity.last_fetch_at == NOW

    def test_one_failure_does_not_abort_cycle(self, db, entity_factory, pacer):
        entity_factory("BAD")
        good = entity_factory("GOOD")
        report = make_scheduler(db, FakeQuoteStrategy(failing=["BAD"]), pacer).run_cycle(NOW)

        assert report.fetched == 1
        assert report.failed == 1
        assert good.consecutive_failures == 0

    def test_reactivate_resets_counter(self, db, entity_factory):
        entity = entity_factory("DEAD", active=False)
        entity.consecutive_failures = 5
        db.flush()

        EntityRepository(db).reactivate("dead")

        assert entity.active
        assert entity.consecutive_failures == 0

    def test_reactivate_unknown_symbol(self, db):
        with pytest.raises(RecordNotFoundError):
            EntityRepository(db).reactivate("NOPE")

    def test_refreshed_blocking_entities_are_evaluated(
        self, db, entity_factory, quote_factory, prediction_factory, pacer
    ):
        entity = entity_factory("AAPL")
        quote_factory(entity, 100.0, fetched_at=NOW - timedelta(hours=25))
        prediction = prediction_factory(entity, direction="up", target_at=NOW - timedelta(hours=1))

        report = make_scheduler(db, FakeQuoteStrategy(prices={"AAPL": 103.0}), pacer).run_cycle(NOW)

        assert report.by_tier[TIER_EVALUATION_BLOCKING] == 1
        assert report.evaluation.evaluated == 1
        assert prediction.state == "closed"
        assert prediction.correct is True
        assert prediction.actual_change == pytest.approx(3.0)

    def test_failed_blocking_refresh_is_not_evaluated(
        self, db, entity_factory, quote_factory, prediction_factory, pacer
    ):
        entity = entity_factory("AAPL")
        quote_factory(entity, 100.0, fetched_at=NOW - timedelta(hours=25))
        prediction = prediction_factory(entity, target_at=NOW - timedelta(hours=1))

        report = make_scheduler(db, FakeQuoteStrategy(failing=["AAPL"]), pacer).run_cycle(NOW)

        assert report.evaluation is None
        assert prediction.state == "live"

    def test_raising_provider_fails_only_its_entity(self, db, entity_factory, pacer):
        a, b, c = (entity_factory(symbol) for symbol in ("A", "B", "C"))
        strategy = ExplodingStrategy(["B"], prices={"A": 10.0, "C": 30.0})

        report = make_scheduler(db, strategy, pacer).run_cycle(NOW)

        assert strategy.calls == ["A", "B", "C"]
        assert report.fetched == 2
        assert report.transient_failures == 1
        assert {q.entity_id for q in db.query(PriceQuote).all()} == {a.id, c.id}
        assert b.consecutive_failures == 1
        assert "RuntimeError" in b.last_error
        assert a.consecutive_failures == c.consecutive_failures == 0

    def test_explicit_now_stamps_the_whole_cycle(self, db, entity_factory, quote_factory, prediction_factory, pacer):
        entity = entity_factory("AAPL")
        quote_factory(entity, 100.0, fetched_at=NOW - timedelta(hours=25))
        prediction = prediction_factory(entity, direction="up", target_at=NOW - timedelta(hours=1))
        scheduler = MarketDataScheduler(
            db,
            providers=QuoteProviderChain([FakeQuoteStrategy(prices={"AAPL": 103.0})]),
            pacer=pacer,
            clock=lambda: NOW + timedelta(days=30),
        )

        scheduler.run_cycle(NOW)

        latest = db.query(PriceQuote).order_by(PriceQuote.fetched_at.desc()).first()
        assert latest.fetched_at == NOW
        assert entity.last_fetch_at == NOW
        assert prediction.evaluated_at == NOW
