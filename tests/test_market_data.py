"""
Quote provider chain and request pacing tests.

No network access: every strategy here is scripted.
"""

import pytest

from predictradar.services import market_data
from predictradar.services.market_data import (
    ERROR_TRANSIENT,
    ERROR_VALIDATION,
    FetchResult,
    Quote,
    QuoteProviderChain,
    YFinanceQuoteStrategy,
    validate_quote,
)
from predictradar.utils.errors import InvalidQuoteError
from predictradar.utils.rate_limit import RequestPacer

from conftest import FakeClock, FakeQuoteStrategy


class ZeroPriceStrategy:
    """Provider that answers unknown symbols with a zero quote instead of an error."""

    name = "zeros"

    def fetch(self, symbol):
        return FetchResult.success(self.name, Quote(symbol=symbol, price=0.0, high=0.0, low=0.0, open=0.0))


class TestQuoteProviderChain:
    """Ordered strategies, explicit results, no exception-driven fallback."""

    def test_first_success_wins(self):
        primary = FakeQuoteStrategy("primary", prices={"AAPL": 190.0})
        backup = FakeQuoteStrategy("backup", prices={"AAPL": 191.0})

        result = QuoteProviderChain([primary, backup]).fetch("AAPL")

        assert result.ok
        assert result.provider == "primary"
        assert result.quote.price == 190.0
        assert backup.calls == []

    def test_falls_back_to_next_strategy(self):
        primary = FakeQuoteStrategy("primary", failing=["AAPL"])
        backup = FakeQuoteStrategy("backup", prices={"AAPL": 191.0})

        result = QuoteProviderChain([primary, backup]).fetch("AAPL")

        assert result.ok
        assert result.provider == "backup"
        assert len(result.attempts) == 2

    def test_zero_quote_is_rejected_and_falls_back(self):
        backup = FakeQuoteStrategy("backup", prices={"DEAD": 5.0})
        result = QuoteProviderChain([ZeroPriceStrategy(), backup]).fetch("DEAD")

        assert result.ok
        assert result.attempts[0].error_kind == ERROR_VALIDATION

    def test_all_validation_failures_report_validation(self):
        chain = QuoteProviderChain([ZeroPriceStrategy(), FakeQuoteStrategy("b", invalid=["DEAD"])])
        result = chain.fetch("DEAD")

        assert not result.ok
        assert result.error_kind == ERROR_VALIDATION
        assert "zeros" in result.error and "b" in result.error

    def test_any_transient_failure_reports_transient(self):
        chain = QuoteProviderChain([FakeQuoteStrategy("a", failing=["X"]), FakeQuoteStrategy("b", invalid=["X"])])
        result = chain.fetch("X")

        assert not result.ok
        assert result.error_kind == ERROR_TRANSIENT

    def test_empty_chain_fails_cleanly(self):
        result = QuoteProviderChain([]).fetch("AAPL")
        assert not result.ok
        assert result.error == "no quote providers configured"

    def test_validate_quote(self):
        assert validate_quote(Quote(symbol="AAPL", price=1.0)).price == 1.0
        with pytest.raises(InvalidQuoteError):
            validate_quote(Quote(symbol="AAPL", price=float("nan")))
        with pytest.raises(InvalidQuoteError):
            validate_quote(Quote(symbol="AAPL", price=-5.0))


class EmptyHistory:
    empty = True


class TestYFinanceStrategy:
    """Error paths only; no network access."""

    def test_request_error_is_transient(self, monkeypatch):
        def boom(symbol):
            raise ConnectionError("reset by peer")

        monkeypatch.setattr(market_data.yf, "Ticker", boom)

        result = YFinanceQuoteStrategy().fetch("AAPL")

        assert not result.ok
        assert result.error_kind == ERROR_TRANSIENT
        assert "ConnectionError" in result.error

    def test_empty_history_is_a_validation_failure(self, monkeypatch):
        class Ticker:
            def __init__(self, symbol):
                self.symbol = symbol

            def history(self, period):
                return EmptyHistory()

        monkeypatch.setattr(market_data.yf, "Ticker", Ticker)

        result = YFinanceQuoteStrategy().fetch("GONE")

        assert result.error_kind == ERROR_VALIDATION
        assert "GONE" in result.error


class TestRequestPacer:
    """Minimum interval between consecutive requests."""

    def test_first_request_does_not_wait(self, pacer, fake_clock):
        assert pacer.wait() == 0.0
        assert fake_clock.sleeps == []

    def test_waits_for_remaining_interval(self, pacer, fake_clock):
        pacer.wait()
        fake_clock.now += 0.25
        waited = pacer.wait()

        assert waited == pytest.approx(0.75)
        assert fake_clock.sleeps == [pytest.approx(0.75)]

    def test_no_wait_after_interval_elapsed(self, pacer, fake_clock):
        pacer.wait()
        fake_clock.now += 5.0
        assert pacer.wait() == 0.0

    def test_sequence_is_spaced_by_interval(self):
        clock = FakeClock(start=0.0)
        pacer = RequestPacer(min_interval=2.0, clock=clock, sleep=clock.sleep)
        issued = []
        for _ in range(4):
            pacer.wait()
            issued.append(clock())

        assert issued == [0.0, 2.0, 4.0, 6.0]
        assert pacer.total_waited == pytest.approx(6.0)

    def test_reset(self, pacer):
        pacer.wait()
        pacer.reset()
        assert pacer.wait() == 0.0

    def test_negative_interval_rejected(self):
        with pytest.raises(ValueError):
            RequestPacer(min_interval=-1)
