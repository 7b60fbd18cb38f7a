"""
Quote providers for the market data scheduler.

Providers are typed strategies tried in order. Each returns an explicit
FetchResult rather than raising, so the chain can fall back without using
exceptions for control flow.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

import yfinance as yf
from loguru import logger

from predictradar.utils.errors import InvalidQuoteError, TransientFetchError


ERROR_TRANSIENT = "transient"
ERROR_VALIDATION = "validation"


@dataclass(frozen=True)
class Quote:
    """Current quote for a symbol."""

    symbol: str
    price: float
    change: Optional[float] = None
    change_percent: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    open: Optional[float] = None
    previous_close: Optional[float] = None


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one provider attempt."""

    ok: bool
    provider: str
    quote: Optional[Quote] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, provider: str, quote: Quote) -> "FetchResult":
        return cls(ok=True, provider=provider, quote=quote)

    @classmethod
    def failure(cls, provider: str, error_kind: str, error: str) -> "FetchResult":
        return cls(ok=False, provider=provider, error_kind=error_kind, error=error)


class QuoteStrategy(Protocol):
    """A quote source. Must not raise for ordinary provider failures."""

    name: str

    def fetch(self, symbol: str) -> FetchResult:
        ...


def validate_quote(quote: Quote) -> Quote:
    """
    Reject quotes that cannot serve as a price.

    Providers answer unknown or delisted symbols with zeros rather than an error.

    Raises:
        InvalidQuoteError: if the price is missing, non-finite or not positive
    """
    price = quote.price
    if price is None or not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
        raise InvalidQuoteError(f"Invalid quote for {quote.symbol}: price={price}")
    if (quote.high == 0 and quote.low == 0) and quote.open == 0:
        raise InvalidQuoteError(f"Empty quote for {quote.symbol}, symbol may be delisted")
    return quote


class YFinanceQuoteStrategy:
    """Quote strategy backed by Yahoo Finance daily bars."""

    name = "yahoo"

    def __init__(self, period: str = "5d"):
        self.period = period

    def _history(self, symbol: str):
        try:
            return yf.Ticker(symbol).history(period=self.period)
        except Exception as e:
            # yfinance surfaces network, HTTP and parsing problems as assorted exception types
            raise TransientFetchError(
                f"Yahoo request failed for {symbol}: {type(e).__name__}: {e}",
                details={"symbol": symbol},
            ) from e

    def fetch(self, symbol: str) -> FetchResult:
        try:
            df = self._history(symbol)
        except TransientFetchError as e:
            logger.warning(e.message)
            return FetchResult.failure(self.name, ERROR_TRANSIENT, e.message)

        if df is None or df.empty:
            return FetchResult.failure(self.name, ERROR_VALIDATION, f"No price data available for {symbol}")

        last = df.iloc[-1]
        previous_close = float(df.iloc[-2]["Close"]) if len(df) >= 2 else None
        price = float(last["Close"])
        change = price - previous_close if previous_close else None
        change_percent = (change / previous_close * 100.0) if previous_close else None

        quote = Quote(
            symbol=symbol,
            price=price,
            change=change,
            change_percent=change_percent,
            high=float(last["High"]),
            low=float(last["Low"]),
            open=float(last["Open"]),
            previous_close=previous_close,
        )
        try:
            validate_quote(quote)
        except InvalidQuoteError as e:
            return FetchResult.failure(self.name, ERROR_VALIDATION, e.message)
        return FetchResult.success(self.name, quote)


@dataclass
class ChainResult:
    """Outcome of trying every strategy in order."""

    ok: bool
    quote: Optional[Quote] = None
    provider: Optional[str] = None
    attempts: List[FetchResult] = field(default_factory=list)

    @property
    def error_kind(self) -> Optional[str]:
        """Validation only when every provider rejected the data itself."""
        if self.ok or not self.attempts:
            return None
        if all(a.error_kind == ERROR_VALIDATION for a in self.attempts):
            return ERROR_VALIDATION
        return ERROR_TRANSIENT

    @property
    def error(self) -> Optional[str]:
        if self.ok:
            return None
        return "; ".join(f"{a.provider}: {a.error}" for a in self.attempts) or "no quote providers configured"


class QuoteProviderChain:
    """Ordered list of quote strategies; the first success wins. Never raises."""

    def __init__(self, strategies: Sequence[QuoteStrategy]):
        self.strategies = list(strategies)

    def fetch(self, symbol: str) -> ChainResult:
        attempts: List[FetchResult] = []
        for strategy in self.strategies:
            try:
                result = strategy.fetch(symbol)
            except Exception as e:
                # third-party strategies may still raise; treat it as a failed attempt
                logger.warning(f"{strategy.name} raised while quoting {symbol}: {type(e).__name__}: {e}")
                result = FetchResult.failure(strategy.name, ERROR_TRANSIENT, f"{type(e).__name__}: {e}")
            if result.ok:
                try:
                    validate_quote(result.quote)
                except InvalidQuoteError as e:
                    result = FetchResult.failure(strategy.name, ERROR_VALIDATION, e.message)
                else:
                    attempts.append(result)
                    return ChainResult(ok=True, quote=result.quote, provider=strategy.name, attempts=attempts)

            logger.debug(f"{strategy.name} could not quote {symbol}: {result.error}")
            attempts.append(result)

        return ChainResult(ok=False, attempts=attempts)


def default_quote_chain() -> QuoteProviderChain:
    return QuoteProviderChain([YFinanceQuoteStrategy()])
