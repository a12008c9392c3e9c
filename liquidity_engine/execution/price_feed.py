"""
Price feed interface.

The engine only ever asks for the current price of a symbol. A failed
lookup raises PriceUnavailable and the caller skips that position for the
cycle; a feed never substitutes zero or a made-up price.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from liquidity_engine.core.domain import utcnow
from liquidity_engine.core.errors import PriceUnavailable
from liquidity_engine.utils.money import to_decimal
from liquidity_engine.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    price: Decimal
    as_of: datetime


class PriceFeed(ABC):
    """Source of current prices."""

    @abstractmethod
    def get_current_price(self, symbol: str) -> PriceQuote:
        """Return the latest price for ``symbol`` or raise PriceUnavailable."""
        pass


class StaticPriceFeed(PriceFeed):
    """Prices from a fixed table, for tests and manual repricing."""

    def __init__(self, prices: Optional[Dict[str, object]] = None):
        self.prices = {s.upper(): to_decimal(p) for s, p in (prices or {}).items()}

    def set_price(self, symbol: str, price):
        self.prices[symbol.upper()] = to_decimal(price)

    def get_current_price(self, symbol: str) -> PriceQuote:
        price = self.prices.get(symbol.upper())
        if price is None or price <= 0:
            raise PriceUnavailable(symbol, "not in price table")
        return PriceQuote(symbol=symbol.upper(), price=price, as_of=utcnow())


class YFinancePriceFeed(PriceFeed):
    """
    Latest traded price from Yahoo Finance.

    Lookup order: last 1-minute intraday close, ``fast_info.last_price``,
    then the daily close.
    """

    def get_current_price(self, symbol: str) -> PriceQuote:
        import yfinance as yf

        ticker = yf.Ticker(symbol)
        last = None
        try:
            intraday = ticker.history(period="1d", interval="1m")
            if not intraday.empty and "Close" in intraday.columns:
                last = float(intraday["Close"].dropna().iloc[-1])
            if last is None:
                fast_info = getattr(ticker, "fast_info", None)
                if fast_info and getattr(fast_info, "last_price", None):
                    last = float(fast_info.last_price)
            if last is None:
                daily = ticker.history(period="1d")
                if not daily.empty:
                    last = float(daily["Close"].iloc[-1])
        except Exception as e:
            logger.warning("Price lookup failed", symbol=symbol, error=str(e))
            raise PriceUnavailable(symbol, str(e)) from e

        if last is None or last <= 0:
            raise PriceUnavailable(symbol, "no recent close")
        return PriceQuote(symbol=symbol.upper(), price=to_decimal(last), as_of=utcnow())


def get_price_feed(name: str) -> PriceFeed:
    """Build the feed named in settings."""
    if name == "yfinance":
        return YFinancePriceFeed()
    if name == "static":
        return StaticPriceFeed()
    raise ValueError(f"Unknown price feed: {name}")
