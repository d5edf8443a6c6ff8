# mtf_trading/market_data.py
"""
Market Data Aggregator

Builds one candle series per symbol:
- Multi-year daily candles from the historical chart endpoint
- Today's synthetic daily candle from intraday ticks (09:00-15:30 IST)

All network access goes through the ResilientApiClient (cache, breaker,
retries). If the intraday fetch fails or returns no ticks, today's candle
is a zero placeholder (close=0), meaning "no live data".
"""

import logging
from datetime import datetime
from typing import List, Optional

from . import config
from .broker_client import BrokerClient
from .models import Candle, MarketSeries
from .resilience import ResilientApiClient, ResponseCache
from .utils import get_ist_now, round2, to_ist

logger = logging.getLogger(__name__)


def build_today_candle(ticks: List[Candle], day: str) -> Candle:
    """
    Collapse intraday ticks into one daily candle.

    open = first tick's open, close = last tick's close,
    high/low = extrema across ticks, volume = sum.
    """
    if not ticks:
        return placeholder_candle(day)

    return Candle(
        date=day,
        open=ticks[0].open,
        high=max(t.high for t in ticks),
        low=min(t.low for t in ticks),
        close=ticks[-1].close,
        volume=sum(t.volume for t in ticks)
    )


def placeholder_candle(day: str) -> Candle:
    """Zero-value candle marking missing live data."""
    return Candle(date=day, open=0.0, high=0.0, low=0.0, close=0.0, volume=0)


class MarketDataAggregator:
    """Historical + intraday candle aggregation for the symbol universe."""

    def __init__(
        self,
        broker: BrokerClient,
        api: Optional[ResilientApiClient] = None,
        clock=get_ist_now
    ):
        self.broker = broker
        self.api = api or ResilientApiClient()
        self._clock = clock

    def _session_bounds(self, now: datetime):
        day = now.strftime('%Y-%m-%d')
        start = f"{day}T{config.INTRADAY_SESSION_START.strftime('%H:%M:%S')}"
        end = f"{day}T{config.MARKET_CLOSE_TIME.strftime('%H:%M:%S')}"
        return day, start, end

    def get_historical(self, symbol: str) -> List[Candle]:
        """Daily candles (cached for HISTORICAL_CACHE_TTL_SECONDS)."""
        now = to_ist(self._clock())
        day = now.strftime('%Y-%m-%d')
        key = ResponseCache.make_key('historical', symbol, config.HISTORICAL_INTERVAL, day)

        return self.api.call(
            lambda: self.broker.get_historical_chart(symbol, config.HISTORICAL_INTERVAL, end=now),
            cache_key=key,
            ttl=config.HISTORICAL_CACHE_TTL_SECONDS,
            operation_name=f"historical data {symbol}"
        )

    def get_intraday_ticks(self, symbol: str) -> List[Candle]:
        """
        Today's intraday ticks (cached for CHART_CACHE_TTL_SECONDS).

        Never raises: any failure yields an empty list.
        """
        now = to_ist(self._clock())
        day, start, end = self._session_bounds(now)
        key = ResponseCache.make_key('chart', symbol, config.INTRADAY_INTERVAL, day)

        try:
            return self.api.call(
                lambda: self.broker.get_chart(symbol, start, end, config.INTRADAY_INTERVAL),
                cache_key=key,
                ttl=config.CHART_CACHE_TTL_SECONDS,
                operation_name=f"intraday data {symbol}"
            ) or []
        except Exception as e:
            logger.warning(f"⚠️ No intraday data for {symbol}: {e}")
            return []

    def get_today_candle(self, symbol: str) -> Candle:
        """Today's candle, or the placeholder when there are no ticks."""
        day = to_ist(self._clock()).strftime('%Y-%m-%d')
        ticks = self.get_intraday_ticks(symbol)
        if not ticks:
            return placeholder_candle(day)

        candle = build_today_candle(ticks, day)
        logger.debug(
            f"{symbol} today: O={round2(candle.open)} H={round2(candle.high)} "
            f"L={round2(candle.low)} C={round2(candle.close)} ({len(ticks)} ticks)"
        )
        return candle

    def get_series(self, symbol: str) -> MarketSeries:
        """
        Historical candles plus today's candle.

        Raises:
            Errors from the historical fetch (breaker open, retries exhausted)
        """
        historical = self.get_historical(symbol)
        day = to_ist(self._clock()).strftime('%Y-%m-%d')
        ticks = self.get_intraday_ticks(symbol)
        today = build_today_candle(ticks, day)

        # Drop a historical bar for today so the synthetic candle is not doubled
        if today.has_live_data and historical and historical[-1].date == today.date:
            historical = historical[:-1]

        return MarketSeries(
            symbol=symbol,
            historical=list(historical),
            today=today,
            intraday_points=len(ticks)
        )
