# mtf_trading/indicators.py
"""
Indicator Engine

Pure functions over a close-price sequence:
- EMA (seeded with the SMA of the first window)
- RSI (Wilder smoothing) and the SMA of the RSI series
- MACD(12, 26, 9) with an EMA signal line and histogram
- Consecutive positive histogram bars

Windows are clamped to the available data and any indicator without enough
data falls back to a neutral default (RSI 50, EMA last close, MACD 0) so a
thin history never aborts a scan.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from . import config
from .models import Candle, TechnicalIndicators
from .utils import round2

logger = logging.getLogger(__name__)

MIN_CLOSES = 10
NEUTRAL_RSI = 50.0


# =============================================================================
# Series functions
# =============================================================================

def sma(values: Sequence[float], period: int) -> np.ndarray:
    """Simple moving average; one value per full window."""
    if period <= 0 or len(values) < period:
        return np.array([])
    return pd.Series(values, dtype=float).rolling(period).mean().to_numpy()[period - 1:]


def _seeded_smoothing(values: np.ndarray, period: int, alpha: float) -> np.ndarray:
    """Exponential smoothing whose first value is the SMA of the first window."""
    seed = values[:period].mean()
    series = pd.Series(np.concatenate(([seed], values[period:])))
    return series.ewm(alpha=alpha, adjust=False).mean().to_numpy()


def ema(values: Sequence[float], period: int) -> np.ndarray:
    """
    Exponential moving average with k = 2 / (period + 1).

    Returns len(values) - period + 1 values; the first is the SMA seed.
    """
    data = np.asarray(values, dtype=float)
    if period <= 0 or len(data) < period:
        return np.array([])
    return _seeded_smoothing(data, period, 2.0 / (period + 1))


def rsi(values: Sequence[float], period: int = config.RSI_PERIOD) -> np.ndarray:
    """
    Relative strength index with Wilder smoothing, rounded to 2 decimals.

    Returns len(values) - period values.
    """
    data = np.asarray(values, dtype=float)
    if period <= 0 or len(data) <= period:
        return np.array([])

    deltas = np.diff(data)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = _seeded_smoothing(gains, period, 1.0 / period)
    avg_loss = _seeded_smoothing(losses, period, 1.0 / period)

    with np.errstate(divide='ignore', invalid='ignore'):
        rs = avg_gain / avg_loss
        values_out = np.where(avg_loss == 0, 100.0, 100.0 - 100.0 / (1.0 + rs))

    return np.round(values_out, 2)


def macd(
    values: Sequence[float],
    fast: int = config.MACD_FAST,
    slow: int = config.MACD_SLOW,
    signal: int = config.MACD_SIGNAL
) -> pd.DataFrame:
    """
    MACD line, EMA signal line and histogram.

    Rows start once the slow EMA exists; signal and histogram are NaN until
    the signal EMA has a full window of MACD values.
    """
    fast_ema = ema(values, fast)
    slow_ema = ema(values, slow)
    if len(slow_ema) == 0 or len(fast_ema) == 0:
        return pd.DataFrame(columns=['macd', 'signal', 'histogram'])

    macd_line = fast_ema[len(fast_ema) - len(slow_ema):] - slow_ema
    signal_line = np.full(len(macd_line), np.nan)
    signal_values = ema(macd_line, signal)
    if len(signal_values):
        signal_line[len(macd_line) - len(signal_values):] = signal_values

    return pd.DataFrame({
        'macd': macd_line,
        'signal': signal_line,
        'histogram': macd_line - signal_line
    })


def histogram_count(closes: Sequence[float]) -> int:
    """
    Trailing bars with MACD histogram > 0, scanning back from the latest.

    Uses the full 12/26/9 windows; too little data yields 0.
    """
    frame = macd(closes, config.MACD_FAST, config.MACD_SLOW, config.MACD_SIGNAL)
    count = 0
    for value in reversed(frame['histogram'].tolist()):
        if value is not None and not np.isnan(value) and value > 0:
            count += 1
        else:
            break
    return count


def _last(values: np.ndarray, default: float) -> float:
    if len(values) == 0 or np.isnan(values[-1]):
        return default
    return float(values[-1])


# =============================================================================
# Indicator snapshot
# =============================================================================

def compute_from_closes(
    closes: Sequence[float],
    volumes: Optional[Sequence[float]] = None
) -> TechnicalIndicators:
    """
    Compute the indicator snapshot for the latest bar.

    Non-positive closes (placeholder candles) are ignored.
    """
    prices = [float(c) for c in closes if c and c > 0]
    current_close = prices[-1] if prices else 0.0

    if len(prices) < MIN_CLOSES:
        logger.warning(f"⚠️ Only {len(prices)} closes available - using neutral indicator defaults")
        return TechnicalIndicators(
            close=current_close,
            ema50=current_close,
            rsi14=NEUTRAL_RSI,
            rsi14_sma=NEUTRAL_RSI,
            macd=0.0,
            macd_signal=0.0,
            histogram=0.0,
            histogram_count=0,
            ema20=current_close
        )

    n = len(prices)
    ema_period = min(config.EMA_PERIOD, int(n * 0.8))
    ema_short_period = min(config.EMA_SHORT_PERIOD, int(n * 0.8))
    rsi_period = min(config.RSI_PERIOD, int(n * 0.3))

    ema50_values = ema(prices, ema_period)
    ema20_values = ema(prices, ema_short_period)
    rsi_values = rsi(prices, rsi_period)
    rsi_sma_values = sma(rsi_values, min(config.RSI_SMA_PERIOD, len(rsi_values)))

    macd_frame = macd(
        prices,
        fast=min(config.MACD_FAST, int(n * 0.2)),
        slow=min(config.MACD_SLOW, int(n * 0.4)),
        signal=min(config.MACD_SIGNAL, int(n * 0.15))
    )
    latest = macd_frame.iloc[-1] if len(macd_frame) else None
    macd_value = 0.0 if latest is None or np.isnan(latest['macd']) else float(latest['macd'])
    signal_value = 0.0 if latest is None or np.isnan(latest['signal']) else float(latest['signal'])
    hist_value = 0.0 if latest is None or np.isnan(latest['histogram']) else float(latest['histogram'])

    hist_series = macd_frame['histogram'].dropna().to_numpy() if len(macd_frame) else np.array([])

    avg_volume20 = 0.0
    current_volume = 0.0
    if volumes:
        vols = [float(v) for v in volumes]
        current_volume = vols[-1]
        avg_volume20 = float(np.mean(vols[-20:]))

    return TechnicalIndicators(
        close=current_close,
        ema50=round2(_last(ema50_values, current_close)),
        rsi14=round2(_last(rsi_values, NEUTRAL_RSI)),
        rsi14_sma=round2(_last(rsi_sma_values, NEUTRAL_RSI)),
        macd=round2(macd_value),
        macd_signal=round2(signal_value),
        histogram=round2(hist_value),
        histogram_count=histogram_count(prices),
        ema20=round2(_last(ema20_values, current_close)),
        volume=current_volume,
        avg_volume20=round2(avg_volume20),
        rsi_rising=bool(len(rsi_values) >= 2 and rsi_values[-1] > rsi_values[-2]),
        macd_accelerating=bool(len(hist_series) >= 2 and hist_series[-1] > hist_series[-2])
    )


def compute_indicators(candles: List[Candle]) -> TechnicalIndicators:
    """Indicator snapshot for a candle series (placeholder candles skipped)."""
    live = [c for c in candles if c.close > 0]
    return compute_from_closes([c.close for c in live], [c.volume for c in live])
