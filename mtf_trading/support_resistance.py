# mtf_trading/support_resistance.py
"""
Support / Resistance Channel Detector

Pine-Script style pivot channels:
1. Pivot highs/lows with a strict +/- prd bar window (ties are not pivots)
2. One candidate channel per pivot, greedily absorbing nearby pivots while
   the band stays within ChannelWidth% of the lookback high-low range
3. Strength = 20 x pivots + candles whose high or low touches the band
4. Strongest channels first, no pivot shared between selected channels
5. Nearest support / resistance relative to the current price

Also provides the resistance-proximity entry check.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import config
from .models import (
    Candle,
    Channel,
    ChannelProjection,
    PivotPoint,
    ResistanceCheck,
    SupportResistanceSnapshot,
)
from .utils import round2, today_ist_str

logger = logging.getLogger(__name__)


# =============================================================================
# STEP 1: PIVOTS
# =============================================================================

def find_pivots(candles: Sequence[Candle], prd: int = config.SR_CONFIG['prd']) -> List[PivotPoint]:
    """
    Detect pivot highs and lows.

    A candle is a pivot high when its high is strictly greater than every
    other high within prd bars on both sides (mirror rule for lows). Candles
    without prd bars on both sides are never pivots.
    """
    pivots: List[PivotPoint] = []
    if len(candles) < 2 * prd + 1:
        return pivots

    for i in range(prd, len(candles) - prd):
        current = candles[i]
        window = [candles[j] for j in range(i - prd, i + prd + 1) if j != i]

        if all(c.high < current.high for c in window):
            pivots.append(PivotPoint(index=i, price=current.high, type='high', date=current.date))

        if all(c.low > current.low for c in window):
            pivots.append(PivotPoint(index=i, price=current.low, type='low', date=current.date))

    return pivots


def high_low_range(candles: Sequence[Candle]) -> float:
    """Max high minus min low over the candles."""
    if not candles:
        return 0.0
    return max(c.high for c in candles) - min(c.low for c in candles)


# =============================================================================
# STEPS 2-4: CHANNELS
# =============================================================================

def build_candidate_channels(pivots: Sequence[PivotPoint], max_width: float) -> List[Channel]:
    """One channel per pivot seed; duplicates are expected."""
    channels = []
    for seed in pivots:
        lower = upper = seed.price
        members = [seed]
        for other in pivots:
            if other is seed:
                continue
            new_lower = min(lower, other.price)
            new_upper = max(upper, other.price)
            if new_upper - new_lower <= max_width:
                lower, upper = new_lower, new_upper
                members.append(other)
        channels.append(Channel(upper=upper, lower=lower, pivots=tuple(members)))
    return channels


def score_channel(channel: Channel, candles: Sequence[Candle]) -> int:
    """20 per member pivot + 1 per candle with high or low inside the band."""
    touches = sum(
        1 for c in candles
        if channel.lower <= c.high <= channel.upper or channel.lower <= c.low <= channel.upper
    )
    return 20 * len(channel.pivots) + touches


def _pivot_key(pivot: PivotPoint) -> Tuple[int, str]:
    return pivot.index, pivot.type


def select_channels(
    channels: Sequence[Channel],
    min_strength: int = config.SR_CONFIG['min_strength'],
    max_channels: int = config.SR_CONFIG['max_channels']
) -> List[Channel]:
    """
    Strongest-first selection without shared pivots.

    Channels below min_strength x 20 are dropped.
    """
    selected: List[Channel] = []
    claimed = set()

    for channel in sorted(channels, key=lambda c: c.strength, reverse=True):
        if len(selected) >= max_channels:
            break
        if channel.strength < min_strength * 20:
            continue
        keys = {_pivot_key(p) for p in channel.pivots}
        if keys & claimed:
            continue
        selected.append(channel)
        claimed |= keys

    return selected


# =============================================================================
# STEP 5: CLASSIFICATION
# =============================================================================

def classify_channels(
    channels: Sequence[Channel],
    current_price: float
) -> Tuple[Optional[ChannelProjection], Optional[ChannelProjection]]:
    """
    Nearest support and resistance around the current price.

    Support: highest upper bound below price.
    Resistance: lowest lower bound above price.
    A channel containing the price is neither.
    """
    support: Optional[Channel] = None
    resistance: Optional[Channel] = None

    for channel in channels:
        if channel.lower > current_price:
            if resistance is None or channel.lower < resistance.lower:
                resistance = channel
        elif channel.upper < current_price:
            if support is None or channel.upper > support.upper:
                support = channel

    nearest_support = None
    if support is not None:
        nearest_support = ChannelProjection(
            upper=support.upper,
            lower=support.lower,
            strength=support.strength,
            distance_percent=round2((current_price - support.upper) / current_price * 100)
        )

    nearest_resistance = None
    if resistance is not None:
        nearest_resistance = ChannelProjection(
            upper=resistance.upper,
            lower=resistance.lower,
            strength=resistance.strength,
            distance_percent=round2((resistance.lower - current_price) / current_price * 100)
        )

    return nearest_support, nearest_resistance


def check_resistance_proximity(
    current_price: float,
    snapshot: SupportResistanceSnapshot,
    min_distance_percent: float = config.SR_CONFIG['min_resistance_distance_pct']
) -> ResistanceCheck:
    """
    Resistance-clear entry condition.

    Passes when the nearest resistance is at least min_distance_percent away,
    or when there is no resistance but a support channel exists. Fails
    closed when neither exists.
    """
    resistance = snapshot.nearest_resistance

    if resistance is None:
        if snapshot.nearest_support is not None:
            return ResistanceCheck(
                passed=True,
                reason=f"No resistance above price - support at ₹{snapshot.nearest_support.upper:.2f}, allowing entry"
            )
        return ResistanceCheck(passed=False, reason='No resistance or support data available')

    level = resistance.lower
    distance = (level - current_price) / current_price * 100
    passed = distance >= min_distance_percent

    if passed:
        reason = f"PASSED: {distance:.2f}% from resistance (₹{level:.2f}) >= {min_distance_percent}%"
    else:
        reason = f"FAILED: Only {distance:.2f}% from resistance (₹{level:.2f}) < {min_distance_percent}%"

    return ResistanceCheck(
        passed=passed,
        reason=reason,
        distance_percent=round2(distance),
        nearest_resistance=level
    )


def fallback_resistance_check(candles: Sequence[Candle]) -> ResistanceCheck:
    """
    Resistance check when S/R analysis itself could not run.

    Enough recent history counts as support data (pass); otherwise fail closed.
    """
    recent = [c for c in candles[-50:] if c.close > 0]
    if len(recent) >= 20:
        return ResistanceCheck(
            passed=True,
            reason='No resistance data but support data available - allowing entry'
        )
    return ResistanceCheck(passed=False, reason='No resistance or support data available')


# =============================================================================
# DETECTOR
# =============================================================================

class SupportResistanceDetector:
    """
    Runs the channel algorithm over a symbol's candle series.

    Usage:
        detector = SupportResistanceDetector(aggregator)
        snapshot = detector.analyze('RELIANCE')
    """

    def __init__(self, aggregator=None, sr_config: Optional[Dict[str, Any]] = None):
        self.aggregator = aggregator
        self.sr_config = dict(config.SR_CONFIG, **(sr_config or {}))

    def analyze_candles(
        self,
        symbol: str,
        candles: Sequence[Candle],
        current_price: Optional[float] = None
    ) -> SupportResistanceSnapshot:
        """Analyze an already-fetched candle series (placeholders skipped)."""
        live = [c for c in candles if c.close > 0]
        window = live[-self.sr_config['lookback']:]
        if not window:
            raise ValueError(f"No candles to analyze for {symbol}")

        price = current_price if current_price else window[-1].close

        pivots = find_pivots(window, self.sr_config['prd'])
        hl_range = high_low_range(window)
        max_width = self.sr_config['channel_width_pct'] / 100 * hl_range

        candidates = build_candidate_channels(pivots, max_width)
        for channel in candidates:
            channel.strength = score_channel(channel, window)

        channels = select_channels(
            candidates,
            self.sr_config['min_strength'],
            self.sr_config['max_channels']
        )
        nearest_support, nearest_resistance = classify_channels(channels, price)

        logger.info(
            f"📊 S/R {symbol}: {len(window)} candles, {len(pivots)} pivots, "
            f"{len(channels)} channels, price ₹{price:.2f}"
        )

        return SupportResistanceSnapshot(
            symbol=symbol,
            current_price=price,
            nearest_support=nearest_support,
            nearest_resistance=nearest_resistance,
            channels=channels,
            pivot_highs=[p for p in pivots if p.type == 'high'],
            pivot_lows=[p for p in pivots if p.type == 'low'],
            statistics={
                'total_pivots': len(pivots),
                'total_channels': len(channels),
                'high_low_range': round2(hl_range),
                'max_channel_width': round2(max_width)
            },
            analysis_date=today_ist_str()
        )

    def analyze(self, symbol: str) -> SupportResistanceSnapshot:
        """Fetch the symbol's series and analyze it."""
        if self.aggregator is None:
            raise ValueError("SupportResistanceDetector.analyze requires a market data aggregator")
        series = self.aggregator.get_series(symbol)
        return self.analyze_candles(symbol, series.combined())

    def get_multiple_support_resistance(self, symbols: List[str]) -> List[SupportResistanceSnapshot]:
        """Analyze several symbols, skipping the ones that fail."""
        results = []
        for symbol in symbols:
            try:
                results.append(self.analyze(symbol))
            except Exception as e:
                logger.error(f"❌ Failed to analyze S/R for {symbol}: {e}")
        return results
