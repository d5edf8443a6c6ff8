# mtf_trading/entry_signals.py
"""
Entry Signal Evaluator

Combines indicators, histogram momentum and resistance proximity into six
entry conditions:
- Price above EMA50
- RSI14 in (50, 70]
- RSI14 at or above its 14-period SMA
- MACD above its signal line
- Histogram positive for no more than 3 bars (early momentum)
- Nearest resistance at least 1.5% away

STRICT mode (authoritative for order placement): ENTRY only when all six
pass, otherwise NO_ENTRY.
RELAXED mode (advisory screening): ENTRY when all six pass, WATCHLIST at
four or more, with win-probability and risk/reward estimates.
"""

import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import config
from .indicators import compute_indicators
from .models import (
    Candle,
    EntryConditionSet,
    EntrySignalResult,
    ResistanceCheck,
    RiskAssessment,
    SignalType,
    TechnicalIndicators,
)
from .resilience import process_in_batches
from .support_resistance import (
    SupportResistanceDetector,
    check_resistance_proximity,
    fallback_resistance_check,
)
from .universe import get_sector
from .utils import get_ist_now, round2, to_ist

logger = logging.getLogger(__name__)


class EvaluationMode(str, Enum):
    STRICT = 'strict'
    RELAXED = 'relaxed'


# =============================================================================
# Condition evaluation (pure)
# =============================================================================

def evaluate_conditions(
    indicators: TechnicalIndicators,
    histogram_count: int,
    resistance_check: ResistanceCheck
) -> EntryConditionSet:
    """Build the six-condition set."""
    return EntryConditionSet(
        above_ema=indicators.close > indicators.ema50,
        rsi_in_range=config.RSI_LOWER < indicators.rsi14 <= config.RSI_UPPER,
        rsi_above_sma=indicators.rsi14 >= indicators.rsi14_sma,
        macd_bullish=indicators.macd > indicators.macd_signal,
        histogram_ok=histogram_count <= config.MAX_HISTOGRAM_BARS,
        resistance_ok=bool(resistance_check.passed)
    )


def weighted_confidence(conditions: EntryConditionSet) -> int:
    """Sum of CONDITION_WEIGHTS over satisfied conditions (0-100)."""
    return sum(
        weight for name, weight in config.CONDITION_WEIGHTS.items()
        if getattr(conditions, name)
    )


def describe_conditions(
    conditions: EntryConditionSet,
    indicators: TechnicalIndicators,
    histogram_count: int,
    resistance_check: ResistanceCheck
):
    """Human-readable (reasons, failures) for the six conditions."""
    reasons: List[str] = []
    failures: List[str] = []

    if conditions.above_ema:
        reasons.append('Price above EMA50 (Uptrend)')
    else:
        failures.append(f"Price below EMA50 (₹{indicators.close} < ₹{indicators.ema50})")

    if conditions.rsi_in_range:
        reasons.append(f"RSI in healthy range ({indicators.rsi14})")
    elif indicators.rsi14 <= config.RSI_LOWER:
        failures.append(f"RSI oversold/neutral ({indicators.rsi14} <= {config.RSI_LOWER:.0f})")
    else:
        failures.append(f"RSI overbought ({indicators.rsi14} > {config.RSI_UPPER:.0f})")

    if conditions.rsi_above_sma:
        reasons.append(f"RSI above SMA ({indicators.rsi14} >= {indicators.rsi14_sma})")
    else:
        failures.append(f"RSI below SMA ({indicators.rsi14} < {indicators.rsi14_sma})")

    if conditions.macd_bullish:
        reasons.append('MACD bullish signal')
    else:
        failures.append(f"MACD bearish ({indicators.macd} <= {indicators.macd_signal})")

    if conditions.histogram_ok:
        reasons.append(f"Early momentum phase ({histogram_count} bars)")
    else:
        failures.append(f"Late momentum entry ({histogram_count} > {config.MAX_HISTOGRAM_BARS} bars)")

    if conditions.resistance_ok:
        reasons.append(resistance_check.reason)
    else:
        failures.append(resistance_check.reason)

    return reasons, failures


def enhanced_conditions(indicators: TechnicalIndicators) -> Dict[str, bool]:
    """Secondary momentum checks used by RELAXED mode only."""
    ema50 = indicators.ema50 or indicators.close
    price_vs_ema50 = (indicators.close - ema50) / ema50 * 100 if ema50 else 0.0
    return {
        'strong_trend': price_vs_ema50 >= 2.0,
        'volume_confirmation': bool(indicators.avg_volume20) and indicators.volume > indicators.avg_volume20 * 1.2,
        'rsi_momentum_up': indicators.rsi_rising,
        'accelerating_macd': indicators.macd_accelerating,
        'above_ema20': indicators.ema20 is not None and indicators.close > indicators.ema20,
        'market_condition_ok': True
    }


def target_percent(resistance_check: ResistanceCheck) -> float:
    """Target scaled by distance to resistance, capped; default without resistance."""
    if resistance_check.distance_percent:
        return min(resistance_check.distance_percent * 0.8, config.TARGET1_CAP_PCT)
    return config.DEFAULT_TARGET_PCT


def win_probability(passed: int, enhanced: Dict[str, bool]) -> int:
    probability = 30
    if passed == 6:
        probability += 40
    if sum(1 for v in enhanced.values() if v) >= 4:
        probability += 20
    if enhanced.get('volume_confirmation'):
        probability += 10
    return probability


def assess_risk(close: float, resistance_check: ResistanceCheck, probability: int) -> RiskAssessment:
    """Stop 2.5% below close; targets scaled by resistance distance."""
    target = target_percent(resistance_check)
    target2 = min(target * 1.5, config.TARGET2_CAP_PCT)

    if probability > 80:
        size = 4.0
    elif probability > 70:
        size = 3.0
    else:
        size = 2.0

    if probability > 70:
        level = 'LOW'
    elif probability > 50:
        level = 'MEDIUM'
    else:
        level = 'HIGH'

    return RiskAssessment(
        level=level,
        stop_loss=round2(close * (1 - config.STOP_LOSS_PCT / 100)),
        target1=round2(close * (1 + target / 100)),
        target2=round2(close * (1 + target2 / 100)),
        position_size_percent=size
    )


def next_review(now: datetime) -> str:
    """End-of-day review on a trading day before the close, else next market day."""
    now = to_ist(now)
    if now.weekday() < 5 and now.time() < config.MARKET_CLOSE_TIME:
        return 'End of day (3:25 PM)'
    return 'Next market day'


# =============================================================================
# Evaluator
# =============================================================================

class EntrySignalEvaluator:
    """
    Entry evaluator parameterized by strictness.

    Usage:
        evaluator = EntrySignalEvaluator(aggregator)
        result = evaluator.evaluate('RELIANCE')
    """

    def __init__(
        self,
        aggregator=None,
        detector: Optional[SupportResistanceDetector] = None,
        mode: EvaluationMode = EvaluationMode.STRICT,
        clock: Callable[[], datetime] = get_ist_now
    ):
        self.aggregator = aggregator
        self.detector = detector or SupportResistanceDetector(aggregator)
        self.mode = EvaluationMode(mode)
        self._clock = clock

    def _resistance_check(self, symbol: str, candles: Sequence[Candle], price: float) -> ResistanceCheck:
        try:
            snapshot = self.detector.analyze_candles(symbol, candles, price)
        except Exception as e:
            logger.warning(f"⚠️ S/R analysis failed for {symbol}, using fallback policy: {e}")
            return fallback_resistance_check(candles)
        return check_resistance_proximity(price, snapshot, self.detector.sr_config['min_resistance_distance_pct'])

    def evaluate_candles(self, symbol: str, candles: Sequence[Candle]) -> EntrySignalResult:
        """Evaluate an already-fetched candle series."""
        live = [c for c in candles if c.close > 0]
        if not live:
            raise ValueError(f"No price data available for {symbol}")

        indicators = compute_indicators(live)
        hist_count = indicators.histogram_count
        resistance_check = self._resistance_check(symbol, live, indicators.close)

        conditions = evaluate_conditions(indicators, hist_count, resistance_check)
        reasons, failures = describe_conditions(conditions, indicators, hist_count, resistance_check)
        passed = conditions.passed_count
        now = self._clock()

        enhanced = enhanced_conditions(indicators)
        probability = win_probability(passed, enhanced)
        risk = assess_risk(indicators.close, resistance_check, probability)

        if self.mode == EvaluationMode.STRICT:
            confidence = weighted_confidence(conditions)
            if conditions.all_passed:
                signal = SignalType.ENTRY
                reasoning = f"🎯 ENTRY SIGNAL: All conditions met. {', '.join(reasons)}"
            else:
                signal = SignalType.NO_ENTRY
                reasoning = f"❌ NO ENTRY: {', '.join(failures)}"
            review = next_review(now)
            win_prob = None
            risk_reward = None
        else:
            enhanced_passed = sum(1 for v in enhanced.values() if v)
            confidence = round(passed / 6 * 60 + enhanced_passed / 6 * 40)
            if conditions.all_passed:
                signal = SignalType.ENTRY
                reasoning = f"🎯 ENTRY SIGNAL: {', '.join(reasons)}"
            elif passed >= config.WATCHLIST_MIN_CONDITIONS:
                signal = SignalType.WATCHLIST
                reasoning = f"👀 WATCHLIST: {', '.join(reasons)}. Missing: {', '.join(failures)}"
            else:
                signal = SignalType.NO_ENTRY
                reasoning = f"❌ NO ENTRY: {', '.join(failures)}"
            review = 'Next trading day'
            win_prob = probability
            risk_reward = round2(target_percent(resistance_check) / config.STOP_LOSS_PCT)

        return EntrySignalResult(
            symbol=symbol,
            exchange=config.LEMON_EXCHANGE,
            analysis_date=to_ist(now).strftime('%Y-%m-%d'),
            current_price=indicators.close,
            signal=signal,
            confidence=confidence,
            conditions=conditions,
            indicators=indicators,
            histogram_count=hist_count,
            resistance_check=resistance_check,
            reasoning=reasoning,
            risk_assessment=risk,
            next_review=review,
            mode=self.mode.value,
            win_probability=win_prob,
            risk_reward_ratio=risk_reward
        )

    def evaluate(self, symbol: str) -> EntrySignalResult:
        """
        Fetch the symbol's series and evaluate it.

        Raises:
            Market data errors (breaker open, retries exhausted, no data)
        """
        if self.aggregator is None:
            raise ValueError("EntrySignalEvaluator.evaluate requires a market data aggregator")
        series = self.aggregator.get_series(symbol)
        result = self.evaluate_candles(symbol, series.combined())

        if result.signal == SignalType.ENTRY:
            logger.info(f"🎯 ENTRY: {symbol} @ ₹{result.current_price:.2f} (confidence {result.confidence})")
        else:
            logger.debug(f"{result.signal.value}: {symbol} ({result.conditions_passed}/6)")
        return result

    # =========================================================================
    # Multi-symbol scans
    # =========================================================================

    def scan(
        self,
        symbols: List[str],
        batch_size: int = config.BATCH_CONCURRENCY,
        delay_between_batches: float = config.BATCH_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep
    ) -> List[Dict[str, Any]]:
        """Evaluate symbols in batches; one {'item', 'result', 'error'} per symbol."""
        return process_in_batches(symbols, self.evaluate, batch_size, delay_between_batches, sleep)

    def get_multiple_entry_signals(self, symbols: List[str], **batch_kwargs) -> List[EntrySignalResult]:
        """Successful evaluations only; failures are logged and skipped."""
        return [o['result'] for o in self.scan(symbols, **batch_kwargs) if o['error'] is None]

    def get_entry_signals_summary(self, symbols: List[str], **batch_kwargs) -> Dict[str, Any]:
        """Screening summary with top opportunities and a sector breakdown."""
        outcomes = self.scan(symbols, **batch_kwargs)
        signals = [o['result'] for o in outcomes if o['error'] is None]
        errors = [{'symbol': o['item'], 'error': o['error']} for o in outcomes if o['error'] is not None]
        return {
            'signals': signals,
            'summary': summarize_signals(signals, error_count=len(errors)),
            'errors': errors
        }


def summarize_signals(signals: List[EntrySignalResult], error_count: int = 0) -> Dict[str, Any]:
    """Totals, average confidence, top 3 ENTRY opportunities, sector breakdown."""
    entries = [s for s in signals if s.signal == SignalType.ENTRY]
    avg_confidence = round(sum(s.confidence for s in signals) / len(signals)) if signals else 0

    top_opportunities = [
        {'symbol': s.symbol, 'confidence': s.confidence, 'reasoning': s.reasoning}
        for s in sorted(entries, key=lambda s: s.confidence, reverse=True)[:3]
    ]

    sectors: Dict[str, Dict[str, Any]] = {}
    for s in signals:
        sector = get_sector(s.symbol)
        bucket = sectors.setdefault(sector, {'total': 0, 'entries': 0, '_confidence': 0})
        bucket['total'] += 1
        bucket['_confidence'] += s.confidence
        if s.signal == SignalType.ENTRY:
            bucket['entries'] += 1

    sector_breakdown = {
        sector: {
            'total': b['total'],
            'entries': b['entries'],
            'avg_confidence': round(b['_confidence'] / b['total'])
        }
        for sector, b in sectors.items()
    }

    return {
        'total': len(signals) + error_count,
        'entries': len(entries),
        'watchlist': sum(1 for s in signals if s.signal == SignalType.WATCHLIST),
        'no_entries': sum(1 for s in signals if s.signal == SignalType.NO_ENTRY),
        'errors': error_count,
        'avg_confidence': avg_confidence,
        'top_opportunities': top_opportunities,
        'sector_breakdown': sector_breakdown
    }
