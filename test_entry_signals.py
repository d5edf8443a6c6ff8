#!/usr/bin/env python3
"""
Test the entry signal evaluator: the six conditions, STRICT vs RELAXED
classification, confidence weights and the screening summary.
"""

import sys
from dataclasses import replace
from datetime import datetime
from unittest.mock import MagicMock, patch

from mtf_trading import config
from mtf_trading.entry_signals import (
    EntrySignalEvaluator,
    EvaluationMode,
    evaluate_conditions,
    next_review,
    summarize_signals,
    weighted_confidence,
)
from mtf_trading.models import (
    Candle,
    ChannelProjection,
    MarketSeries,
    ResistanceCheck,
    SignalType,
    SupportResistanceSnapshot,
    TechnicalIndicators,
)
from mtf_trading.utils import IST

NOW = IST.localize(datetime(2024, 6, 3, 11, 0))   # Monday, market open

GOOD = TechnicalIndicators(
    close=105.0,
    ema50=100.0,
    rsi14=60.0,
    rsi14_sma=55.0,
    macd=1.2,
    macd_signal=0.8,
    histogram=0.4,
    histogram_count=2,
    ema20=103.0,
    volume=1500,
    avg_volume20=1000
)

CANDLES = [Candle(date='2024-06-03', open=104, high=106, low=103, close=105, volume=1500)]


def snapshot(resistance_lower=110.0):
    resistance = None
    if resistance_lower is not None:
        resistance = ChannelProjection(upper=resistance_lower + 1, lower=resistance_lower,
                                       strength=60, distance_percent=0.0)
    return SupportResistanceSnapshot(
        symbol='TEST',
        current_price=105.0,
        nearest_support=ChannelProjection(upper=98, lower=97, strength=40, distance_percent=6.7),
        nearest_resistance=resistance
    )


def make_evaluator(mode=EvaluationMode.STRICT, resistance_lower=110.0):
    detector = MagicMock()
    detector.sr_config = dict(config.SR_CONFIG)
    detector.analyze_candles.return_value = snapshot(resistance_lower)
    return EntrySignalEvaluator(detector=detector, mode=mode, clock=lambda: NOW)


def evaluate(indicators, mode=EvaluationMode.STRICT, resistance_lower=110.0):
    evaluator = make_evaluator(mode, resistance_lower)
    with patch('mtf_trading.entry_signals.compute_indicators', return_value=indicators):
        return evaluator.evaluate_candles('RELIANCE', CANDLES)


# Each entry breaks exactly one of the six conditions
ONE_FAILURE = {
    'above_ema': (replace(GOOD, close=99.0), 110.0),
    'rsi_in_range': (replace(GOOD, rsi14=75.0), 110.0),
    'rsi_above_sma': (replace(GOOD, rsi14_sma=65.0), 110.0),
    'macd_bullish': (replace(GOOD, macd=0.5), 110.0),
    'histogram_ok': (replace(GOOD, histogram_count=4), 110.0),
    'resistance_ok': (GOOD, 106.0),
}


def test_rsi_range_boundaries():
    """RSI must be > 50 and <= 70"""
    passing = ResistanceCheck(passed=True, reason='ok')
    for rsi_value, expected in ((50.0, False), (50.01, True), (70.0, True), (70.01, False)):
        indicators = replace(GOOD, rsi14=rsi_value, rsi14_sma=40.0)
        conditions = evaluate_conditions(indicators, 1, passing)
        assert conditions.rsi_in_range is expected, f"RSI {rsi_value}: expected {expected}"
    print("✅ RSI range boundaries")


def test_histogram_boundary():
    """Three positive bars is still early momentum, four is late"""
    passing = ResistanceCheck(passed=True, reason='ok')
    assert evaluate_conditions(GOOD, 3, passing).histogram_ok
    assert evaluate_conditions(GOOD, 0, passing).histogram_ok
    assert not evaluate_conditions(GOOD, 4, passing).histogram_ok
    print("✅ Histogram bar boundary")


def test_strict_entry_when_all_six_pass():
    """All six conditions -> ENTRY with confidence 100"""
    result = evaluate(GOOD)

    assert result.signal == SignalType.ENTRY
    assert result.conditions.all_passed
    assert result.confidence == 100
    assert result.win_probability is None
    assert result.next_review == 'End of day (3:25 PM)'
    assert result.risk_assessment.stop_loss < result.current_price < result.risk_assessment.target1
    print(f"✅ STRICT ENTRY: {result.reasoning[:60]}...")


def test_strict_any_single_failure_is_no_entry():
    """Five of six never produces ENTRY or WATCHLIST in STRICT mode"""
    for condition, (indicators, resistance_lower) in ONE_FAILURE.items():
        result = evaluate(indicators, resistance_lower=resistance_lower)
        assert result.signal == SignalType.NO_ENTRY, f"{condition} failing still gave {result.signal}"
        assert not getattr(result.conditions, condition)
        assert result.conditions_passed == 5
        assert result.confidence == 100 - config.CONDITION_WEIGHTS[condition]
    print("✅ STRICT: every single failure -> NO_ENTRY")


def test_relaxed_watchlist_and_no_entry():
    """RELAXED: 4-5 conditions -> WATCHLIST, fewer -> NO_ENTRY"""
    five = evaluate(replace(GOOD, macd=0.5), mode=EvaluationMode.RELAXED)
    four = evaluate(replace(GOOD, macd=0.5, rsi14=75.0), mode=EvaluationMode.RELAXED)
    three = evaluate(replace(GOOD, macd=0.5, rsi14=75.0, histogram_count=9),
                     mode=EvaluationMode.RELAXED)

    assert five.signal == SignalType.WATCHLIST
    assert four.signal == SignalType.WATCHLIST
    assert three.signal == SignalType.NO_ENTRY
    assert five.mode == 'relaxed' and five.next_review == 'Next trading day'
    print("✅ RELAXED watchlist thresholds")


def test_relaxed_entry_extras():
    """RELAXED ENTRY carries win probability, risk/reward and risk level"""
    result = evaluate(GOOD, mode=EvaluationMode.RELAXED)

    # strong trend, volume, above EMA20, market ok -> 4 secondary checks
    assert result.signal == SignalType.ENTRY
    assert result.win_probability == 100
    assert result.confidence == 87
    assert result.risk_assessment.level == 'LOW'
    assert result.risk_assessment.position_size_percent == 4.0
    assert result.risk_reward_ratio > 0
    print(f"✅ RELAXED extras: win={result.win_probability}% R:R={result.risk_reward_ratio}")


def test_sr_failure_uses_fallback_policy():
    """S/R analysis failure with thin history fails the resistance condition"""
    evaluator = make_evaluator()
    evaluator.detector.analyze_candles.side_effect = ValueError("no pivots")
    with patch('mtf_trading.entry_signals.compute_indicators', return_value=GOOD):
        result = evaluator.evaluate_candles('TCS', CANDLES)

    assert not result.conditions.resistance_ok
    assert result.signal == SignalType.NO_ENTRY
    print("✅ S/R failure -> fallback (fail closed)")


def test_evaluate_uses_aggregator_series():
    """evaluate() fetches the series and skips the placeholder candle"""
    aggregator = MagicMock()
    placeholder = Candle(date='2024-06-03', open=0, high=0, low=0, close=0)
    aggregator.get_series.return_value = MarketSeries(symbol='INFY', historical=CANDLES, today=placeholder)
    evaluator = make_evaluator()
    evaluator.aggregator = aggregator

    with patch('mtf_trading.entry_signals.compute_indicators', return_value=GOOD) as compute:
        result = evaluator.evaluate('INFY')

    assert result.signal == SignalType.ENTRY
    assert compute.call_args[0][0] == CANDLES
    print("✅ evaluate() uses aggregator series")


def test_weighted_confidence_sums_to_100():
    """Condition weights sum to 100"""
    passing = ResistanceCheck(passed=True, reason='ok')
    assert weighted_confidence(evaluate_conditions(GOOD, 1, passing)) == 100
    assert sum(config.CONDITION_WEIGHTS.values()) == 100
    print("✅ Confidence weights")


def test_next_review():
    """Before the close on a weekday -> end of day; after close or weekend -> next day"""
    assert next_review(NOW) == 'End of day (3:25 PM)'
    assert next_review(IST.localize(datetime(2024, 6, 3, 16, 0))) == 'Next market day'
    assert next_review(IST.localize(datetime(2024, 6, 1, 11, 0))) == 'Next market day'
    print("✅ Next review timing")


def test_summary_top_opportunities_and_sectors():
    """Summary counts, top 3 by confidence and sector breakdown"""
    results = [
        replace(evaluate(GOOD), symbol='RELIANCE', confidence=90),
        replace(evaluate(GOOD), symbol='TCS', confidence=95),
        replace(evaluate(GOOD), symbol='INFY', confidence=80),
        replace(evaluate(GOOD), symbol='HDFCBANK', confidence=85),
        evaluate(replace(GOOD, macd=0.5)),
    ]

    summary = summarize_signals(results, error_count=1)

    assert summary['total'] == 6
    assert summary['entries'] == 4
    assert summary['no_entries'] == 1
    assert summary['errors'] == 1
    assert [t['symbol'] for t in summary['top_opportunities']] == ['TCS', 'RELIANCE', 'HDFCBANK']
    assert summary['sector_breakdown']['IT']['total'] == 2
    print(f"✅ Summary: {summary['sector_breakdown']}")


if __name__ == '__main__':
    print("=" * 60)
    print("ENTRY SIGNAL TESTS")
    print("=" * 60)

    try:
        test_rsi_range_boundaries()
        test_histogram_boundary()
        test_strict_entry_when_all_six_pass()
        test_strict_any_single_failure_is_no_entry()
        test_relaxed_watchlist_and_no_entry()
        test_relaxed_entry_extras()
        test_sr_failure_uses_fallback_policy()
        test_evaluate_uses_aggregator_series()
        test_weighted_confidence_sums_to_100()
        test_next_review()
        test_summary_top_opportunities_and_sectors()
        print("\n🎉 All entry signal tests passed!")
        sys.exit(0)
    except Exception as e:
        print(f"\n❌ Test failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
