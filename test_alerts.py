#!/usr/bin/env python3
"""
Test notification rendering and delivery with an in-memory transport.
"""

import smtplib
import sys
from datetime import datetime
from unittest.mock import MagicMock, patch

from mtf_trading import config
from mtf_trading.alerts import NotificationService, clean_recipient
from mtf_trading.entry_signals import EntrySignalEvaluator
from mtf_trading.models import (
    Candle,
    ChannelProjection,
    ExitSignal,
    ExitType,
    SignalType,
    SupportResistanceSnapshot,
    TechnicalIndicators,
)
from mtf_trading.utils import IST

NOW = IST.localize(datetime(2024, 6, 3, 11, 0))


class RecordingTransport:
    def __init__(self, fail_for=None):
        self.sent = []
        self.fail_for = fail_for or set()

    def __call__(self, recipient, subject, body):
        if recipient in self.fail_for:
            raise smtplib.SMTPException("mailbox unavailable")
        self.sent.append((recipient, subject, body))


def entry_result(symbol='RELIANCE', macd=1.2):
    indicators = TechnicalIndicators(close=105.0, ema50=100.0, rsi14=60.0, rsi14_sma=55.0, macd=macd,
                                     macd_signal=0.8, histogram=0.4, histogram_count=2, ema20=103.0,
                                     volume=1500, avg_volume20=1000)
    detector = MagicMock()
    detector.sr_config = dict(config.SR_CONFIG)
    detector.analyze_candles.return_value = SupportResistanceSnapshot(
        symbol=symbol,
        current_price=105.0,
        nearest_support=None,
        nearest_resistance=ChannelProjection(upper=111, lower=110, strength=60, distance_percent=4.8)
    )
    evaluator = EntrySignalEvaluator(detector=detector, clock=lambda: NOW)
    candles = [Candle(date='2024-06-03', open=104, high=106, low=103, close=105, volume=1500)]
    with patch('mtf_trading.entry_signals.compute_indicators', return_value=indicators):
        return evaluator.evaluate_candles(symbol, candles)


def make_service(transport, recipients=('trader@example.com',)):
    return NotificationService(recipients=list(recipients), transport=transport, enabled=True)


def test_clean_recipient():
    assert clean_recipient(' "trader@example.com" ') == 'trader@example.com'
    assert clean_recipient('a@example.com, b@example.com') == 'a@example.com'
    assert clean_recipient('a@example.com;b@example.com') == 'a@example.com'
    assert clean_recipient('not an email') is None
    assert clean_recipient('') is None
    print("✅ Recipient cleaning")


def test_entry_notifications_only_for_entry():
    """WATCHLIST / NO_ENTRY never produce a message"""
    entry = entry_result('RELIANCE')
    no_entry = entry_result('TCS', macd=0.5)
    assert entry.signal == SignalType.ENTRY and no_entry.signal == SignalType.NO_ENTRY

    transport = RecordingTransport()
    service = make_service(transport)
    with patch('mtf_trading.alerts.log_audit_event'):
        sent = service.send_entry_notifications(
            [entry, no_entry],
            orders={'RELIANCE': {'quantity': 47, 'amount': 4935.0, 'leverage': 5.0, 'is_amo': True}}
        )

    assert sent == 1
    recipient, subject, body = transport.sent[0]
    assert subject.startswith('🎯 MTF Entry: RELIANCE')
    assert 'RELIANCE @ ₹105.00' in body
    assert '47 shares' in body and 'after-market order' in body
    print("✅ Entry notifications for ENTRY only")


def test_exit_and_trailing_messages():
    transport = RecordingTransport()
    service = make_service(transport)
    exit_signal = ExitSignal(symbol='INFY', exit_type=ExitType.TRAILING_STOP, exit_reason='Level 5 lock-in hit',
                             current_price=103.4, exit_price=103.4, pnl_amount=3.4, pnl_percentage=3.4,
                             trailing_level=5)
    notification = {
        'symbol': 'ITC', 'new_level': 5, 'previous_level': 1, 'level_description': 'Momentum Build',
        'current_price': 106.5, 'pnl_percentage': 6.5, 'lock_in_price': 103.5
    }

    with patch('mtf_trading.alerts.log_audit_event'):
        assert service.send_exit_notifications([exit_signal]) == 1
        assert service.send_trailing_level_notifications([notification]) == 1

    (_, exit_subject, exit_body), (_, level_subject, level_body) = transport.sent
    assert exit_subject == '🚨 MTF Exit: INFY TRAILING_STOP (+3.40%)'
    assert 'TRAILING STOP' in exit_body and 'trailing level 5' in exit_body
    assert 'RSI' not in exit_body
    assert level_subject == '📈 ITC Level 5 - profit locked'
    assert 'Momentum Build' in level_body and '₹103.50' in level_body
    print("✅ Exit and trailing level messages")


def test_delivery_failure_is_audited_not_raised():
    """A failing recipient does not stop the others"""
    transport = RecordingTransport(fail_for={'bad@example.com'})
    service = make_service(transport, recipients=('bad@example.com', 'good@example.com'))

    with patch('mtf_trading.alerts.log_audit_event') as audit:
        delivered = service.send_critical_alert('Monitor degraded', '15 consecutive failures')

    assert delivered == 1
    assert [r for r, _, _ in transport.sent] == ['good@example.com']
    assert audit.call_args_list[0][0][0] == 'ALERT_FAILED'
    print("✅ Delivery failure audited")


def test_disabled_and_no_recipients():
    transport = RecordingTransport()
    disabled = NotificationService(recipients=['trader@example.com'], transport=transport, enabled=False)
    nobody = make_service(transport, recipients=())

    assert disabled.send_critical_alert('Halt', 'kill switch') == 0
    assert nobody.send_critical_alert('Halt', 'kill switch') == 0
    assert transport.sent == []
    print("✅ Disabled / no recipients")


if __name__ == '__main__':
    print("=" * 60)
    print("NOTIFICATION TESTS")
    print("=" * 60)

    try:
        test_clean_recipient()
        test_entry_notifications_only_for_entry()
        test_exit_and_trailing_messages()
        test_delivery_failure_is_audited_not_raised()
        test_disabled_and_no_recipients()
        print("\n🎉 All notification tests passed!")
        sys.exit(0)
    except Exception as e:
        print(f"\n❌ Test failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
