#!/usr/bin/env python3
"""
Test the IST market clock, validation, order tags, formatting and the
locked JSON / audit log helpers.
"""

import os
import sys
import tempfile
from datetime import datetime
from unittest.mock import patch

from mtf_trading import config
from mtf_trading.utils import (
    IST,
    format_currency,
    format_percentage,
    generate_order_tag,
    get_market_status,
    is_safe_to_trade,
    load_json_file,
    log_audit_event,
    parse_timestamp,
    read_recent_audit_events,
    round2,
    save_json_file,
    validate_quantity,
    validate_symbol,
)


def ist(*args):
    return IST.localize(datetime(*args))


def test_market_status_weekday():
    """OPEN, PRE_MARKET, CLOSED and POST_MARKET on a Monday"""
    assert get_market_status(ist(2024, 6, 3, 9, 15))['market_status'] == 'OPEN'
    assert get_market_status(ist(2024, 6, 3, 15, 30))['market_status'] == 'OPEN'

    pre = get_market_status(ist(2024, 6, 3, 9, 5))
    assert pre['market_status'] == 'PRE_MARKET'
    assert pre['next_market_open'] == '2024-06-03T09:15:00+05:30'

    early = get_market_status(ist(2024, 6, 3, 7, 0))
    assert early['market_status'] == 'CLOSED'
    assert early['next_market_open'] == '2024-06-03T09:15:00+05:30'

    post = get_market_status(ist(2024, 6, 3, 15, 31))
    assert post['market_status'] == 'POST_MARKET' and post['is_after_hours']
    assert post['next_market_open'] == '2024-06-04T09:15:00+05:30'
    print("✅ Weekday market status")


def test_market_status_weekend_and_friday_close():
    """Weekend and Friday evening roll over to Monday's open"""
    saturday = get_market_status(ist(2024, 6, 1, 11, 0))
    friday = get_market_status(ist(2024, 6, 7, 18, 0))

    assert saturday['market_status'] == 'WEEKEND' and not saturday['is_open']
    assert saturday['next_market_open'] == '2024-06-03T09:15:00+05:30'
    assert friday['next_market_open'] == '2024-06-10T09:15:00+05:30'
    print("✅ Weekend rollover")


def test_naive_and_utc_times_are_converted():
    """UTC 04:00 is 09:30 IST; naive values are taken as IST"""
    from pytz import utc
    assert get_market_status(utc.localize(datetime(2024, 6, 3, 4, 0)))['is_open']
    assert get_market_status(datetime(2024, 6, 3, 10, 0))['is_open']
    assert parse_timestamp('2024-06-03T04:00:00Z').hour == 9
    assert parse_timestamp('garbage') is None
    assert parse_timestamp(None) is None
    print("✅ Time zone conversion")


def test_validate_symbol():
    """NSE symbols allow '&' and '-'"""
    for symbol in ('RELIANCE', 'M&M', 'BAJAJ-AUTO', 'NIFTY50'):
        assert validate_symbol(symbol)[0], symbol
    assert validate_symbol('') == (False, "Empty symbol")
    assert not validate_symbol('TCS.NS')[0]
    assert not validate_symbol('A' * 21)[0]
    print("✅ Symbol validation")


def test_validate_quantity():
    """Whole positive share counts only"""
    assert validate_quantity(1) == (True, "Valid")
    assert validate_quantity(7.0)[0]
    assert not validate_quantity(0)[0]
    assert not validate_quantity(-5)[0]
    assert not validate_quantity(2.5)[0]
    assert not validate_quantity(True)[0]
    assert not validate_quantity("10")[0]
    print("✅ Quantity validation")


def test_order_tag_format():
    """{SIDE}_{SYMBOL}_{EPOCH_MILLIS}"""
    ts = ist(2024, 6, 3, 9, 15)
    tag = generate_order_tag('M&M', 'BUY', ts)
    side, symbol, millis = tag.split('_')

    assert (side, symbol) == ('BUY', 'M&M')
    assert int(millis) == int(ts.timestamp() * 1000)
    print(f"✅ Order tag: {tag}")


def test_formatting():
    assert format_currency(1500) == '₹1,500.00'
    assert format_currency(250000) == '₹2.50L'
    assert format_currency(12345678) == '₹1.23Cr'
    assert format_currency(None) == '₹0.00'
    assert format_percentage(6.5) == '+6.50%'
    assert format_percentage(-2.5) == '-2.50%'
    assert round2(103.456) == 103.46
    print("✅ Formatting helpers")


def test_kill_switch_and_amo():
    """Closed market is still safe (AMO); kill switch is not"""
    safe, reason = is_safe_to_trade(ist(2024, 6, 3, 18, 0))
    assert safe and 'AMO' in reason

    with patch.object(config, 'TRADING_ENABLED', False):
        safe, reason = is_safe_to_trade(ist(2024, 6, 3, 11, 0))
    assert not safe and 'disabled' in reason
    print("✅ Kill switch / AMO")


def test_json_files_and_audit_log():
    """Atomic JSON save/load and newest-first audit filtering"""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, 'nested', 'state.json')
        assert load_json_file(path, default={'empty': True}) == {'empty': True}
        assert save_json_file(path, {'positions': [1, 2]})
        assert load_json_file(path) == {'positions': [1, 2]}

        with open(path, 'w') as f:
            f.write('{broken')
        assert load_json_file(path, default=[]) == []

        with patch.object(config, 'DATA_DIR', tmpdir), \
                patch.object(config, 'AUDIT_LOG_FILE', os.path.join(tmpdir, 'audit_log.jsonl')):
            log_audit_event('ORDER_PLACED', {'symbol': 'TCS'})
            log_audit_event('ORDER_FAILED', {'symbol': 'INFY'}, outcome='FAILURE')
            log_audit_event('ORDER_PLACED', {'symbol': 'ITC'})

            placed = read_recent_audit_events('ORDER_PLACED')
            everything = read_recent_audit_events(limit=2)

        assert [e['data']['symbol'] for e in placed] == ['ITC', 'TCS']
        assert len(everything) == 2 and everything[1]['outcome'] == 'FAILURE'
    print("✅ JSON files and audit log")


if __name__ == '__main__':
    print("=" * 60)
    print("UTILS TESTS")
    print("=" * 60)

    try:
        test_market_status_weekday()
        test_market_status_weekend_and_friday_close()
        test_naive_and_utc_times_are_converted()
        test_validate_symbol()
        test_validate_quantity()
        test_order_tag_format()
        test_formatting()
        test_kill_switch_and_amo()
        test_json_files_and_audit_log()
        print("\n🎉 All utils tests passed!")
        sys.exit(0)
    except Exception as e:
        print(f"\n❌ Test failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
