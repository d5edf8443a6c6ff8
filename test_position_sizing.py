#!/usr/bin/env python3
"""
Test MTF position sizing, account eligibility and the daily P&L summary
that freezes trading for the rest of the day.
"""

import os
import sys
import tempfile
from contextlib import contextmanager
from datetime import datetime
from unittest.mock import MagicMock, patch

from mtf_trading import config
from mtf_trading.errors import TransientApiError
from mtf_trading.models import MarginInfo, TradingPreferences, UserPosition
from mtf_trading.position_sizing import (
    can_place_new_order,
    compute_position_size,
    get_eligible_trading_accounts,
    margin_per_share,
    size_position,
    update_daily_trading_summary,
)
from mtf_trading.repository import JsonRepository
from mtf_trading.utils import IST

NOW = IST.localize(datetime(2024, 6, 3, 11, 0))


@contextmanager
def temp_repository():
    with tempfile.TemporaryDirectory() as tmpdir:
        with patch.object(config, 'DATA_DIR', tmpdir), \
                patch.object(config, 'AUDIT_LOG_FILE', os.path.join(tmpdir, 'audit_log.jsonl')):
            yield JsonRepository(data_dir=tmpdir, clock=lambda: NOW)


def preferences(**overrides):
    values = dict(
        account_id='acct-1',
        total_capital=100000.0,
        allocation_percentage=10.0,
        max_concurrent_positions=2,
        daily_loss_limit_percentage=3.0,
        is_real_trading_enabled=True
    )
    values.update(overrides)
    return TradingPreferences(**values)


def add_account(repo, account_id='acct-1', client_id='CLIENT1', **prefs):
    values = dict(total_capital=100000, allocation_percentage=10, max_concurrent_positions=2,
                  daily_loss_limit_percentage=3.0, is_real_trading_enabled=True)
    values.update(prefs)
    repo.save_account({
        'account_id': account_id,
        'client_id': client_id,
        'public_key': 'pub',
        'private_key': '1f' * 32,
        'recipient': 'trader@example.com',
        'preferences': values
    })


def user_position(symbol, pnl_amount=0.0, entry_date='2024-06-03', account_id='acct-1'):
    return UserPosition(
        id=f"user-{symbol}",
        symbol=symbol,
        entry_price=100.0,
        entry_quantity=10,
        pnl_amount=pnl_amount,
        entry_date=entry_date,
        account_id=account_id
    )


def test_zero_margin_falls_back_to_20_percent():
    """Price 1000 with zero broker margin -> 200/share, 5x leverage"""
    per_share, used_fallback = margin_per_share(
        MarginInfo(symbol='LT', price=1000.0, approximate_margin=0.0, margin_per_share=0.0), 1000.0
    )
    size = compute_position_size(10000.0, 1000.0, per_share, used_fallback)

    assert per_share == 200.0 and used_fallback
    assert size.quantity == 50
    assert size.amount == 50000.0
    assert size.margin_required == 10000.0
    assert size.leverage == 5.0
    print(f"✅ Fallback sizing: qty {size.quantity}, leverage {size.leverage}x")


def test_quantity_floors():
    """Quantity is floor(allocation / margin per share)"""
    size = compute_position_size(10000.0, 2850.0, 712.5)
    assert size.quantity == 14
    assert size.margin_required == 9975.0
    assert size.leverage == 4.0
    print("✅ Quantity floored")


def test_size_position_with_broker():
    """Broker margin used when positive; failures and tiny allocations are reasons"""
    broker = MagicMock()
    broker.get_margin_info.return_value = MarginInfo(symbol='ITC', price=450.0,
                                                     approximate_margin=90.0, margin_per_share=90.0)

    size, reason = size_position(broker, preferences(), 'ITC', 450.0)
    assert reason is None
    assert size.quantity == 111 and not size.used_fallback

    broker.get_margin_info.side_effect = TransientApiError("HTTP 503")
    size, reason = size_position(broker, preferences(), 'ITC', 450.0)
    assert size is None and reason.startswith('Margin info unavailable')

    broker.get_margin_info.side_effect = None
    broker.get_margin_info.return_value = MarginInfo(symbol='MRF', price=130000.0,
                                                     approximate_margin=26000.0, margin_per_share=26000.0)
    size, reason = size_position(broker, preferences(), 'MRF', 130000.0)
    assert size is None and 'too small' in reason

    size, reason = size_position(broker, preferences(), 'MRF', 0)
    assert size is None and 'Invalid price' in reason
    print("✅ size_position reasons")


def test_eligibility_reasons():
    """Kill switch, real trading flag, position cap and daily stop"""
    with temp_repository() as repo:
        add_account(repo)
        add_account(repo, 'acct-2', is_real_trading_enabled=False)

        assert can_place_new_order(repo, 'acct-1', NOW) == (True, 'OK')
        assert can_place_new_order(repo, 'acct-2', NOW) == (False, 'Real trading not enabled')
        assert can_place_new_order(repo, 'missing', NOW) == (False, 'Real trading not enabled')

        with patch.object(config, 'TRADING_ENABLED', False):
            assert can_place_new_order(repo, 'acct-1', NOW) == (False, 'Trading disabled by kill switch')

        repo.upsert_user_position(user_position('TCS'))
        repo.upsert_user_position(user_position('INFY'))
        assert can_place_new_order(repo, 'acct-1', NOW) == (False, 'Maximum concurrent positions reached')
    print("✅ Eligibility reasons")


def test_daily_loss_limit_freezes_trading():
    """Loss of 3% of capital stops trading for the day; a new day starts fresh"""
    with temp_repository() as repo:
        add_account(repo, max_concurrent_positions=10)
        repo.upsert_user_position(user_position('TCS', pnl_amount=-2000.0))
        repo.upsert_user_position(user_position('INFY', pnl_amount=-1000.0))
        repo.upsert_user_position(user_position('SBIN', pnl_amount=-5000.0, entry_date='2024-05-31'))

        summary = update_daily_trading_summary(repo, 'acct-1', NOW)

        assert summary.daily_pnl == -3000.0
        assert summary.daily_pnl_percentage == -3.0
        assert summary.is_trading_stopped
        assert can_place_new_order(repo, 'acct-1', NOW) == (False, 'Daily loss limit reached - trading stopped')

        tomorrow = IST.localize(datetime(2024, 6, 4, 9, 30))
        assert can_place_new_order(repo, 'acct-1', tomorrow) == (True, 'OK')
    print("✅ Daily loss limit freezes trading")


def test_summary_within_limit():
    """A small loss leaves trading open and upserts by (account, date)"""
    with temp_repository() as repo:
        add_account(repo, max_concurrent_positions=10)
        repo.upsert_user_position(user_position('TCS', pnl_amount=-500.0))

        update_daily_trading_summary(repo, 'acct-1', NOW)
        repo.upsert_user_position(user_position('TCS', pnl_amount=-900.0))
        summary = update_daily_trading_summary(repo, 'acct-1', NOW)

        assert summary.daily_pnl_percentage == -0.9
        assert not summary.is_trading_stopped
        stored = repo.get_daily_summary('acct-1', '2024-06-03')
        assert stored.daily_pnl == -900.0
        assert can_place_new_order(repo, 'acct-1', NOW) == (True, 'OK')
    print("✅ Summary within limit")


def test_eligible_accounts_need_credentials():
    """Only enabled accounts with credentials are eligible"""
    with temp_repository() as repo:
        add_account(repo, 'acct-1')
        add_account(repo, 'acct-2', is_real_trading_enabled=False)
        add_account(repo, 'acct-3', client_id='')

        assert get_eligible_trading_accounts(repo) == ['acct-1']
    print("✅ Eligible accounts filtered")


if __name__ == '__main__':
    print("=" * 60)
    print("POSITION SIZING TESTS")
    print("=" * 60)

    try:
        test_zero_margin_falls_back_to_20_percent()
        test_quantity_floors()
        test_size_position_with_broker()
        test_eligibility_reasons()
        test_daily_loss_limit_freezes_trading()
        test_summary_within_limit()
        test_eligible_accounts_need_credentials()
        print("\n🎉 All position sizing tests passed!")
        sys.exit(0)
    except Exception as e:
        print(f"\n❌ Test failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
