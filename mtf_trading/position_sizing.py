# mtf_trading/position_sizing.py
"""
Position Sizing and Trading Eligibility

Features:
- Margin-based quantity: floor(allocation / margin per share)
- 20% margin fallback (5x leverage) when the broker reports zero margin
- Pre-BUY eligibility: trading enabled, concurrent position cap, daily loss limit
- Daily P&L summary that freezes an account for the rest of the trading day
"""

import logging
import math
from typing import List, Optional, Tuple

from . import config
from .errors import TradingSystemError
from .models import DailySummary, MarginInfo, PositionSize, TradingPreferences
from .utils import is_safe_to_trade, log_audit_event, round2, today_ist_str

logger = logging.getLogger(__name__)


def margin_per_share(margin: MarginInfo, price: float) -> Tuple[float, bool]:
    """
    Per-share margin with the default fallback.

    Returns:
        (margin_per_share, used_fallback)
    """
    if margin.margin_per_share > 0:
        return margin.margin_per_share, False
    fallback = price * config.DEFAULT_MARGIN_FALLBACK_PCT
    logger.warning(f"⚠️ Using fallback margin ({config.DEFAULT_MARGIN_FALLBACK_PCT:.0%}) for {margin.symbol}: ₹{fallback:.2f} per share")
    return fallback, True


def compute_position_size(
    allocation_amount: float,
    price: float,
    per_share_margin: float,
    used_fallback: bool = False
) -> PositionSize:
    """Quantity, notional and margin for an allocation."""
    quantity = int(math.floor(allocation_amount / per_share_margin)) if per_share_margin > 0 else 0
    return PositionSize(
        quantity=quantity,
        amount=round2(quantity * price),
        margin_required=round2(quantity * per_share_margin),
        leverage=round2(price / per_share_margin) if per_share_margin > 0 else 0.0,
        margin_per_share=round2(per_share_margin),
        used_fallback=used_fallback
    )


def size_position(
    broker,
    preferences: TradingPreferences,
    symbol: str,
    price: float
) -> Tuple[Optional[PositionSize], Optional[str]]:
    """
    Size an MTF BUY for an account.

    Args:
        broker: BrokerClient for the account
        preferences: Account trading preferences (capital, allocation %)
        symbol: Stock symbol
        price: Reference price

    Returns:
        (PositionSize, None) on success, (None, reason) otherwise
    """
    if price <= 0:
        return None, f"Invalid price for {symbol}: {price}"

    allocation = preferences.allocation_amount
    if allocation <= 0:
        return None, f"No capital allocated for account {preferences.account_id}"

    try:
        margin = broker.get_margin_info(symbol, price)
    except TradingSystemError as e:
        logger.error(f"❌ Failed to get margin info for {symbol}: {e}")
        return None, f"Margin info unavailable: {e}"

    per_share, used_fallback = margin_per_share(margin, price)
    size = compute_position_size(allocation, price, per_share, used_fallback)

    if size.quantity <= 0:
        reason = f"Allocation ₹{allocation:.2f} too small for {symbol} (margin ₹{per_share:.2f}/share)"
        logger.warning(f"⚠️ {reason}")
        return None, reason

    logger.info(
        f"📊 MTF sizing {symbol}: qty {size.quantity} @ ₹{price:.2f}, "
        f"margin ₹{size.margin_required:.2f}, leverage {size.leverage:.2f}x"
    )
    return size, None


# =============================================================================
# ELIGIBILITY
# =============================================================================

def can_place_new_order(repository, account_id: str, now=None) -> Tuple[bool, str]:
    """
    Check trading limits before a BUY.

    Returns:
        (can_trade, reason)
    """
    safe, reason = is_safe_to_trade(now)
    if not safe:
        return False, reason

    preferences = repository.get_trading_preferences(account_id)
    if preferences is None or not preferences.is_real_trading_enabled:
        return False, 'Real trading not enabled'

    active = repository.get_active_user_positions(account_id)
    if len(active) >= preferences.max_concurrent_positions:
        return False, 'Maximum concurrent positions reached'

    summary = repository.get_daily_summary(account_id, today_ist_str(now))
    if summary is not None:
        if summary.is_trading_stopped:
            return False, 'Daily loss limit reached - trading stopped'
        if abs(summary.daily_pnl_percentage) >= preferences.daily_loss_limit_percentage:
            return False, 'Daily loss limit exceeded'

    return True, 'OK'


def update_daily_trading_summary(repository, account_id: str, now=None) -> Optional[DailySummary]:
    """
    Recompute today's P&L for an account and upsert the daily summary.

    P&L covers positions entered today (realized and unrealized). A new
    trading date starts a fresh summary.
    """
    preferences = repository.get_trading_preferences(account_id)
    if preferences is None or preferences.total_capital <= 0:
        return None

    today = today_ist_str(now)
    positions = [p for p in repository.get_user_positions(account_id) if p.entry_date == today]
    daily_pnl = sum(p.pnl_amount or 0 for p in positions)
    daily_pct = daily_pnl / preferences.total_capital * 100
    stopped = abs(daily_pct) >= preferences.daily_loss_limit_percentage

    summary = repository.upsert_daily_summary(DailySummary(
        account_id=account_id,
        trading_date=today,
        daily_pnl=round2(daily_pnl),
        daily_pnl_percentage=round2(daily_pct),
        is_trading_stopped=stopped
    ))

    if stopped:
        logger.critical(f"🚨 Trading stopped for account {account_id} - daily loss limit reached: {daily_pct:.2f}%")
        log_audit_event('TRADING_STOPPED', {
            'account_id': account_id,
            'trading_date': today,
            'daily_pnl_percentage': round2(daily_pct)
        }, outcome='HALTED')

    return summary


def get_eligible_trading_accounts(repository) -> List[str]:
    """Accounts with credentials and real trading enabled."""
    eligible = []
    for account_id in repository.get_account_ids():
        preferences = repository.get_trading_preferences(account_id)
        if preferences is None or not preferences.is_real_trading_enabled:
            continue
        if repository.get_credentials(account_id) is None:
            logger.warning(f"⚠️ Account {account_id} has trading enabled but no credentials")
            continue
        eligible.append(account_id)

    logger.info(f"✅ Found {len(eligible)} eligible accounts for real trading")
    return eligible
