# mtf_trading/utils.py
"""
Utility Functions for the MTF Trading Engine

Provides common utilities including:
- Audit logging
- IST market clock and market status
- File operations (locked JSON read / atomic write)
- Validation functions
- Order tag generation
- Formatting and P&L helpers
"""

import os
import json
import logging
import fcntl
import tempfile
import time as time_module
from collections import deque
from contextlib import contextmanager
from datetime import datetime, date, timedelta
from typing import Any, Dict, Optional, List, Tuple
import pytz

from . import config

logger = logging.getLogger(__name__)

IST = pytz.timezone(config.MARKET_TIMEZONE)


@contextmanager
def _locked(filepath: str, exclusive: bool):
    """Hold an flock on '<filepath>.lock' for the duration of the block."""
    with open(f"{filepath}.lock", 'w') as lf:
        fcntl.flock(lf.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
        try:
            yield
        finally:
            fcntl.flock(lf.fileno(), fcntl.LOCK_UN)


# =============================================================================
# AUDIT LOGGING
# =============================================================================

def log_audit_event(
    event_type: str,
    data: Dict[str, Any],
    outcome: str = 'SUCCESS'
) -> None:
    """
    Append one event to the audit trail (JSONL, one object per line).

    Args:
        event_type: ORDER_PLACED, POSITION_EXITED, TOKEN_REFRESHED, ...
        data: Event payload
        outcome: SUCCESS, FAILURE, ERROR, HALTED or CRITICAL
    """
    line = json.dumps({
        'timestamp': datetime.now(IST).isoformat(),
        'event_type': event_type,
        'outcome': outcome,
        'dry_run': config.DRY_RUN,
        'data': data
    }, default=str)

    try:
        os.makedirs(config.DATA_DIR, exist_ok=True)
        with _locked(config.AUDIT_LOG_FILE, exclusive=True):
            with open(config.AUDIT_LOG_FILE, 'a') as f:
                f.write(line + '\n')
    except OSError as e:
        # Trading continues without the audit line
        logger.error(f"Failed to write audit event {event_type}: {e}")


def read_recent_audit_events(
    event_type: Optional[str] = None,
    limit: int = 100
) -> List[Dict[str, Any]]:
    """Newest-first audit events, optionally filtered by event type."""
    if not os.path.exists(config.AUDIT_LOG_FILE):
        return []

    try:
        with _locked(config.AUDIT_LOG_FILE, exclusive=False):
            with open(config.AUDIT_LOG_FILE, 'r') as f:
                lines = f.readlines()
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    recent: deque = deque(maxlen=limit)
    for line in lines:
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if event_type is None or event.get('event_type') == event_type:
            recent.append(event)
    return list(reversed(recent))


# =============================================================================
# ORDER TAGS
# =============================================================================

def generate_order_tag(symbol: str, side: str, timestamp: Optional[datetime] = None) -> str:
    """
    Generate the broker order tag used to trace an order.

    Format: {SIDE}_{SYMBOL}_{EPOCH_MILLIS}
    """
    if timestamp is None:
        timestamp = datetime.now(IST)
    return f"{side}_{symbol}_{int(timestamp.timestamp() * 1000)}"


def epoch_millis() -> int:
    """Current time as epoch milliseconds."""
    return int(time_module.time() * 1000)


# =============================================================================
# DATE/TIME HELPERS (IST)
# =============================================================================

def get_ist_now() -> datetime:
    """Get current time in India Standard Time."""
    return datetime.now(IST)


def to_ist(dt: datetime) -> datetime:
    """Localize a naive datetime to IST or convert an aware one."""
    if dt.tzinfo is None:
        return IST.localize(dt)
    return dt.astimezone(IST)


def today_ist_str(now: Optional[datetime] = None) -> str:
    """Today's date in IST as YYYY-MM-DD."""
    now = to_ist(now) if now else get_ist_now()
    return now.strftime('%Y-%m-%d')


def is_trading_day(check_date: Optional[date] = None) -> bool:
    """Check if a date is a trading day (weekday check)."""
    if check_date is None:
        check_date = get_ist_now().date()
    return check_date.weekday() < 5


def _next_trading_day(d: date) -> date:
    nxt = d + timedelta(days=1)
    while nxt.weekday() >= 5:
        nxt += timedelta(days=1)
    return nxt


def get_market_status(now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Get the current NSE market status in IST.

    Args:
        now: Optional reference time (defaults to current IST time)

    Returns:
        Dictionary with is_open, is_after_hours, market_status
        (OPEN / CLOSED / PRE_MARKET / POST_MARKET / WEEKEND),
        current_time and next_market_open (ISO strings)
    """
    now = to_ist(now) if now else get_ist_now()
    open_t = config.MARKET_OPEN_TIME
    close_t = config.MARKET_CLOSE_TIME

    def _open_on(d: date) -> str:
        return IST.localize(datetime.combine(d, open_t)).isoformat()

    if not is_trading_day(now.date()):
        return {
            'is_open': False,
            'is_after_hours': False,
            'market_status': 'WEEKEND',
            'current_time': now.isoformat(),
            'next_market_open': _open_on(_next_trading_day(now.date()))
        }

    current = now.time()
    is_open = open_t <= current <= close_t
    is_pre_market = config.PRE_MARKET_START <= current < open_t
    is_after_hours = current > close_t

    if is_open:
        status = 'OPEN'
    elif is_pre_market:
        status = 'PRE_MARKET'
    elif is_after_hours:
        status = 'POST_MARKET'
    else:
        status = 'CLOSED'

    next_open = None
    if not is_open:
        next_day = _next_trading_day(now.date()) if is_after_hours else now.date()
        next_open = _open_on(next_day)

    return {
        'is_open': is_open,
        'is_after_hours': is_after_hours,
        'market_status': status,
        'current_time': now.isoformat(),
        'next_market_open': next_open
    }


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are treated as IST."""
    if not value:
        return None
    try:
        return to_ist(datetime.fromisoformat(str(value).replace('Z', '+00:00')))
    except ValueError:
        logger.warning(f"⚠️ Unparseable timestamp: {value}")
        return None


def format_datetime_for_display(dt: datetime) -> str:
    """Format datetime for display in logs/messages."""
    return to_ist(dt).strftime('%Y-%m-%d %I:%M %p IST')


# =============================================================================
# FILE OPERATIONS (locked reads, atomic replace on write)
# =============================================================================

def load_json_file(filepath: str, default: Any = None) -> Any:
    """
    Load a JSON state file under a shared lock.

    Returns:
        Parsed data, or default when the file is missing or unreadable
    """
    if not os.path.exists(filepath):
        return default

    try:
        with _locked(filepath, exclusive=False):
            with open(filepath, 'r') as f:
                return json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Corrupt JSON in {filepath}, using default: {e}")
    except OSError as e:
        logger.error(f"Failed to load {filepath}: {e}")
    return default


def save_json_file(filepath: str, data: Any, indent: int = 2) -> bool:
    """
    Write a JSON state file: temp file in the same directory, then
    os.replace, all under the exclusive lock.

    Returns:
        True if the file was replaced
    """
    directory = os.path.dirname(filepath) or '.'
    os.makedirs(directory, exist_ok=True)

    try:
        with _locked(filepath, exclusive=True):
            fd, temp_path = tempfile.mkstemp(dir=directory, prefix='.tmp_', suffix='.json')
            try:
                with os.fdopen(fd, 'w') as f:
                    json.dump(data, f, indent=indent, default=str)
                os.replace(temp_path, filepath)
            finally:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to save {filepath}: {e}")
        return False


# =============================================================================
# VALIDATION FUNCTIONS
# =============================================================================

def validate_symbol(symbol: str) -> Tuple[bool, str]:
    """
    Validate an NSE trading symbol (e.g. RELIANCE, M&M, BAJAJ-AUTO).

    Returns:
        Tuple of (is_valid, message)
    """
    if not symbol:
        return False, "Empty symbol"

    if not all(ch.isalnum() or ch in '&-' for ch in symbol):
        return False, "Symbol contains invalid characters"

    if len(symbol) > 20:
        return False, "Symbol too long (max 20 characters)"

    return True, "Valid"


def validate_quantity(qty: Any) -> Tuple[bool, str]:
    """Whole, positive share count (MTF orders have no fractional shares)."""
    if isinstance(qty, bool) or not isinstance(qty, (int, float)):
        return False, "Quantity must be a number"
    if int(qty) != qty:
        return False, "Quantity must be a whole number of shares"
    if qty <= 0:
        return False, "Quantity must be positive"
    return True, "Valid"


# =============================================================================
# FORMATTING HELPERS
# =============================================================================

def format_currency(value: float) -> str:
    """Format a value as rupees."""
    if value is None:
        return "₹0.00"

    if abs(value) >= 10_000_000:
        return f"₹{value/10_000_000:.2f}Cr"
    elif abs(value) >= 100_000:
        return f"₹{value/100_000:.2f}L"
    else:
        return f"₹{value:,.2f}"


def format_percentage(value: Optional[float], include_sign: bool = True) -> str:
    """6.5 -> '+6.50%'; the sign is only added to gains."""
    value = value or 0.0
    return f"+{value:.2f}%" if include_sign and value > 0 else f"{value:.2f}%"


def round2(value: float) -> float:
    """Round to 2 decimals (prices and indicator values)."""
    return round(float(value) * 100) / 100


# =============================================================================
# CALCULATION HELPERS
# =============================================================================

def calculate_pnl_pct(entry_price: float, exit_price: float) -> float:
    """Calculate P&L percentage."""
    if entry_price <= 0:
        return 0.0
    return ((exit_price - entry_price) / entry_price) * 100


def calculate_pnl_amount(entry_price: float, exit_price: float, quantity: int = 1) -> float:
    """Calculate P&L amount for a quantity of shares."""
    return (exit_price - entry_price) * quantity


# =============================================================================
# SAFETY CHECKS
# =============================================================================

def is_safe_to_trade(now: Optional[datetime] = None) -> Tuple[bool, str]:
    """
    Check if it's safe to open new positions right now.

    Gates BUY orders only; exits always go out. Orders outside market
    hours are still allowed as after-market orders.

    Returns:
        Tuple of (is_safe, reason)
    """
    if not config.TRADING_ENABLED:
        return False, "Trading disabled by kill switch"

    status = get_market_status(now)
    if not status['is_open']:
        return True, f"Market {status['market_status']} - order will be placed as AMO"

    return True, "Safe to trade"


if __name__ == '__main__':
    status = get_market_status()
    print(f"IST Time: {format_datetime_for_display(get_ist_now())}")
    print(f"Market Status: {status['market_status']}")
    print(f"Next Open: {status['next_market_open']}")
    print(f"Order Tag: {generate_order_tag('RELIANCE', 'BUY')}")
