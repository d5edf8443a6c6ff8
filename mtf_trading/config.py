# mtf_trading/config.py
"""
Configuration for the MTF Equity Trading Engine

This module contains all configuration parameters for the scan / monitor system.
Every value can be overridden through environment variables (or a .env file).
Parameters are designed for safety-first operation with conservative defaults.
"""

import os
from datetime import time
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent / '.env')
load_dotenv()

# =============================================================================
# TRADING MODE
# =============================================================================
# Manual kill switch - set to 'false' to halt all order placement
TRADING_ENABLED = os.getenv('TRADING_ENABLED', 'true').lower() == 'true'

# Dry run: scans and monitors run normally but no order is sent to the broker
DRY_RUN = os.getenv('MTF_DRY_RUN', 'false').lower() == 'true'

# =============================================================================
# BROKER API CREDENTIALS
# =============================================================================
LEMON_BASE_URL = os.getenv('LEMON_BASE_URL', 'https://cs-prod.lemonn.co.in')
LEMON_CLIENT_ID = os.getenv('LEMON_CLIENT_ID')
LEMON_PUBLIC_KEY = os.getenv('LEMON_PUBLIC_KEY')     # sent as x-api-key
LEMON_PRIVATE_KEY = os.getenv('LEMON_PRIVATE_KEY')   # 32-byte Ed25519 seed, hex encoded
LEMON_EXCHANGE = os.getenv('LEMON_EXCHANGE', 'NSE')

REQUEST_TIMEOUT_SECONDS = float(os.getenv('REQUEST_TIMEOUT_SECONDS', '30'))

# Endpoint paths (relative to LEMON_BASE_URL)
TOKEN_PATH = '/api-trading/api/v1/generate_access_token'
CHART_PATH = '/api-trading/api/v2/market-data/chart'
HISTORICAL_CHART_PATH = '/api-trading/api/v2/market-data/historical-chart'
LTP_PATH = '/api-trading/api/v2/market-data/ltp'
MARGIN_INFO_PATH = '/api-trading/api/v2/margin-info'
ORDERS_PATH = '/api-trading/api/v2/orders'

# =============================================================================
# TOKEN COORDINATION
# =============================================================================
TOKEN_REFRESH_BUFFER_SECONDS = 300   # Token is "valid" only with > 5 min left
TOKEN_DEFAULT_TTL_HOURS = 24         # Used when the broker omits expires_at

# =============================================================================
# RESILIENCE - RETRY, CIRCUIT BREAKER, CACHE
# =============================================================================
RETRY_MAX_ATTEMPTS = int(os.getenv('RETRY_MAX_ATTEMPTS', '3'))
RETRY_BASE_DELAY_SECONDS = 1.0       # Backoff: 1s, 2s, 4s ... capped
RETRY_MAX_DELAY_SECONDS = 10.0
RETRY_BACKOFF_MULTIPLIER = 2.0

CIRCUIT_BREAKER_THRESHOLD = 10       # Open after 10 cumulative failures
CIRCUIT_BREAKER_RESET_SECONDS = 300  # Auto-close 5 min after the last failure

CHART_CACHE_TTL_SECONDS = 3600        # Intraday chart responses: 1 hour
HISTORICAL_CACHE_TTL_SECONDS = 14400  # Multi-year daily bars: 4 hours

# =============================================================================
# RATE LIMITING / BATCHING
# =============================================================================
BATCH_CONCURRENCY = 3                 # Symbols processed in parallel per batch
BATCH_DELAY_SECONDS = 2.0             # Pause between batches
SYMBOL_DELAY_SECONDS = 0.5            # Pause between sequential symbols
MONITOR_POSITION_DELAY_SECONDS = 0.5  # Pause between monitored positions

# =============================================================================
# MARKET DATA (India, NSE)
# =============================================================================
MARKET_TIMEZONE = 'Asia/Kolkata'
HISTORICAL_INTERVAL = '3Y'
HISTORICAL_YEARS = 3
INTRADAY_INTERVAL = '1m'

MARKET_OPEN_TIME = time(9, 15)        # 9:15 AM IST
MARKET_CLOSE_TIME = time(15, 30)      # 3:30 PM IST
PRE_MARKET_START = time(9, 0)         # 9:00 AM IST
INTRADAY_SESSION_START = time(9, 0)   # First intraday tick requested

# =============================================================================
# SUPPORT / RESISTANCE DETECTION
# =============================================================================
SR_CONFIG = {
    'prd': 10,                         # Pivot period (bars on each side)
    'channel_width_pct': 5.0,          # Max channel width, % of high-low range
    'min_strength': 1,                 # Minimum strength (x20 internally)
    'max_channels': 6,                 # Channels kept after selection
    'lookback': 290,                   # Candles used for the analysis
    'min_resistance_distance_pct': 1.5,
}

# =============================================================================
# INDICATORS
# =============================================================================
EMA_PERIOD = 50
EMA_SHORT_PERIOD = 20
RSI_PERIOD = 14
RSI_SMA_PERIOD = 14
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9

# =============================================================================
# ENTRY RULES
# =============================================================================
RSI_LOWER = 50.0                      # RSI must be > 50
RSI_UPPER = 70.0                      # ... and <= 70
MAX_HISTOGRAM_BARS = 3                # Early momentum: <= 3 positive bars

# Confidence weights per satisfied condition (sum = 100)
CONDITION_WEIGHTS = {
    'above_ema': 20,
    'rsi_in_range': 15,
    'rsi_above_sma': 15,
    'macd_bullish': 20,
    'histogram_ok': 15,
    'resistance_ok': 15,
}
WATCHLIST_MIN_CONDITIONS = 4          # Relaxed mode only

STOP_LOSS_PCT = 2.5
DEFAULT_TARGET_PCT = 5.0
TARGET1_CAP_PCT = 6.0
TARGET2_CAP_PCT = 9.0

# =============================================================================
# EXIT RULES - TRAILING STOP LADDER
# =============================================================================
# (level, profit threshold %, lock-in %, description)
# Thresholds and lock-ins are strictly increasing.
TRAILING_STOPS = [
    {'level': 1, 'profit_threshold': 1.5, 'lock_in': 1.0, 'description': 'Early Protection'},
    {'level': 1.5, 'profit_threshold': 2.25, 'lock_in': 1.75, 'description': 'Enhanced Early'},
    {'level': 2, 'profit_threshold': 2.75, 'lock_in': 2.0, 'description': 'Small Gain Lock'},
    {'level': 3, 'profit_threshold': 4.0, 'lock_in': 2.5, 'description': 'Base Profit'},
    {'level': 4, 'profit_threshold': 5.0, 'lock_in': 3.0, 'description': 'Steady Growth'},
    {'level': 5, 'profit_threshold': 6.0, 'lock_in': 3.5, 'description': 'Momentum Build'},
    {'level': 6, 'profit_threshold': 7.0, 'lock_in': 4.2, 'description': 'Strong Move'},
    {'level': 7, 'profit_threshold': 8.0, 'lock_in': 5.0, 'description': 'Trend Confirm'},
    {'level': 8, 'profit_threshold': 10.0, 'lock_in': 6.5, 'description': 'Big Move'},
    {'level': 9, 'profit_threshold': 12.0, 'lock_in': 8.0, 'description': 'Strong Trend'},
    {'level': 10, 'profit_threshold': 15.0, 'lock_in': 10.5, 'description': 'Major Move'},
    {'level': 11, 'profit_threshold': 18.0, 'lock_in': 13.0, 'description': 'Breakout'},
    {'level': 12, 'profit_threshold': 20.0, 'lock_in': 15.0, 'description': 'Big Breakout'},
    {'level': 13, 'profit_threshold': 25.0, 'lock_in': 19.0, 'description': 'Explosive Move'},
    {'level': 14, 'profit_threshold': 30.0, 'lock_in': 23.0, 'description': 'Maximum Capture'},
]

EXIT_STOP_LOSS_PCT = -2.5             # Exit at or below -2.5% P&L
MIN_POSITION_AGE_MINUTES = 60         # No trailing/RSI exits in the first hour
MONITOR_MAX_CONSECUTIVE_FAILURES = 15

# =============================================================================
# POSITION SIZING AND ELIGIBILITY
# =============================================================================
DEFAULT_MARGIN_FALLBACK_PCT = 0.20    # 20% margin = 5x leverage when broker reports 0
DEFAULT_TOTAL_CAPITAL = float(os.getenv('DEFAULT_TOTAL_CAPITAL', '100000'))
DEFAULT_ALLOCATION_PCT = 10.0
DEFAULT_MAX_CONCURRENT_POSITIONS = 5
DEFAULT_DAILY_LOSS_LIMIT_PCT = 3.0
LARGE_QUANTITY_WARNING = 10000

# Broker error codes
RETRYABLE_ERROR_CODES = {
    'AUTHENTICATION_ERROR',
    'RATE_LIMIT_EXCEEDED',
    'INTERNAL_ERROR',
    'NETWORK_ERROR',
    'TIMEOUT_ERROR',
}
NON_RETRYABLE_ERROR_CODES = {
    'INSUFFICIENT_FUNDS',
    'INVALID_SYMBOL',
    'QUANTITY_EXCEEDS_LIMIT',
    'ORDER_NOT_CANCELLABLE',
    'MARKET_CLOSED',
    'VALIDATION_FAILED',
}

# =============================================================================
# DATA FILES
# =============================================================================
DATA_DIR = os.getenv('MTF_DATA_DIR', os.path.join(os.path.dirname(__file__), 'data'))

ALGORITHM_POSITIONS_FILE = os.path.join(DATA_DIR, 'algorithm_positions.json')
USER_POSITIONS_FILE = os.path.join(DATA_DIR, 'user_positions.json')
ORDERS_FILE = os.path.join(DATA_DIR, 'orders.json')
ACCOUNTS_FILE = os.path.join(DATA_DIR, 'accounts.json')
DAILY_SUMMARY_FILE = os.path.join(DATA_DIR, 'daily_summaries.json')
SCAN_HISTORY_FILE = os.path.join(DATA_DIR, 'scan_history.json')
AUDIT_LOG_FILE = os.path.join(DATA_DIR, 'audit_log.jsonl')

# =============================================================================
# ALERTS
# =============================================================================
ALERTS_ENABLED = os.getenv('ALERTS_ENABLED', 'true').lower() == 'true'
GMAIL_USER = os.getenv('GMAIL_USER')
GMAIL_APP_PASSWORD = os.getenv('GMAIL_APP_PASSWORD')
RECIPIENT_EMAIL = os.getenv('RECIPIENT_EMAIL')

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), 'templates')

# =============================================================================
# LOGGING
# =============================================================================
LOG_LEVEL = os.getenv('MTF_LOG_LEVEL', 'INFO')
LOG_FILE = os.path.join(DATA_DIR, 'mtf_trading.log')

# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_broker_credentials():
    """Get the broker API credentials for the algorithm account."""
    return {
        'account_id': 'algorithm',
        'base_url': LEMON_BASE_URL,
        'client_id': LEMON_CLIENT_ID,
        'public_key': LEMON_PUBLIC_KEY,
        'private_key': LEMON_PRIVATE_KEY,
    }


def get_retry_policy():
    """Build the default retry policy from configuration."""
    from .resilience import RetryPolicy

    return RetryPolicy(
        max_attempts=RETRY_MAX_ATTEMPTS,
        base_delay=RETRY_BASE_DELAY_SECONDS,
        multiplier=RETRY_BACKOFF_MULTIPLIER,
        max_delay=RETRY_MAX_DELAY_SECONDS,
    )


def validate_config():
    """Validate critical configuration settings."""
    errors = []

    creds = get_broker_credentials()
    if not creds['client_id']:
        errors.append("Missing LEMON_CLIENT_ID")
    if not creds['public_key']:
        errors.append("Missing LEMON_PUBLIC_KEY")
    if not creds['private_key']:
        errors.append("Missing LEMON_PRIVATE_KEY")
    elif len(creds['private_key']) != 64:
        errors.append("LEMON_PRIVATE_KEY must be 64 hex characters (32-byte Ed25519 seed)")

    if ALERTS_ENABLED and (not GMAIL_USER or not GMAIL_APP_PASSWORD or not RECIPIENT_EMAIL):
        errors.append("Missing email credentials (GMAIL_USER, GMAIL_APP_PASSWORD, RECIPIENT_EMAIL)")

    thresholds = [row['profit_threshold'] for row in TRAILING_STOPS]
    lock_ins = [row['lock_in'] for row in TRAILING_STOPS]
    if thresholds != sorted(set(thresholds)) or lock_ins != sorted(set(lock_ins)):
        errors.append("TRAILING_STOPS thresholds and lock-ins must be strictly increasing")

    if sum(CONDITION_WEIGHTS.values()) != 100:
        errors.append(f"CONDITION_WEIGHTS sum to {sum(CONDITION_WEIGHTS.values())}, expected 100")

    if not 0 < DEFAULT_MARGIN_FALLBACK_PCT <= 1:
        errors.append(f"DEFAULT_MARGIN_FALLBACK_PCT ({DEFAULT_MARGIN_FALLBACK_PCT}) must be in (0, 1]")

    return errors


def print_config_summary():
    """Print a summary of current configuration."""
    enabled_status = "✅ ENABLED" if TRADING_ENABLED else "🛑 DISABLED"
    dry_run_status = " (DRY RUN)" if DRY_RUN else ""

    print(f"""
{'='*60}
📊 MTF TRADING CONFIGURATION
{'='*60}

Broker:         {LEMON_BASE_URL} ({LEMON_EXCHANGE})
Status:         {enabled_status}{dry_run_status}

Resilience:
  Retries:      {RETRY_MAX_ATTEMPTS} (base {RETRY_BASE_DELAY_SECONDS}s, cap {RETRY_MAX_DELAY_SECONDS}s)
  Breaker:      {CIRCUIT_BREAKER_THRESHOLD} failures / {CIRCUIT_BREAKER_RESET_SECONDS}s cool-down
  Batching:     {BATCH_CONCURRENCY} symbols, {BATCH_DELAY_SECONDS}s between batches

Entry Rules:
  RSI Range:    ({RSI_LOWER:.0f}, {RSI_UPPER:.0f}]
  Histogram:    <= {MAX_HISTOGRAM_BARS} bars
  Resistance:   >= {SR_CONFIG['min_resistance_distance_pct']}% away

Exit Rules:
  Stop Loss:    {EXIT_STOP_LOSS_PCT:.1f}%
  Ladder:       {len(TRAILING_STOPS)} levels ({TRAILING_STOPS[0]['profit_threshold']}% .. {TRAILING_STOPS[-1]['profit_threshold']}%)
  Min Age:      {MIN_POSITION_AGE_MINUTES} minutes

Sizing:
  Margin Fallback: {DEFAULT_MARGIN_FALLBACK_PCT*100:.0f}% ({1/DEFAULT_MARGIN_FALLBACK_PCT:.1f}x leverage)

{'='*60}
""")


if __name__ == '__main__':
    # Run validation when module is executed directly
    print_config_summary()

    errors = validate_config()
    if errors:
        print("⚠️  Configuration Errors:")
        for err in errors:
            print(f"  - {err}")
    else:
        print("✅ Configuration validated successfully")
