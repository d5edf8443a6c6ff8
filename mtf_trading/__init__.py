# mtf_trading/__init__.py
"""
MTF Automated Trading System

Margin Trading Facility (MTF) equity engine for NSE stocks: scans a fixed
universe for technical entries, sizes orders against broker margin, and
exits through a 14-level trailing-stop ladder.

Directory Structure:
    mtf_trading/
    ├── __init__.py             # This file
    ├── config.py               # Env-driven configuration
    ├── errors.py               # Error taxonomy
    ├── models.py               # Typed records
    ├── utils.py                # Audit log, IST market clock, JSON I/O
    ├── resilience.py           # Retry, circuit breaker, cache, batching
    ├── token_manager.py        # Ed25519-signed single-flight token refresh
    ├── broker_client.py        # Broker HTTP API
    ├── market_data.py          # Historical + intraday candle aggregation
    ├── indicators.py           # EMA / RSI / MACD
    ├── support_resistance.py   # Pivot channel detector
    ├── entry_signals.py        # 6-condition entry evaluator
    ├── exit_monitor.py         # Trailing-stop exit state machine
    ├── position_sizing.py      # Margin sizing and eligibility
    ├── order_manager.py        # Order placement / exit / cancel
    ├── reconciliation.py       # User <-> algorithm position reconciliation
    ├── repository.py           # JSON-file persistence
    ├── alerts.py               # Templated notifications
    ├── universe.py             # NIFTY 50 symbols by sector
    ├── execute_trades.py       # Trading engine + CLI
    ├── templates/              # Notification templates
    └── data/
        ├── algorithm_positions.json
        ├── user_positions.json
        ├── orders.json
        ├── accounts.json
        ├── daily_summaries.json
        ├── scan_history.json
        └── audit_log.jsonl     # Immutable audit trail

Safety Features:
    - Circuit breaker on market data calls
    - Daily loss limit per account (freezes trading until the next day)
    - Idempotent order records and position exits
    - Comprehensive audit logging
"""

__version__ = "1.0.0"
