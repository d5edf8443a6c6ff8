# mtf_trading/repository.py
"""
Position and Account Repository

JSON-file persistence for:
- Algorithm positions (source of truth for signal dedup)
- Per-account user positions (linked by algorithm_position_id)
- Orders (idempotent by broker order id)
- Account credentials and trading preferences
- Daily P&L summaries and scan history

All files are read and written through the locked helpers in utils.
"""

import logging
import os
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .models import (
    AccountCredentials,
    AlgorithmPosition,
    DailySummary,
    ExitSignal,
    PositionRecord,
    PositionStatus,
    TradingPreferences,
    UserPosition,
    record_to_dict,
)
from .utils import (
    calculate_pnl_amount,
    calculate_pnl_pct,
    get_ist_now,
    load_json_file,
    log_audit_event,
    round2,
    save_json_file,
    to_ist,
)

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex


class JsonRepository:
    """
    Repository over the data directory.

    Usage:
        repo = JsonRepository()
        for position in repo.get_active_positions():
            ...
    """

    def __init__(self, data_dir: Optional[str] = None, clock=get_ist_now):
        if data_dir:
            self.algorithm_positions_file = os.path.join(data_dir, 'algorithm_positions.json')
            self.user_positions_file = os.path.join(data_dir, 'user_positions.json')
            self.orders_file = os.path.join(data_dir, 'orders.json')
            self.accounts_file = os.path.join(data_dir, 'accounts.json')
            self.daily_summary_file = os.path.join(data_dir, 'daily_summaries.json')
            self.scan_history_file = os.path.join(data_dir, 'scan_history.json')
        else:
            self.algorithm_positions_file = config.ALGORITHM_POSITIONS_FILE
            self.user_positions_file = config.USER_POSITIONS_FILE
            self.orders_file = config.ORDERS_FILE
            self.accounts_file = config.ACCOUNTS_FILE
            self.daily_summary_file = config.DAILY_SUMMARY_FILE
            self.scan_history_file = config.SCAN_HISTORY_FILE

        self._clock = clock
        self._lock = threading.RLock()

    def _now(self) -> datetime:
        return to_ist(self._clock())

    # =========================================================================
    # File helpers
    # =========================================================================

    def _load_list(self, filepath: str, key: str) -> List[Dict[str, Any]]:
        data = load_json_file(filepath, default={})
        return data.get(key, []) if isinstance(data, dict) else []

    def _save_list(self, filepath: str, key: str, rows: List[Dict[str, Any]]) -> bool:
        return save_json_file(filepath, {
            key: rows,
            'last_updated': self._now().isoformat()
        })

    # =========================================================================
    # Algorithm positions
    # =========================================================================

    def _load_algorithm_positions(self) -> List[AlgorithmPosition]:
        return [AlgorithmPosition.from_dict(row) for row in self._load_list(self.algorithm_positions_file, 'positions')]

    def _save_algorithm_positions(self, positions: List[AlgorithmPosition]) -> bool:
        return self._save_list(self.algorithm_positions_file, 'positions', [p.to_dict() for p in positions])

    def get_all_positions(self) -> List[AlgorithmPosition]:
        return self._load_algorithm_positions()

    def get_active_positions(self) -> List[AlgorithmPosition]:
        """All ACTIVE algorithm positions."""
        return [p for p in self._load_algorithm_positions() if p.is_active]

    def get_active_symbols(self) -> List[str]:
        return [p.symbol for p in self.get_active_positions()]

    def get_position(self, symbol: str) -> Optional[AlgorithmPosition]:
        """The ACTIVE algorithm position for a symbol, if any."""
        for position in self.get_active_positions():
            if position.symbol == symbol:
                return position
        return None

    def get_position_by_id(self, position_id: str) -> Optional[AlgorithmPosition]:
        for position in self._load_algorithm_positions():
            if position.id == position_id:
                return position
        return None

    def create_position(
        self,
        symbol: str,
        entry_price: float,
        scanner_signal_id: Optional[str] = None
    ) -> Tuple[AlgorithmPosition, bool]:
        """
        Open an algorithm position for an ENTRY signal.

        Returns:
            (position, created); an existing ACTIVE position for the symbol
            is returned with created=False
        """
        with self._lock:
            existing = self.get_position(symbol)
            if existing is not None:
                logger.info(f"Position already active for {symbol} - skipping create")
                return existing, False

            now = self._now()
            position = AlgorithmPosition(
                id=new_id(),
                symbol=symbol,
                entry_price=entry_price,
                current_price=entry_price,
                entry_date=now.strftime('%Y-%m-%d'),
                entry_time=now.isoformat(),
                updated_at=now.isoformat(),
                scanner_signal_id=scanner_signal_id
            )
            self.upsert_position(position)

        log_audit_event('POSITION_CREATED', {'symbol': symbol, 'entry_price': entry_price, 'id': position.id})
        logger.info(f"✅ New position created: {symbol} @ ₹{entry_price:.2f}")
        return position, True

    def upsert_position(self, position: PositionRecord) -> PositionRecord:
        """Insert or replace a position record by id (algorithm or user)."""
        if isinstance(position, UserPosition):
            return self.upsert_user_position(position)

        with self._lock:
            positions = self._load_algorithm_positions()
            for i, existing in enumerate(positions):
                if existing.id == position.id:
                    positions[i] = position
                    break
            else:
                positions.append(position)
            self._save_algorithm_positions(positions)
        return position

    def _update_active(self, symbol: str, update) -> bool:
        with self._lock:
            positions = self._load_algorithm_positions()
            changed = False
            for position in positions:
                if position.symbol == symbol and position.is_active:
                    changed = update(position) or changed
            if changed:
                self._save_algorithm_positions(positions)
            return changed

    def update_position_pnl(self, symbol: str, current_price: float) -> bool:
        """Refresh current price and P&L of the ACTIVE position."""
        now = self._now().isoformat()

        def apply(position: AlgorithmPosition) -> bool:
            position.current_price = current_price
            position.pnl_amount = round2(calculate_pnl_amount(position.entry_price, current_price, position.entry_quantity))
            position.pnl_percentage = round2(calculate_pnl_pct(position.entry_price, current_price))
            position.updated_at = now
            return True

        return self._update_active(symbol, apply)

    def update_trailing_level(self, symbol: str, new_level: float) -> bool:
        """
        Raise the stored trailing level (high-water mark).

        Returns:
            True only when the level strictly increased
        """
        with self._lock:
            position = self.get_position(symbol)
            if position is None:
                return False

            current = position.trailing_level or 0
            if new_level <= current:
                if new_level < current:
                    logger.info(f"🔒 {symbol}: trailing level protected at {current} (ignored {new_level})")
                return False

            position.trailing_level = new_level
            position.updated_at = self._now().isoformat()
            self.upsert_position(position)

        logger.info(f"📈 {symbol}: trailing level raised {current} -> {new_level}")
        return True

    def mark_position_exited(self, symbol: str, exit_signal: ExitSignal) -> bool:
        """Mark the ACTIVE algorithm position EXITED with the exit details."""
        now = self._now()

        def apply(position: AlgorithmPosition) -> bool:
            position.status = PositionStatus.EXITED
            position.exit_date = now.strftime('%Y-%m-%d')
            position.exit_time = now.isoformat()
            position.exit_price = exit_signal.exit_price
            position.exit_reason = exit_signal.exit_type.value
            position.current_price = exit_signal.current_price
            position.pnl_amount = round2(exit_signal.pnl_amount * position.entry_quantity)
            position.pnl_percentage = round2(exit_signal.pnl_percentage)
            position.updated_at = now.isoformat()
            return True

        exited = self._update_active(symbol, apply)
        if exited:
            log_audit_event('POSITION_EXITED', {
                'symbol': symbol,
                'exit_type': exit_signal.exit_type.value,
                'exit_price': exit_signal.exit_price
            })
        return exited

    def get_positions_with_summary(self) -> Dict[str, Any]:
        """Active positions with portfolio totals and best/worst performer."""
        positions = self.get_active_positions()

        total_invested = sum(p.entry_price * p.entry_quantity for p in positions)
        current_value = sum((p.current_price or p.entry_price) * p.entry_quantity for p in positions)
        total_pnl = current_value - total_invested

        best = max(positions, key=lambda p: p.pnl_percentage, default=None)
        worst = min(positions, key=lambda p: p.pnl_percentage, default=None)

        return {
            'positions': positions,
            'summary': {
                'total_positions': len(positions),
                'total_invested': round2(total_invested),
                'current_value': round2(current_value),
                'total_pnl': round2(total_pnl),
                'total_pnl_percentage': round2(total_pnl / total_invested * 100) if total_invested else 0.0,
                'best_performer': {'symbol': best.symbol, 'pnl_percentage': best.pnl_percentage} if best else None,
                'worst_performer': {'symbol': worst.symbol, 'pnl_percentage': worst.pnl_percentage} if worst else None
            }
        }

    # =========================================================================
    # User positions
    # =========================================================================

    def _load_user_positions(self) -> List[UserPosition]:
        return [UserPosition.from_dict(row) for row in self._load_list(self.user_positions_file, 'positions')]

    def _save_user_positions(self, positions: List[UserPosition]) -> bool:
        return self._save_list(self.user_positions_file, 'positions', [p.to_dict() for p in positions])

    def get_user_positions(
        self,
        account_id: Optional[str] = None,
        status: Optional[PositionStatus] = None
    ) -> List[UserPosition]:
        positions = self._load_user_positions()
        if account_id is not None:
            positions = [p for p in positions if p.account_id == account_id]
        if status is not None:
            positions = [p for p in positions if p.status == status]
        return positions

    def get_active_user_positions(self, account_id: Optional[str] = None) -> List[UserPosition]:
        return self.get_user_positions(account_id, PositionStatus.ACTIVE)

    def get_user_position(self, position_id: str) -> Optional[UserPosition]:
        for position in self._load_user_positions():
            if position.id == position_id:
                return position
        return None

    def get_user_positions_for_algorithm(self, algorithm_position_id: str) -> List[UserPosition]:
        return [p for p in self._load_user_positions() if p.algorithm_position_id == algorithm_position_id]

    def upsert_user_position(self, position: UserPosition) -> UserPosition:
        with self._lock:
            positions = self._load_user_positions()
            for i, existing in enumerate(positions):
                if existing.id == position.id:
                    positions[i] = position
                    break
            else:
                positions.append(position)
            if not self._save_user_positions(positions):
                raise IOError(f"Failed to save user position {position.id}")
        return position

    def update_user_position_pnl(self, position_id: str, current_price: float) -> bool:
        with self._lock:
            position = self.get_user_position(position_id)
            if position is None or not position.is_active:
                return False
            position.current_price = current_price
            position.pnl_amount = round2(calculate_pnl_amount(position.entry_price, current_price, position.entry_quantity))
            position.pnl_percentage = round2(calculate_pnl_pct(position.entry_price, current_price))
            position.updated_at = self._now().isoformat()
            self.upsert_user_position(position)
        return True

    def update_user_trailing_level(self, position_id: str, new_level: float) -> bool:
        """High-water-mark update for a user position."""
        with self._lock:
            position = self.get_user_position(position_id)
            if position is None or not position.is_active:
                return False
            if new_level <= (position.trailing_level or 0):
                return False
            position.trailing_level = new_level
            position.updated_at = self._now().isoformat()
            self.upsert_user_position(position)
        return True

    # =========================================================================
    # Orders
    # =========================================================================

    def get_orders(self, account_id: Optional[str] = None) -> List[Dict[str, Any]]:
        orders = self._load_list(self.orders_file, 'orders')
        if account_id is not None:
            orders = [o for o in orders if o.get('account_id') == account_id]
        return orders

    def get_order_by_broker_id(self, order_id: str) -> Optional[Dict[str, Any]]:
        for order in self.get_orders():
            if order.get('order_id') == order_id:
                return order
        return None

    def record_order(self, order: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """
        Persist an order record, idempotent by broker order id.

        Returns:
            (record, created); a duplicate order id returns the stored record

        Raises:
            IOError if the record could not be written
        """
        with self._lock:
            orders = self.get_orders()
            order_id = order.get('order_id')
            if order_id:
                for existing in orders:
                    if existing.get('order_id') == order_id:
                        logger.info(f"Order {order_id} already recorded - reusing existing record")
                        return existing, False

            record = dict(order)
            record.setdefault('id', new_id())
            record.setdefault('created_at', self._now().isoformat())
            orders.append(record)
            if not self._save_list(self.orders_file, 'orders', orders):
                raise IOError(f"Failed to save order {order_id}")
        return record, True

    def update_order(self, order_id: str, **fields) -> bool:
        with self._lock:
            orders = self.get_orders()
            for order in orders:
                if order.get('order_id') == order_id:
                    order.update(fields)
                    order['updated_at'] = self._now().isoformat()
                    return self._save_list(self.orders_file, 'orders', orders)
        return False

    # =========================================================================
    # Accounts
    # =========================================================================

    def _load_accounts(self) -> List[Dict[str, Any]]:
        return self._load_list(self.accounts_file, 'accounts')

    def _get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        for account in self._load_accounts():
            if account.get('account_id') == account_id:
                return account
        return None

    def get_account_ids(self) -> List[str]:
        return [a['account_id'] for a in self._load_accounts() if a.get('account_id')]

    def get_credentials(self, account_id: str) -> Optional[AccountCredentials]:
        account = self._get_account(account_id)
        if account is None or not account.get('client_id'):
            return None
        return AccountCredentials.from_dict(account)

    def get_trading_preferences(self, account_id: str) -> Optional[TradingPreferences]:
        account = self._get_account(account_id)
        if account is None:
            return None
        prefs = account.get('preferences') or {}
        return TradingPreferences(
            account_id=account_id,
            total_capital=float(prefs.get('total_capital', config.DEFAULT_TOTAL_CAPITAL)),
            allocation_percentage=float(prefs.get('allocation_percentage', config.DEFAULT_ALLOCATION_PCT)),
            max_concurrent_positions=int(prefs.get('max_concurrent_positions', config.DEFAULT_MAX_CONCURRENT_POSITIONS)),
            daily_loss_limit_percentage=float(prefs.get('daily_loss_limit_percentage', config.DEFAULT_DAILY_LOSS_LIMIT_PCT)),
            stop_loss_percentage=float(prefs.get('stop_loss_percentage', config.STOP_LOSS_PCT)),
            is_real_trading_enabled=bool(prefs.get('is_real_trading_enabled', False))
        )

    def save_account(self, account: Dict[str, Any]) -> bool:
        """Insert or replace an account entry (credentials + preferences)."""
        with self._lock:
            accounts = self._load_accounts()
            accounts = [a for a in accounts if a.get('account_id') != account['account_id']]
            accounts.append(account)
            return self._save_list(self.accounts_file, 'accounts', accounts)

    # =========================================================================
    # Daily summaries
    # =========================================================================

    def get_daily_summary(self, account_id: str, trading_date: str) -> Optional[DailySummary]:
        for row in self._load_list(self.daily_summary_file, 'summaries'):
            if row.get('account_id') == account_id and row.get('trading_date') == trading_date:
                return DailySummary.from_dict(row)
        return None

    def upsert_daily_summary(self, summary: DailySummary) -> DailySummary:
        """Upsert keyed by (account_id, trading_date)."""
        with self._lock:
            rows = [
                r for r in self._load_list(self.daily_summary_file, 'summaries')
                if not (r.get('account_id') == summary.account_id and r.get('trading_date') == summary.trading_date)
            ]
            summary.updated_at = self._now().isoformat()
            rows.append(record_to_dict(summary))
            self._save_list(self.daily_summary_file, 'summaries', rows)
        return summary

    # =========================================================================
    # Scan history
    # =========================================================================

    def log_scan_history(
        self,
        total_scanned: int,
        entries_found: int,
        positions_created: int,
        symbols_skipped: int,
        duration_seconds: float
    ) -> Dict[str, Any]:
        now = self._now()
        entry = {
            'scan_date': now.strftime('%Y-%m-%d'),
            'scan_time': now.isoformat(),
            'total_scanned': total_scanned,
            'entries_found': entries_found,
            'positions_created': positions_created,
            'symbols_skipped': symbols_skipped,
            'duration_seconds': round2(duration_seconds)
        }
        with self._lock:
            history = self._load_list(self.scan_history_file, 'scans')
            history.append(entry)
            self._save_list(self.scan_history_file, 'scans', history[-500:])
        return entry

    def get_scan_history(self, limit: int = 30) -> List[Dict[str, Any]]:
        return list(reversed(self._load_list(self.scan_history_file, 'scans')))[:limit]
