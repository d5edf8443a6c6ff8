# mtf_trading/execute_trades.py
"""
Trade Execution Engine

Main orchestration for the MTF trading system.
This module handles:
- Daily entry scan over the symbol universe (strict evaluator)
- Real-account execution of new ENTRY signals
- Position monitoring with trailing-stop exits fanned out to accounts
- End of day summary

Designed to be run as:
1. Scan job (run_daily_scan + execute_entry_signals) - after market open
2. Monitor job (run_monitoring_cycle) - every few minutes during market hours
3. End of day job (run_end_of_day) - after market close
"""

import json
import logging
import os
import sys
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import config
from .alerts import NotificationService, clean_recipient, create_notification_service
from .broker_client import BrokerClient, create_broker_client
from .entry_signals import EntrySignalEvaluator, EvaluationMode, summarize_signals
from .exit_monitor import ExitMonitor
from .init_data_dir import initialize_data_directory
from .market_data import MarketDataAggregator
from .models import EntrySignalResult, OrderResult, SignalType, UserPosition
from .order_manager import OrderManager, OrderSide
from .position_sizing import (
    can_place_new_order,
    get_eligible_trading_accounts,
    size_position,
    update_daily_trading_summary,
)
from .reconciliation import PositionReconciler
from .repository import JsonRepository, new_id
from .resilience import ResilientApiClient
from .token_manager import create_token_coordinator
from .universe import get_symbols
from .utils import (
    format_currency,
    get_ist_now,
    get_market_status,
    log_audit_event,
    round2,
)

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """File + console logging for CLI runs."""
    os.makedirs(config.DATA_DIR, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(config.LOG_FILE),
            logging.StreamHandler()
        ]
    )


class TradingEngine:
    """
    Main trading engine orchestrator.

    Coordinates all trading components:
    - Broker client and market data aggregator (algorithm account)
    - Strict entry evaluator
    - Exit monitor
    - Per-account order managers
    - Reconciliation and notifications
    """

    def __init__(
        self,
        repository: Optional[JsonRepository] = None,
        broker: Optional[BrokerClient] = None,
        notifier: Optional[NotificationService] = None,
        broker_factory: Optional[Callable[[str], BrokerClient]] = None,
        clock: Callable[[], datetime] = get_ist_now,
        sleep: Callable[[float], None] = time.sleep
    ):
        logger.info(f"{'='*60}")
        logger.info("INITIALIZING MTF TRADING ENGINE")
        logger.info(f"Trading Enabled: {config.TRADING_ENABLED}{' (DRY RUN)' if config.DRY_RUN else ''}")
        logger.info(f"{'='*60}")

        self._clock = clock
        self._sleep = sleep

        self.repository = repository or JsonRepository()
        self.broker = broker or create_broker_client()
        self.notifier = notifier or create_notification_service()
        self.aggregator = MarketDataAggregator(self.broker, ResilientApiClient(sleep=sleep), clock=clock)
        self.evaluator = EntrySignalEvaluator(self.aggregator, mode=EvaluationMode.STRICT, clock=clock)
        self.monitor = ExitMonitor(self.aggregator, self.repository, self.notifier, clock=clock, sleep=sleep)
        self.reconciler = PositionReconciler(self.repository)

        self._broker_factory = broker_factory or self._create_account_broker
        self._account_brokers: Dict[str, BrokerClient] = {}

    # =========================================================================
    # Accounts
    # =========================================================================

    def _create_account_broker(self, account_id: str) -> BrokerClient:
        credentials = self.repository.get_credentials(account_id)
        if credentials is None:
            raise ValueError(f"No credentials for account {account_id}")
        return BrokerClient(create_token_coordinator(credentials))

    def get_account_broker(self, account_id: str) -> BrokerClient:
        """One broker client (and token coordinator) per account, reused across passes."""
        if account_id not in self._account_brokers:
            self._account_brokers[account_id] = self._broker_factory(account_id)
        return self._account_brokers[account_id]

    def get_order_manager(self, account_id: str) -> OrderManager:
        credentials = self.repository.get_credentials(account_id)
        return OrderManager(
            self.get_account_broker(account_id),
            self.repository,
            account_id=account_id,
            client_id=credentials.client_id if credentials else None,
            clock=self._clock,
            sleep=self._sleep
        )

    def _account_recipients(self, account_ids: List[str]) -> List[str]:
        recipients = list(self.notifier.recipients)
        for account_id in account_ids:
            credentials = self.repository.get_credentials(account_id)
            recipient = clean_recipient(credentials.recipient) if credentials else None
            if recipient and recipient not in recipients:
                recipients.append(recipient)
        return recipients

    # =========================================================================
    # Daily scan
    # =========================================================================

    def run_daily_scan(self, send_alerts: bool = True, symbols: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Scan the universe for entries and open algorithm positions.

        Symbols already held are skipped. Never raises; per-symbol failures
        are reported under 'errors'.
        """
        started = time.monotonic()
        logger.info(f"\n{'='*60}")
        logger.info("DAILY ENTRY SCAN")
        logger.info(f"{'='*60}")

        results: Dict[str, Any] = {
            'results': [],
            'summary': {},
            'position_management': {
                'active_before': 0,
                'symbols_skipped': [],
                'new_positions_created': 0
            },
            'new_entries': [],
            'errors': []
        }

        try:
            active_symbols = set(self.repository.get_active_symbols())
        except Exception as e:
            logger.error(f"❌ Failed to load active positions: {e}")
            results['errors'].append(f"Failed to load active positions: {e}")
            return results

        universe = symbols or get_symbols()
        to_scan = [s for s in universe if s not in active_symbols]
        skipped = [s for s in universe if s in active_symbols]

        results['position_management']['active_before'] = len(active_symbols)
        results['position_management']['symbols_skipped'] = skipped
        logger.info(f"Scanning {len(to_scan)} symbols ({len(skipped)} already held)")

        outcomes = self.evaluator.scan(to_scan, sleep=self._sleep)
        signals: List[EntrySignalResult] = []
        for outcome in outcomes:
            if outcome['error'] is not None:
                results['errors'].append({'symbol': outcome['item'], 'error': outcome['error']})
                continue
            signals.append(outcome['result'])
            results['results'].append(outcome['result'].to_dict())

        new_entries: List[EntrySignalResult] = []
        for signal in signals:
            if signal.signal != SignalType.ENTRY:
                continue
            try:
                _, created = self.repository.create_position(signal.symbol, signal.current_price)
            except Exception as e:
                logger.error(f"❌ Failed to create position for {signal.symbol}: {e}")
                results['errors'].append({'symbol': signal.symbol, 'error': f"Position create failed: {e}"})
                continue
            if created:
                new_entries.append(signal)

        results['new_entries'] = [s.symbol for s in new_entries]
        results['position_management']['new_positions_created'] = len(new_entries)
        results['summary'] = summarize_signals(signals, error_count=len(results['errors']))

        if send_alerts and new_entries:
            recipients = self._account_recipients(get_eligible_trading_accounts(self.repository))
            self.notifier.send_entry_notifications(new_entries, recipients=recipients)

        duration = time.monotonic() - started
        self.repository.log_scan_history(
            total_scanned=len(to_scan),
            entries_found=results['summary']['entries'],
            positions_created=len(new_entries),
            symbols_skipped=len(skipped),
            duration_seconds=duration
        )

        logger.info(
            f"✅ Scan complete: {len(to_scan)} scanned, {results['summary']['entries']} entries, "
            f"{len(new_entries)} new positions, {len(results['errors'])} errors ({duration:.1f}s)"
        )
        return results

    # =========================================================================
    # Real-account execution
    # =========================================================================

    def _execute_for_account(self, account_id: str, symbol: str) -> Dict[str, Any]:
        algo = self.repository.get_position(symbol)
        if algo is None:
            return {'status': 'SKIPPED', 'reason': 'No active algorithm position'}

        if any(p.symbol == symbol for p in self.repository.get_active_user_positions(account_id)):
            return {'status': 'SKIPPED', 'reason': 'Position already open for account'}

        can_trade, reason = can_place_new_order(self.repository, account_id, self._clock())
        if not can_trade:
            return {'status': 'SKIPPED', 'reason': reason}

        preferences = self.repository.get_trading_preferences(account_id)
        broker = self.get_account_broker(account_id)
        size, reason = size_position(broker, preferences, symbol, algo.current_price or algo.entry_price)
        if size is None:
            return {'status': 'SKIPPED', 'reason': reason}

        manager = self.get_order_manager(account_id)
        order = manager.place_order(symbol, OrderSide.BUY, size.quantity, price=algo.entry_price, reason='ENTRY_SIGNAL')
        if not order.success:
            return {'status': 'FAILED', 'reason': order.error, 'order': order.to_dict()}

        now = self._clock()
        position = UserPosition(
            id=new_id(),
            symbol=symbol,
            entry_price=algo.current_price or algo.entry_price,
            entry_quantity=size.quantity,
            current_price=algo.current_price or algo.entry_price,
            entry_date=now.strftime('%Y-%m-%d'),
            entry_time=now.isoformat(),
            updated_at=now.isoformat(),
            account_id=account_id,
            algorithm_position_id=algo.id,
            entry_order_id=order.order_id
        )
        try:
            self.repository.upsert_user_position(position)
        except (IOError, OSError) as e:
            order = manager.handle_orphaned_order(order, f"Failed to create user position: {e}")
            return {'status': 'FAILED', 'reason': order.error, 'order': order.to_dict()}

        log_audit_event('USER_POSITION_OPENED', {
            'account_id': account_id,
            'symbol': symbol,
            'quantity': size.quantity,
            'order_id': order.order_id,
            'is_amo': order.is_amo
        })
        return {
            'status': 'PLACED',
            'order': order.to_dict(),
            'quantity': size.quantity,
            'amount': size.amount,
            'leverage': size.leverage
        }

    def execute_entry_signals(self, symbols: List[str]) -> Dict[str, Any]:
        """
        Place BUY orders for new ENTRY symbols in every eligible account.

        Returns:
            Dict with accounts, orders_placed, skipped, failed, errors
        """
        results: Dict[str, Any] = {
            'accounts': 0,
            'orders_placed': [],
            'skipped': [],
            'failed': [],
            'errors': []
        }
        if not symbols:
            return results

        try:
            accounts = get_eligible_trading_accounts(self.repository)
        except Exception as e:
            logger.error(f"❌ Failed to load eligible accounts: {e}")
            results['errors'].append(str(e))
            return results

        results['accounts'] = len(accounts)
        for account_id in accounts:
            for symbol in symbols:
                try:
                    outcome = self._execute_for_account(account_id, symbol)
                except Exception as e:
                    logger.error(f"❌ Execution error for {account_id}/{symbol}: {e}")
                    results['errors'].append({'account_id': account_id, 'symbol': symbol, 'error': str(e)})
                    continue

                entry = dict(outcome, account_id=account_id, symbol=symbol)
                if outcome['status'] == 'PLACED':
                    results['orders_placed'].append(entry)
                    logger.info(
                        f"✅ {account_id}: BUY {symbol} x{outcome['quantity']} "
                        f"({format_currency(outcome['amount'])}, {outcome['leverage']:.2f}x)"
                    )
                elif outcome['status'] == 'SKIPPED':
                    results['skipped'].append(entry)
                    logger.info(f"⏭️ {account_id}: {symbol} skipped - {outcome['reason']}")
                else:
                    results['failed'].append(entry)
                    logger.error(f"❌ {account_id}: {symbol} failed - {outcome['reason']}")

            update_daily_trading_summary(self.repository, account_id, self._clock())

        return results

    # =========================================================================
    # Monitoring
    # =========================================================================

    def _exit_user_position(self, position: UserPosition, reason: str) -> OrderResult:
        return self.get_order_manager(position.account_id).exit_position(position, reason)

    def _sync_user_prices(self) -> int:
        """Copy algorithm prices onto linked ACTIVE user positions."""
        prices = {p.id: p.current_price for p in self.repository.get_active_positions()}
        updated = 0
        for user_pos in self.repository.get_active_user_positions():
            price = prices.get(user_pos.algorithm_position_id)
            if price and self.repository.update_user_position_pnl(user_pos.id, price):
                updated += 1
        return updated

    def run_monitoring_cycle(self, send_alerts: bool = True) -> Dict[str, Any]:
        """
        One monitoring pass: algorithm exits, then account fan-out.

        Returns:
            Exit monitor result plus reconciliation, user_positions_updated
            and accounts_summarized
        """
        logger.info(f"\n{'='*60}")
        logger.info("MONITORING CYCLE")
        logger.info(f"{'='*60}")

        outcome = self.monitor.monitor_active_positions(send_alerts=send_alerts)

        try:
            outcome['user_positions_updated'] = self._sync_user_prices()
            is_synced, discrepancies = self.reconciler.reconcile(exit_handler=self._exit_user_position)
            outcome['reconciliation'] = {
                'is_synced': is_synced,
                'discrepancies': [d.to_dict() for d in discrepancies]
            }
        except Exception as e:
            logger.error(f"❌ Account fan-out failed: {e}")
            outcome['errors'].append(f"Account fan-out failed: {e}")

        summarized = 0
        try:
            accounts = sorted({p.account_id for p in self.repository.get_user_positions() if p.account_id})
        except Exception as e:
            logger.error(f"❌ Could not load user positions for daily summaries: {e}")
            outcome['errors'].append(f"Daily summaries skipped: {e}")
            accounts = []
        for account_id in accounts:
            try:
                update_daily_trading_summary(self.repository, account_id, self._clock())
                summarized += 1
            except Exception as e:
                logger.error(f"❌ Daily summary failed for {account_id}: {e}")
                outcome['errors'].append(f"Daily summary failed for {account_id}: {e}")
        outcome['accounts_summarized'] = summarized

        if outcome['degraded'] and send_alerts:
            self.notifier.send_critical_alert(
                'Position monitor degraded',
                f"{outcome['skipped']} positions skipped after consecutive failures.\n"
                + '\n'.join(str(e) for e in outcome['errors'][-5:])
            )

        return outcome

    # =========================================================================
    # End of day / status
    # =========================================================================

    def run_end_of_day(self) -> Dict[str, Any]:
        """
        Run end of day tasks.

        Returns:
            Summary dictionary
        """
        logger.info(f"\n{'='*60}")
        logger.info("END OF DAY SUMMARY")
        logger.info(f"{'='*60}")

        now = self._clock()
        portfolio = self.repository.get_positions_with_summary()
        accounts = {}
        for account_id in self.repository.get_account_ids():
            summary = update_daily_trading_summary(self.repository, account_id, now)
            if summary is not None:
                accounts[account_id] = {
                    'daily_pnl': summary.daily_pnl,
                    'daily_pnl_percentage': summary.daily_pnl_percentage,
                    'is_trading_stopped': summary.is_trading_stopped,
                    'open_positions': len(self.repository.get_active_user_positions(account_id))
                }

        result = {
            'date': now.strftime('%Y-%m-%d'),
            'portfolio': portfolio['summary'],
            'accounts': accounts,
            'scans_today': [s for s in self.repository.get_scan_history() if s['scan_date'] == now.strftime('%Y-%m-%d')],
            'api': self.aggregator.api.get_status()
        }

        summary = portfolio['summary']
        logger.info(f"Open Positions: {summary['total_positions']}")
        logger.info(f"Invested: {format_currency(summary['total_invested'])}")
        logger.info(f"Unrealized P&L: {format_currency(summary['total_pnl'])} ({round2(summary['total_pnl_percentage']):+.2f}%)")
        logger.info(f"{'='*60}")

        return result

    def get_status(self) -> Dict[str, Any]:
        return {
            'market': get_market_status(self._clock()),
            'trading_enabled': config.TRADING_ENABLED,
            'dry_run': config.DRY_RUN,
            'active_positions': self.repository.get_active_symbols(),
            'api': self.aggregator.api.get_status(),
            'token': self.broker.tokens.get_status()
        }


def main():
    """Main entry point for the trading engine."""
    import argparse

    parser = argparse.ArgumentParser(description='MTF Automated Trading Engine')
    parser.add_argument('command', choices=['init', 'scan', 'monitor', 'eod', 'status'],
                        help='Command to run')
    parser.add_argument('--no-alerts', action='store_true',
                        help='Do not send notifications')
    parser.add_argument('--no-execute', action='store_true',
                        help='Scan only; do not place orders for new entries')
    parser.add_argument('--symbols', nargs='*',
                        help='Restrict the scan to these symbols')

    args = parser.parse_args()
    setup_logging()

    if args.command == 'init':
        initialize_data_directory()
        return

    errors = config.validate_config()
    if errors:
        for err in errors:
            logger.error(f"Config error: {err}")
        sys.exit(1)

    try:
        engine = TradingEngine()
        send_alerts = not args.no_alerts

        if args.command == 'scan':
            results = engine.run_daily_scan(send_alerts=send_alerts, symbols=args.symbols)
            if not args.no_execute:
                results['execution'] = engine.execute_entry_signals(results['new_entries'])
            print(json.dumps(results, indent=2, default=str))

        elif args.command == 'monitor':
            results = engine.run_monitoring_cycle(send_alerts=send_alerts)
            print(json.dumps(results, indent=2, default=str))

        elif args.command == 'eod':
            results = engine.run_end_of_day()
            print(json.dumps(results, indent=2, default=str))

        elif args.command == 'status':
            print(json.dumps(engine.get_status(), indent=2, default=str))

    except Exception as e:
        logger.error(f"Engine error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
