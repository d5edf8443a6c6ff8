# mtf_trading/order_manager.py
"""
Order Management System

Handles the MTF order lifecycle for one account:
- Market order placement with a bounded attempt loop
  (one forced token refresh on auth failure, backoff on retryable errors)
- After-market order (AMO) flag outside market hours
- Idempotent order records keyed by broker order id
- Position exit with fill-price P&L (latest traded price after the sell)
- Orphaned-order handling: best-effort cancel + manual intervention flag
"""

import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from . import config
from .errors import AuthenticationError, TokenRefreshError, TradingSystemError
from .models import OrderResult, PositionStatus, UserPosition
from .resilience import is_retryable_error
from .utils import (
    calculate_pnl_amount,
    calculate_pnl_pct,
    generate_order_tag,
    get_ist_now,
    get_market_status,
    is_safe_to_trade,
    log_audit_event,
    round2,
    validate_quantity,
    validate_symbol,
)

logger = logging.getLogger(__name__)


class OrderSide(str, Enum):
    BUY = 'BUY'
    SELL = 'SELL'


def normalize_order_status(status: Any) -> str:
    """
    Normalize a broker order status to an uppercase name.

    Handles 'placed', 'PLACED', 'OrderStatus.PLACED' and the US spelling
    of cancelled.
    """
    if status is None:
        logger.warning("⚠️ Received None as order status")
        return 'UNKNOWN'

    status_str = str(status).upper()
    if '.' in status_str:
        status_str = status_str.split('.')[-1]

    status_mapping = {
        'CANCELED': 'CANCELLED',
        'COMPLETE': 'TRADED',
        'FILLED': 'TRADED',
    }
    return status_mapping.get(status_str, status_str)


def build_order_payload(
    client_id: str,
    symbol: str,
    side: OrderSide,
    quantity: int,
    tag: str,
    after_market: bool,
    exchange: str = config.LEMON_EXCHANGE
) -> Dict[str, Any]:
    """MTF market order body for the orders endpoint."""
    return {
        'clientId': client_id,
        'transactionType': side.value,
        'exchangeSegment': exchange,
        'productType': 'MTF',
        'orderType': 'MARKET',
        'validity': 'DAY',
        'symbol': symbol,
        'quantity': str(quantity),
        'tag': tag,
        'afterMarketOrder': after_market
    }


class OrderManager:
    """
    Places, records, exits and cancels orders for one account.

    Usage:
        manager = OrderManager(broker, repository, account_id='acc-1', client_id='CL123')
        result = manager.place_order('RELIANCE', OrderSide.BUY, 10)
    """

    def __init__(
        self,
        broker,
        repository,
        account_id: Optional[str] = None,
        client_id: Optional[str] = None,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = get_ist_now,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.broker = broker
        self.repository = repository
        self.account_id = account_id
        self.client_id = client_id or config.LEMON_CLIENT_ID
        self.max_attempts = max_attempts
        self._clock = clock
        self._sleep = sleep

    # =========================================================================
    # Submission
    # =========================================================================

    def _submit(self, payload: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], Optional[TradingSystemError]]:
        """
        Attempt loop around the broker order call.

        Returns:
            (broker_data, None) on success, (None, last_error) on failure
        """
        symbol = payload['symbol']
        side = payload['transactionType']
        last_error: Optional[TradingSystemError] = None
        refreshed = False

        for attempt in range(1, self.max_attempts + 1):
            logger.info(f"🔄 Order attempt {attempt}/{self.max_attempts} for {symbol} ({side})")
            try:
                try:
                    return self.broker.place_order(payload), None
                except AuthenticationError as e:
                    if refreshed:
                        logger.error(f"❌ {side} {symbol}: authentication failed again after token refresh")
                        return None, e
                    logger.warning(f"🔄 Authentication failed for {side} order (attempt {attempt}), refreshing token...")
                    try:
                        self.broker.tokens.force_refresh()
                    except TokenRefreshError as refresh_error:
                        last_error = refresh_error
                        logger.error(f"❌ Token refresh failed on attempt {attempt}: {refresh_error}")
                        if attempt < self.max_attempts:
                            self._sleep(2.0 * attempt)
                        continue
                    refreshed = True
                    self._sleep(1.0 * attempt)
                    return self.broker.place_order(payload), None
            except AuthenticationError as e:
                logger.error(f"❌ {side} {symbol}: authentication failed again after token refresh")
                return None, e
            except TradingSystemError as e:
                last_error = e
                if not is_retryable_error(e):
                    logger.error(f"❌ {side} {symbol} rejected (not retryable): {e}")
                    return None, e
                if attempt < self.max_attempts:
                    backoff = 1.0 * 2 ** (attempt - 1)
                    logger.warning(f"⏳ Retryable error on attempt {attempt}: {e} - waiting {backoff:.0f}s")
                    self._sleep(backoff)

        logger.error(f"❌ All {self.max_attempts} order attempts failed for {symbol}")
        return None, last_error

    def place_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: int,
        price: Optional[float] = None,
        reason: Optional[str] = None
    ) -> OrderResult:
        """
        Submit an MTF market order and record it.

        Args:
            symbol: Stock symbol
            side: BUY or SELL
            quantity: Number of shares
            price: Reference price stored on the order record
            reason: Order reason (ENTRY_SIGNAL, STOP_LOSS, ...)

        Returns:
            OrderResult; order_placed + requires_manual_intervention when the
            broker accepted the order but the record could not be written
        """
        valid, msg = validate_symbol(symbol)
        if not valid:
            return OrderResult(success=False, error=f"Invalid symbol {symbol}: {msg}", error_code='VALIDATION_FAILED')
        valid, msg = validate_quantity(quantity)
        if not valid:
            return OrderResult(success=False, error=f"Invalid quantity {quantity}: {msg}", error_code='VALIDATION_FAILED')

        now = self._clock()
        if side == OrderSide.BUY:
            safe, reason = is_safe_to_trade(now)
            if not safe:
                return OrderResult(success=False, error=reason)

        market = get_market_status(now)
        is_amo = not market['is_open']
        if is_amo:
            logger.info(f"🌙 Market {market['market_status']} - placing {side.value} {symbol} as after-market order")

        tag = generate_order_tag(symbol, side.value, now)
        payload = build_order_payload(self.client_id, symbol, side, quantity, tag, is_amo)

        if config.DRY_RUN:
            logger.info(f"[DRY RUN] Would place {side.value} {symbol} x{quantity}")
            data = {'orderId': f"DRY_RUN_{tag}", 'orderStatus': 'DRY_RUN'}
        else:
            data, error = self._submit(payload)
            if data is None:
                log_audit_event('ORDER_FAILED', {
                    'account_id': self.account_id,
                    'symbol': symbol,
                    'side': side.value,
                    'quantity': quantity,
                    'error': str(error)
                }, outcome='FAILURE')
                return OrderResult(
                    success=False,
                    error=str(error) if error else 'Order placement failed',
                    error_code=getattr(error, 'error_code', None),
                    broker_response=getattr(error, 'payload', None),
                    market_status=market['market_status'],
                    is_amo=is_amo
                )

        order_id = str(data.get('orderId') or data.get('order_id') or '')
        if not order_id:
            return OrderResult(
                success=False,
                error='Broker response missing order id',
                broker_response=data,
                market_status=market['market_status'],
                is_amo=is_amo
            )

        result = OrderResult(
            success=True,
            order_id=order_id,
            order_status=normalize_order_status(data.get('orderStatus', 'PLACED')),
            broker_response=data,
            market_status=market['market_status'],
            is_amo=is_amo,
            execution_time=now.isoformat(),
            order_placed=True
        )

        try:
            self.repository.record_order({
                'order_id': order_id,
                'account_id': self.account_id,
                'symbol': symbol,
                'transaction_type': side.value,
                'order_type': 'MARKET',
                'product_type': 'MTF',
                'quantity': quantity,
                'price': price,
                'order_status': result.order_status,
                'order_reason': reason,
                'tag': tag,
                'is_amo': is_amo,
                'market_status': market['market_status'],
                'expected_execution_time': market['next_market_open'] if is_amo else now.isoformat(),
                'dry_run': config.DRY_RUN
            })
        except (IOError, OSError) as e:
            return self.handle_orphaned_order(result, f"Failed to record {side.value} order: {e}")

        logger.info(f"✅ {side.value} order placed: {symbol} x{quantity} (Order ID: {order_id})")
        log_audit_event('ORDER_PLACED', {
            'account_id': self.account_id,
            'order_id': order_id,
            'symbol': symbol,
            'side': side.value,
            'quantity': quantity,
            'is_amo': is_amo
        })
        return result

    def handle_orphaned_order(self, result: OrderResult, error: str) -> OrderResult:
        """Order accepted by the broker but local state could not be written."""
        logger.critical(f"🚨 CRITICAL: order {result.order_id} placed but {error}")
        cancelled, cancel_error = self.cancel_order(result.order_id)
        if not cancelled:
            logger.critical(f"🚨 Could not cancel orphaned order {result.order_id}: {cancel_error}")

        log_audit_event('ORDER_ORPHANED', {
            'account_id': self.account_id,
            'order_id': result.order_id,
            'error': error,
            'cancelled': cancelled
        }, outcome='CRITICAL')

        result.success = False
        result.error = error
        result.order_placed = True
        result.requires_manual_intervention = True
        return result

    # =========================================================================
    # Exit
    # =========================================================================

    def _latest_price(self, position: UserPosition) -> float:
        try:
            ltp = self.broker.get_ltp(position.symbol)
        except TradingSystemError as e:
            logger.warning(f"⚠️ LTP unavailable for {position.symbol}: {e}")
            ltp = None
        if ltp:
            return ltp
        logger.warning(f"⚠️ Using last known price for {position.symbol} exit P&L")
        return position.current_price or position.entry_price

    def exit_position(self, position: UserPosition, exit_reason: str) -> OrderResult:
        """
        Sell an ACTIVE user position and mark it EXITED.

        Realized P&L uses the latest traded price fetched after the sell
        order is accepted. Exiting an already-exited position is a no-op
        success.
        """
        current = self.repository.get_user_position(position.id) or position
        if current.status != PositionStatus.ACTIVE:
            logger.info(f"Position {current.symbol} ({current.id}) already {current.status.value} - nothing to exit")
            return OrderResult(success=True, already_exited=True, order_id=current.exit_order_id)

        if not current.entry_quantity or current.entry_quantity <= 0:
            return OrderResult(success=False, error='Invalid position quantity for exit')
        if not current.entry_price or current.entry_price <= 0:
            return OrderResult(success=False, error='Invalid entry price for PnL calculation')
        if current.entry_quantity > config.LARGE_QUANTITY_WARNING:
            logger.warning(f"⚠️ Large SELL quantity detected: {current.entry_quantity} shares for {current.symbol}")

        logger.info(
            f"🔄 Exiting {current.symbol}: {current.entry_quantity} shares @ ₹{current.entry_price:.2f} "
            f"(reason: {exit_reason})"
        )

        result = self.place_order(
            current.symbol,
            OrderSide.SELL,
            current.entry_quantity,
            price=current.current_price,
            reason=exit_reason
        )
        if not result.success:
            return result

        exit_price = self._latest_price(current)
        pnl_amount = round2(calculate_pnl_amount(current.entry_price, exit_price, current.entry_quantity))
        pnl_pct = round2(calculate_pnl_pct(current.entry_price, exit_price))

        now = self._clock()
        current.status = PositionStatus.EXITED
        current.exit_order_id = result.order_id
        current.exit_price = exit_price
        current.exit_quantity = current.entry_quantity
        current.current_price = exit_price
        current.pnl_amount = pnl_amount
        current.pnl_percentage = pnl_pct
        current.exit_date = now.strftime('%Y-%m-%d')
        current.exit_time = now.isoformat()
        current.exit_reason = exit_reason
        current.trailing_level = 0
        current.updated_at = now.isoformat()

        try:
            self.repository.upsert_user_position(current)
        except (IOError, OSError) as e:
            logger.critical(f"🚨 CRITICAL: SELL order {result.order_id} placed but position update failed: {e}")
            log_audit_event('POSITION_UPDATE_FAILED', {
                'account_id': self.account_id,
                'position_id': current.id,
                'order_id': result.order_id
            }, outcome='CRITICAL')
            result.success = False
            result.error = f"Failed to update position status: {e}"
            result.requires_manual_intervention = True
            return result

        logger.info(f"✅ Position exited: {current.symbol} @ ₹{exit_price:.2f} - P&L ₹{pnl_amount:.2f} ({pnl_pct:+.2f}%)")
        log_audit_event('USER_POSITION_EXITED', {
            'account_id': self.account_id,
            'position_id': current.id,
            'symbol': current.symbol,
            'exit_price': exit_price,
            'pnl_amount': pnl_amount,
            'exit_reason': exit_reason
        })

        result.actual_exit_price = exit_price
        result.actual_pnl_amount = pnl_amount
        result.actual_pnl_percentage = pnl_pct
        result.position_updated = True
        return result

    # =========================================================================
    # Cancel
    # =========================================================================

    def cancel_order(self, order_id: str) -> Tuple[bool, Optional[str]]:
        """
        Cancel an order at the broker and mark the record CANCELLED.

        Returns:
            (cancelled, error_message)
        """
        if config.DRY_RUN:
            logger.info(f"[DRY RUN] Would cancel order {order_id}")
            self.repository.update_order(order_id, order_status='CANCELLED')
            return True, None

        try:
            self.broker.cancel_order(order_id)
        except TradingSystemError as e:
            logger.error(f"❌ Failed to cancel order {order_id}: {e}")
            return False, str(e)

        self.repository.update_order(order_id, order_status='CANCELLED')
        log_audit_event('ORDER_CANCELLED', {'account_id': self.account_id, 'order_id': order_id})
        logger.info(f"✅ Order cancelled: {order_id}")
        return True, None


def create_order_manager(broker, repository, account_id: Optional[str] = None, client_id: Optional[str] = None) -> OrderManager:
    """Create an order manager for an account."""
    return OrderManager(broker, repository, account_id=account_id, client_id=client_id)
