# mtf_trading/exit_monitor.py
"""
Exit Monitor

Re-evaluates every open algorithm position on each monitoring tick:
- Priority 1: RSI reversal (RSI14 below its 14-period SMA)
- Priority 2: Stop loss at -2.5% P&L
- Priority 3: Trailing-stop ladder with a high-water-mark level

Also handles:
- Minimum position age (no RSI / trailing exits in the first hour)
- Consecutive-failure breaker across a monitoring pass (degraded mode)
- Trailing-level and exit notifications after the pass
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import config
from .indicators import NEUTRAL_RSI, rsi, sma
from .models import (
    ExitSignal,
    ExitType,
    PositionMonitorResult,
    PositionRecord,
    TrailingLevel,
)
from .utils import (
    calculate_pnl_pct,
    get_ist_now,
    log_audit_event,
    parse_timestamp,
    round2,
    to_ist,
)

logger = logging.getLogger(__name__)


# =============================================================================
# TRAILING LADDER
# =============================================================================

def get_trailing_levels() -> List[TrailingLevel]:
    """The configured ladder, lowest threshold first."""
    return [TrailingLevel(**row) for row in config.TRAILING_STOPS]


def get_level_config(level: float) -> Optional[TrailingLevel]:
    for row in get_trailing_levels():
        if row.level == level:
            return row
    return None


def calculate_trailing_level(pnl_pct: float) -> Tuple[float, float]:
    """
    Highest ladder level whose threshold is reached.

    Returns:
        (level, next_level); level 0 when no threshold is reached
    """
    levels = get_trailing_levels()
    for i in range(len(levels) - 1, -1, -1):
        if pnl_pct >= levels[i].profit_threshold:
            next_level = levels[i + 1].level if i < len(levels) - 1 else levels[i].level
            return levels[i].level, next_level
    return 0, levels[0].level


def check_trailing_stop(
    symbol: str,
    entry_price: float,
    current_price: float,
    pnl_pct: float,
    existing_level: float = 0
) -> Tuple[bool, float, float, Optional[ExitSignal]]:
    """
    Apply the ladder with a high-water mark.

    The effective level is max(stored level, level for current P&L). The
    position exits when price falls below entry x (1 + lock-in%) for that
    level.

    Returns:
        (should_exit, current_level, next_level, exit_signal)
    """
    calculated_level, next_level = calculate_trailing_level(pnl_pct)
    current_level = max(existing_level or 0, calculated_level)

    if current_level == 0:
        return False, 0, next_level, None

    level_config = get_level_config(current_level)
    if level_config is None:
        logger.warning(f"⚠️ {symbol}: unknown trailing level {current_level}")
        return False, current_level, next_level, None

    if current_level > calculated_level:
        following = [lv.level for lv in get_trailing_levels() if lv.level > current_level]
        next_level = following[0] if following else current_level

    lock_in_price = entry_price * (1 + level_config.lock_in / 100)
    if current_price < lock_in_price:
        signal = ExitSignal(
            symbol=symbol,
            exit_type=ExitType.TRAILING_STOP,
            exit_reason=(
                f"Book profits now! {symbol} hit trailing stop at {level_config.lock_in}% "
                f"- secure your gains before further drop!"
            ),
            current_price=current_price,
            exit_price=current_price,
            pnl_amount=current_price - entry_price,
            pnl_percentage=pnl_pct,
            trailing_level=current_level
        )
        return True, current_level, next_level, signal

    return False, current_level, next_level, None


def position_age_minutes(position: PositionRecord, now: datetime) -> Optional[float]:
    """Minutes since entry, or None when the entry time is unknown."""
    entered = parse_timestamp(position.entry_time) or parse_timestamp(position.entry_date)
    if entered is None:
        return None
    return (to_ist(now) - entered).total_seconds() / 60


def evaluate_exit(
    position: PositionRecord,
    current_price: float,
    rsi_current: float,
    rsi_sma: float,
    now: Optional[datetime] = None
) -> PositionMonitorResult:
    """
    Exit state machine for one position (pure).

    RSI reversal and trailing exits are suppressed while the position is
    younger than MIN_POSITION_AGE_MINUTES; the stop loss always applies.
    """
    now = now or get_ist_now()
    entry_price = position.entry_price
    pnl_amount = current_price - entry_price
    pnl_pct = calculate_pnl_pct(entry_price, current_price)
    previous_level = position.trailing_level or 0

    age = position_age_minutes(position, now)
    is_young = age is not None and age < config.MIN_POSITION_AGE_MINUTES

    base = dict(
        symbol=position.symbol,
        current_price=current_price,
        pnl_amount=pnl_amount,
        pnl_percentage=pnl_pct,
        previous_trailing_level=previous_level
    )

    # Priority 1: RSI reversal
    if rsi_current < rsi_sma and not is_young:
        return PositionMonitorResult(
            status='EXIT',
            trailing_level=previous_level,
            exit_signal=ExitSignal(
                symbol=position.symbol,
                exit_type=ExitType.RSI_REVERSAL,
                exit_reason='Exit due to trend reversal: RSI crossed down RSI 14 SMA',
                current_price=current_price,
                exit_price=current_price,
                pnl_amount=pnl_amount,
                pnl_percentage=pnl_pct,
                rsi_current=rsi_current,
                rsi_sma=rsi_sma
            ),
            **base
        )

    # Priority 2: stop loss
    if pnl_pct <= config.EXIT_STOP_LOSS_PCT:
        return PositionMonitorResult(
            status='EXIT',
            trailing_level=previous_level,
            exit_signal=ExitSignal(
                symbol=position.symbol,
                exit_type=ExitType.STOP_LOSS,
                exit_reason=(
                    f"Stop loss hit: Price dropped {abs(config.EXIT_STOP_LOSS_PCT)}% "
                    f"below entry ({pnl_pct:.2f}%)"
                ),
                current_price=current_price,
                exit_price=current_price,
                pnl_amount=pnl_amount,
                pnl_percentage=pnl_pct
            ),
            **base
        )

    # Priority 3: trailing ladder
    should_exit, level, next_level, signal = check_trailing_stop(
        position.symbol, entry_price, current_price, pnl_pct, previous_level
    )

    if should_exit and not is_young:
        return PositionMonitorResult(
            status='EXIT',
            exit_signal=signal,
            trailing_level=level,
            next_level=next_level,
            level_changed=level > previous_level,
            **base
        )

    return PositionMonitorResult(
        status='HOLD',
        trailing_level=level,
        next_level=next_level,
        level_changed=level > previous_level,
        **base
    )


def latest_rsi_pair(closes: List[float]) -> Tuple[float, float]:
    """Current RSI14 and RSI14-SMA (neutral 50 when history is short)."""
    rsi_values = rsi(closes, config.RSI_PERIOD)
    rsi_sma_values = sma(rsi_values, config.RSI_SMA_PERIOD)
    current = float(rsi_values[-1]) if len(rsi_values) else NEUTRAL_RSI
    average = float(rsi_sma_values[-1]) if len(rsi_sma_values) else NEUTRAL_RSI
    return current, round2(average)


# =============================================================================
# MONITOR
# =============================================================================

class ExitMonitor:
    """
    Monitors active algorithm positions and records exits.

    Usage:
        monitor = ExitMonitor(aggregator, repository, notifier)
        summary = monitor.monitor_active_positions()
    """

    def __init__(
        self,
        aggregator,
        repository,
        notifier=None,
        clock: Callable[[], datetime] = get_ist_now,
        sleep: Callable[[float], None] = time.sleep,
        max_consecutive_failures: int = config.MONITOR_MAX_CONSECUTIVE_FAILURES,
        position_delay: float = config.MONITOR_POSITION_DELAY_SECONDS
    ):
        self.aggregator = aggregator
        self.repository = repository
        self.notifier = notifier
        self._clock = clock
        self._sleep = sleep
        self.max_consecutive_failures = max_consecutive_failures
        self.position_delay = position_delay

    def analyze_position(self, position: PositionRecord) -> PositionMonitorResult:
        """Fetch the latest series for a position and run the state machine."""
        series = self.aggregator.get_series(position.symbol)
        closes = [c.close for c in series.combined() if c.close > 0]
        if not closes:
            raise ValueError(f"No price data available for {position.symbol}")

        rsi_current, rsi_sma = latest_rsi_pair(closes)
        return evaluate_exit(position, closes[-1], rsi_current, rsi_sma, self._clock())

    def _trailing_notification(
        self,
        position: PositionRecord,
        result: PositionMonitorResult
    ) -> Optional[Dict[str, Any]]:
        level_config = get_level_config(result.trailing_level)
        if level_config is None:
            return None
        return {
            'symbol': position.symbol,
            'current_price': result.current_price,
            'pnl_percentage': round2(result.pnl_percentage),
            'pnl_amount': round2(result.pnl_amount),
            'new_level': result.trailing_level,
            'previous_level': result.previous_trailing_level,
            'lock_in_price': round2(position.entry_price * (1 + level_config.lock_in / 100)),
            'level_description': level_config.description
        }

    def _process(self, position: PositionRecord, outcome: Dict[str, Any]) -> PositionMonitorResult:
        result = self.analyze_position(position)

        self.repository.update_position_pnl(position.symbol, result.current_price)
        outcome['updated_positions'] += 1

        if result.trailing_level > result.previous_trailing_level:
            changed = self.repository.update_trailing_level(position.symbol, result.trailing_level)
            result.level_changed = changed
            if changed and result.trailing_level > 0:
                notification = self._trailing_notification(position, result)
                if notification:
                    outcome['trailing_level_notifications'].append(notification)
                    logger.info(
                        f"🎯 TRAILING LEVEL ACTIVATED: {position.symbol} reached Level "
                        f"{result.trailing_level} ({notification['level_description']})"
                    )
        else:
            result.level_changed = False

        if result.status == 'EXIT' and result.exit_signal:
            self.repository.mark_position_exited(position.symbol, result.exit_signal)
            outcome['exit_signals'].append(result.exit_signal)
            log_audit_event('EXIT_SIGNAL', {
                'symbol': position.symbol,
                'exit_type': result.exit_signal.exit_type.value,
                'exit_price': result.exit_signal.exit_price,
                'pnl_percentage': round2(result.exit_signal.pnl_percentage),
                'trailing_level': result.exit_signal.trailing_level
            })
            logger.warning(f"🚨 EXIT SIGNAL: {position.symbol} - {result.exit_signal.exit_reason}")

        return result

    def monitor_active_positions(self, send_alerts: bool = True) -> Dict[str, Any]:
        """
        One monitoring pass over all active algorithm positions.

        Never raises. After MONITOR_MAX_CONSECUTIVE_FAILURES consecutive
        failures the remaining positions are skipped and 'degraded' is set.

        Returns:
            Dict with monitoring_results, exit_signals,
            trailing_level_notifications, degraded, errors
        """
        outcome: Dict[str, Any] = {
            'total_positions': 0,
            'updated_positions': 0,
            'monitoring_results': [],
            'exit_signals': [],
            'trailing_level_notifications': [],
            'degraded': False,
            'skipped': 0,
            'errors': [],
            'timestamp': to_ist(self._clock()).isoformat()
        }

        try:
            positions = self.repository.get_active_positions()
        except Exception as e:
            logger.error(f"❌ Failed to load active positions: {e}")
            outcome['errors'].append(f"Failed to load active positions: {e}")
            return outcome

        outcome['total_positions'] = len(positions)
        logger.info(f"🔍 Monitoring {len(positions)} active positions")

        consecutive_failures = 0
        for i, position in enumerate(positions):
            if consecutive_failures >= self.max_consecutive_failures:
                remaining = positions[i:]
                outcome['degraded'] = True
                outcome['skipped'] = len(remaining)
                for skipped in remaining:
                    outcome['monitoring_results'].append(
                        PositionMonitorResult(symbol=skipped.symbol, status='SKIPPED',
                                              error='Skipped after consecutive failures')
                    )
                logger.critical(
                    f"🚨 {consecutive_failures} consecutive monitoring failures - "
                    f"skipping {len(remaining)} remaining positions"
                )
                log_audit_event('MONITOR_DEGRADED', {
                    'consecutive_failures': consecutive_failures,
                    'skipped': [p.symbol for p in remaining]
                }, outcome='CRITICAL')
                break

            try:
                result = self._process(position, outcome)
                consecutive_failures = 0
            except Exception as e:
                consecutive_failures += 1
                logger.error(f"❌ Error monitoring {position.symbol}: {e}")
                outcome['errors'].append(f"{position.symbol}: {e}")
                result = PositionMonitorResult(symbol=position.symbol, status='ERROR', error=str(e))

            outcome['monitoring_results'].append(result)

            if i < len(positions) - 1 and self.position_delay > 0:
                self._sleep(self.position_delay)

        if send_alerts and self.notifier is not None:
            if outcome['trailing_level_notifications']:
                self.notifier.send_trailing_level_notifications(outcome['trailing_level_notifications'])
            if outcome['exit_signals']:
                self.notifier.send_exit_notifications(outcome['exit_signals'])

        if not outcome['exit_signals'] and not outcome['trailing_level_notifications']:
            logger.info(f"📊 No exit conditions met - all {len(positions)} positions holding")

        return outcome
