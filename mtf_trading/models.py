# mtf_trading/models.py
"""
Typed Records

Broker responses are parsed into these records at the API boundary so that
business logic never handles raw response maps.
"""

from dataclasses import dataclass, field, asdict, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def record_to_dict(record: Any) -> Dict[str, Any]:
    """Convert a dataclass record to JSON-friendly primitives."""
    return _plain(asdict(record))


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


class SignalType(str, Enum):
    ENTRY = 'ENTRY'
    WATCHLIST = 'WATCHLIST'
    NO_ENTRY = 'NO_ENTRY'
    ERROR = 'ERROR'


class PositionStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    EXITED = 'EXITED'
    STOPPED = 'STOPPED'


class ExitType(str, Enum):
    RSI_REVERSAL = 'RSI_REVERSAL'
    STOP_LOSS = 'STOP_LOSS'
    TRAILING_STOP = 'TRAILING_STOP'


# =============================================================================
# Market data
# =============================================================================

@dataclass(frozen=True)
class Candle:
    date: str
    open: float
    high: float
    low: float
    close: float
    volume: float = 0

    @property
    def has_live_data(self) -> bool:
        """A close of 0 marks the 'no live data' placeholder."""
        return self.close > 0


@dataclass
class MarketSeries:
    symbol: str
    historical: List[Candle]
    today: Candle
    intraday_points: int = 0

    def combined(self) -> List[Candle]:
        """Historical candles plus today's candle when it carries live data."""
        if self.today.has_live_data:
            return self.historical + [self.today]
        return list(self.historical)


# =============================================================================
# Support / resistance
# =============================================================================

@dataclass(frozen=True)
class PivotPoint:
    index: int
    price: float
    type: str          # 'high' or 'low'
    date: str = ''


@dataclass
class Channel:
    upper: float
    lower: float
    pivots: Tuple[PivotPoint, ...]
    strength: int = 0

    @property
    def width(self) -> float:
        return self.upper - self.lower


@dataclass
class ChannelProjection:
    upper: float
    lower: float
    strength: int
    distance_percent: float


@dataclass
class ResistanceCheck:
    passed: bool
    reason: str
    distance_percent: Optional[float] = None
    nearest_resistance: Optional[float] = None


@dataclass
class SupportResistanceSnapshot:
    symbol: str
    current_price: float
    nearest_support: Optional[ChannelProjection]
    nearest_resistance: Optional[ChannelProjection]
    channels: List[Channel] = field(default_factory=list)
    pivot_highs: List[PivotPoint] = field(default_factory=list)
    pivot_lows: List[PivotPoint] = field(default_factory=list)
    statistics: Dict[str, Any] = field(default_factory=dict)
    analysis_date: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return record_to_dict(self)


# =============================================================================
# Indicators and entry signals
# =============================================================================

@dataclass
class TechnicalIndicators:
    close: float
    ema50: float
    rsi14: float
    rsi14_sma: float
    macd: float
    macd_signal: float
    histogram: float
    histogram_count: int = 0
    ema20: Optional[float] = None
    volume: float = 0
    avg_volume20: float = 0
    rsi_rising: bool = False
    macd_accelerating: bool = False


@dataclass
class EntryConditionSet:
    above_ema: bool
    rsi_in_range: bool
    rsi_above_sma: bool
    macd_bullish: bool
    histogram_ok: bool
    resistance_ok: bool

    def as_dict(self) -> Dict[str, bool]:
        return asdict(self)

    @property
    def passed_count(self) -> int:
        return sum(1 for v in self.as_dict().values() if v)

    @property
    def all_passed(self) -> bool:
        return self.passed_count == 6


@dataclass
class RiskAssessment:
    level: str
    stop_loss: float
    target1: float
    target2: float
    position_size_percent: float = 2.0


@dataclass
class EntrySignalResult:
    symbol: str
    exchange: str
    analysis_date: str
    current_price: float
    signal: SignalType
    confidence: int
    conditions: EntryConditionSet
    indicators: TechnicalIndicators
    histogram_count: int
    resistance_check: ResistanceCheck
    reasoning: str
    risk_assessment: RiskAssessment
    next_review: str
    mode: str = 'strict'
    win_probability: Optional[int] = None
    risk_reward_ratio: Optional[float] = None

    @property
    def conditions_passed(self) -> int:
        return self.conditions.passed_count

    def to_dict(self) -> Dict[str, Any]:
        data = record_to_dict(self)
        data['conditions_passed'] = self.conditions_passed
        return data


# =============================================================================
# Positions
# =============================================================================

@dataclass(frozen=True)
class TrailingLevel:
    level: float
    profit_threshold: float
    lock_in: float
    description: str


@dataclass
class PositionRecord:
    id: str
    symbol: str
    entry_price: float
    entry_quantity: int = 1
    current_price: float = 0.0
    pnl_amount: float = 0.0
    pnl_percentage: float = 0.0
    trailing_level: float = 0
    status: PositionStatus = PositionStatus.ACTIVE
    entry_date: str = ''
    entry_time: str = ''
    exit_price: Optional[float] = None
    exit_date: Optional[str] = None
    exit_time: Optional[str] = None
    exit_reason: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        values = _known_fields(cls, data)
        if 'status' in values:
            values['status'] = PositionStatus(values['status'])
        return cls(**values)


@dataclass
class AlgorithmPosition(PositionRecord):
    """Algorithm-owned position; source of truth for signal dedup."""
    scanner_signal_id: Optional[str] = None


@dataclass
class UserPosition(PositionRecord):
    """Per-account position, linked to its algorithm position."""
    account_id: str = ''
    algorithm_position_id: Optional[str] = None
    entry_order_id: Optional[str] = None
    exit_order_id: Optional[str] = None
    exit_quantity: Optional[int] = None


@dataclass
class ExitSignal:
    symbol: str
    exit_type: ExitType
    exit_reason: str
    current_price: float
    exit_price: float
    pnl_amount: float
    pnl_percentage: float
    trailing_level: Optional[float] = None
    rsi_current: Optional[float] = None
    rsi_sma: Optional[float] = None


@dataclass
class PositionMonitorResult:
    symbol: str
    status: str        # HOLD / EXIT / ERROR / SKIPPED
    current_price: float = 0.0
    pnl_amount: float = 0.0
    pnl_percentage: float = 0.0
    exit_signal: Optional[ExitSignal] = None
    trailing_level: float = 0
    next_level: Optional[float] = None
    previous_trailing_level: float = 0
    level_changed: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return record_to_dict(self)


# =============================================================================
# Accounts, broker results
# =============================================================================

@dataclass
class AccessToken:
    token: str
    expires_at: datetime

    def seconds_remaining(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()


@dataclass
class AccountCredentials:
    account_id: str
    client_id: str
    public_key: str
    private_key: str
    recipient: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        return cls(**_known_fields(cls, data))


@dataclass
class TradingPreferences:
    account_id: str
    total_capital: float
    allocation_percentage: float
    max_concurrent_positions: int
    daily_loss_limit_percentage: float
    stop_loss_percentage: float = 2.5
    is_real_trading_enabled: bool = False

    @property
    def allocation_amount(self) -> float:
        return self.total_capital * self.allocation_percentage / 100

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        return cls(**_known_fields(cls, data))


@dataclass
class DailySummary:
    account_id: str
    trading_date: str
    daily_pnl: float = 0.0
    daily_pnl_percentage: float = 0.0
    is_trading_stopped: bool = False
    updated_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        return cls(**_known_fields(cls, data))


@dataclass
class MarginInfo:
    symbol: str
    price: float
    approximate_margin: float
    margin_per_share: float
    is_fallback: bool = False


@dataclass
class PositionSize:
    quantity: int
    amount: float
    margin_required: float
    leverage: float
    margin_per_share: float
    used_fallback: bool = False


@dataclass
class OrderResult:
    success: bool
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    broker_response: Optional[Dict[str, Any]] = None
    market_status: Optional[str] = None
    is_amo: bool = False
    execution_time: Optional[str] = None
    actual_exit_price: Optional[float] = None
    actual_pnl_amount: Optional[float] = None
    actual_pnl_percentage: Optional[float] = None
    position_updated: bool = False
    order_placed: bool = False
    requires_manual_intervention: bool = False
    already_exited: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return record_to_dict(self)
