# mtf_trading/broker_client.py
"""
Broker HTTP API Client

Thin typed wrapper around the broker's REST API:
- Historical chart (multi-year daily bars) and intraday chart
- Last traded price
- Margin info for a reference trade
- Order placement and cancellation

Every response is parsed at this boundary into typed records or raised as
one of the errors in errors.py. An HTTP 401 triggers exactly one forced
token refresh and one retry before the failure surfaces.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from . import config
from .errors import AuthenticationError, BrokerApiError, TransientApiError
from .models import Candle, MarginInfo
from .token_manager import TokenCoordinator, create_token_coordinator
from .utils import get_ist_now

logger = logging.getLogger(__name__)

AUTH_FAILURE_TEXT = 'Access token validation failed'


def format_api_time(dt: datetime) -> str:
    """ISO timestamp without fractional seconds or offset (YYYY-MM-DDTHH:MM:SS)."""
    return dt.isoformat()[:19]


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_chart_points(points: List[Dict[str, Any]], daily: bool = True) -> List[Candle]:
    """
    Convert broker chart points into candles.

    Points carry string fields: timestamp, open, high, low, close, volume.
    Daily candles keep only the date part of the timestamp.
    """
    candles = []
    for point in points or []:
        timestamp = str(point.get('timestamp', ''))
        candles.append(Candle(
            date=timestamp.split('T')[0] if daily else timestamp,
            open=_to_float(point.get('open')),
            high=_to_float(point.get('high')),
            low=_to_float(point.get('low')),
            close=_to_float(point.get('close')),
            volume=_to_float(point.get('volume'))
        ))
    return candles


class BrokerClient:
    """
    Authenticated broker API client for one account.

    Usage:
        client = BrokerClient(TokenCoordinator(credentials))
        candles = client.get_historical_chart('RELIANCE')
    """

    def __init__(
        self,
        tokens: TokenCoordinator,
        session: Optional[requests.Session] = None,
        base_url: str = config.LEMON_BASE_URL,
        exchange: str = config.LEMON_EXCHANGE
    ):
        self.tokens = tokens
        self.session = session or self._create_session()
        self.base_url = base_url.rstrip('/')
        self.exchange = exchange

    @staticmethod
    def _create_session() -> requests.Session:
        """Session with connect-level retries only; POSTs are never replayed on a response."""
        session = requests.Session()
        retry = Retry(
            total=2,
            connect=2,
            read=0,
            status=0,
            backoff_factor=0.5,
            allowed_methods=None
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    # =========================================================================
    # Request plumbing
    # =========================================================================

    def _check_response(self, response: requests.Response, operation: str) -> Dict[str, Any]:
        """Classify a broker response; returns the parsed body on success."""
        status_code = response.status_code

        if status_code == 401:
            raise AuthenticationError(f"{operation}: HTTP 401 Unauthorized", status_code=401,
                                      error_code='AUTHENTICATION_ERROR')

        if status_code == 429 or status_code >= 500:
            raise TransientApiError(f"{operation}: HTTP {status_code}", status_code=status_code,
                                    error_code='RATE_LIMIT_EXCEEDED' if status_code == 429 else 'INTERNAL_ERROR')

        try:
            body = response.json()
        except ValueError:
            raise BrokerApiError(f"{operation}: invalid JSON response (HTTP {status_code})",
                                 status_code=status_code)

        error_code = body.get('error_code')
        message = body.get('msg') or body.get('message') or ''

        if error_code == 'AUTHENTICATION_ERROR' or AUTH_FAILURE_TEXT in message:
            raise AuthenticationError(f"{operation}: {message or 'authentication failed'}",
                                      status_code=status_code, error_code='AUTHENTICATION_ERROR',
                                      payload=body)

        if status_code >= 400 or body.get('status') != 'success':
            raise BrokerApiError(f"{operation}: {message or f'HTTP {status_code}'}",
                                 status_code=status_code, error_code=error_code, payload=body)

        return body

    def _send(self, method: str, path: str, payload: Optional[Dict[str, Any]], operation: str) -> Dict[str, Any]:
        headers = self.tokens.auth_headers()
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                json=payload,
                timeout=config.REQUEST_TIMEOUT_SECONDS
            )
        except requests.exceptions.Timeout as e:
            raise TransientApiError(f"{operation}: request timeout: {e}", error_code='TIMEOUT_ERROR')
        except requests.exceptions.RequestException as e:
            raise TransientApiError(f"{operation}: network error: {e}", error_code='NETWORK_ERROR')

        return self._check_response(response, operation)

    def request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        operation: str = 'broker request',
        refresh_on_auth: bool = True
    ) -> Dict[str, Any]:
        """
        Authenticated request with one forced refresh + retry on auth failure.

        Args:
            refresh_on_auth: False leaves auth handling to the caller
                (order placement runs its own attempt loop)
        """
        try:
            return self._send(method, path, payload, operation)
        except AuthenticationError:
            if not refresh_on_auth:
                raise
            logger.warning(f"🔄 {operation}: authentication failed, forcing token refresh")
            self.tokens.force_refresh()
            return self._send(method, path, payload, operation)

    # =========================================================================
    # Market data
    # =========================================================================

    def get_historical_chart(
        self,
        symbol: str,
        interval: str = config.HISTORICAL_INTERVAL,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[Candle]:
        """Multi-year daily candles, oldest first."""
        end = end or get_ist_now()
        start = start or end - timedelta(days=365 * config.HISTORICAL_YEARS)

        body = self.request('POST', config.HISTORICAL_CHART_PATH, {
            'symbol': symbol,
            'exchange': self.exchange,
            'interval': interval,
            'start_time': format_api_time(start),
            'end_time': format_api_time(end)
        }, operation=f"historical chart {symbol}")

        data = body.get('data') or {}
        return parse_chart_points(data.get('points') or [], daily=True)

    def get_chart(
        self,
        symbol: str,
        start_time: str,
        end_time: str,
        interval: str = config.INTRADAY_INTERVAL
    ) -> List[Candle]:
        """Intraday candles between two local timestamps."""
        body = self.request('POST', config.CHART_PATH, {
            'symbol': symbol,
            'exchange': self.exchange,
            'interval': interval,
            'start_time': start_time,
            'end_time': end_time
        }, operation=f"chart {symbol}")

        data = body.get('data') or {}
        return parse_chart_points(data.get('points') or [], daily=False)

    def get_ltp(self, symbol: str) -> Optional[float]:
        """Last traded price, or None when the broker has no quote."""
        body = self.request('POST', config.LTP_PATH, {
            'exchange': self.exchange,
            'symbols': [symbol]
        }, operation=f"LTP {symbol}")

        data = body.get('data')
        if isinstance(data, list):
            data = next((row for row in data if row.get('symbol') == symbol), data[0] if data else {})
        elif isinstance(data, dict) and symbol in data:
            data = data[symbol]

        if not isinstance(data, dict):
            return None

        price = _to_float(data.get('last_traded_price', data.get('ltp')))
        return price if price > 0 else None

    def get_margin_info(self, symbol: str, price: float, quantity: int = 1) -> MarginInfo:
        """
        Broker margin for a reference BUY trade.

        The margin-info endpoint does not accept the MTF product type, so
        the request uses MARGIN.
        """
        body = self.request('POST', config.MARGIN_INFO_PATH, {
            'symbol': symbol,
            'exchange': self.exchange,
            'transactionType': 'BUY',
            'price': str(price),
            'quantity': str(quantity),
            'productType': 'MARGIN'
        }, operation=f"margin info {symbol}")

        data = body.get('data') or {}
        approximate_margin = _to_float(data.get('approximateMargin'))
        return MarginInfo(
            symbol=symbol,
            price=price,
            approximate_margin=approximate_margin,
            margin_per_share=approximate_margin / quantity if quantity else 0.0
        )

    # =========================================================================
    # Orders
    # =========================================================================

    def place_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Submit an order payload.

        Returns:
            Broker 'data' dict with orderId and orderStatus

        Raises:
            AuthenticationError without refreshing; the order manager owns
            its attempt loop
        """
        body = self.request('POST', config.ORDERS_PATH, payload,
                            operation=f"place order {payload.get('symbol')}",
                            refresh_on_auth=False)
        return body.get('data') or {}

    def cancel_order(self, order_id: str) -> Dict[str, Any]:
        """Cancel an open order by broker order id."""
        body = self.request('DELETE', f"{config.ORDERS_PATH}/{order_id}",
                            operation=f"cancel order {order_id}")
        return body.get('data') or {}


def create_broker_client(tokens: Optional[TokenCoordinator] = None) -> BrokerClient:
    """Create a broker client for the algorithm account."""
    return BrokerClient(tokens or create_token_coordinator())
