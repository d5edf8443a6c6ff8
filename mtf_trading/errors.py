# mtf_trading/errors.py
"""
Error Taxonomy

Exception classes shared by the resilience layer, the broker client and the
order lifecycle:
- Transient network / 5xx failures (retried with backoff)
- Authentication failures (one forced token refresh + one retry)
- Circuit-open / unavailable (fail fast, never retried)
- Business-rule rejections (surfaced as a reason string)
"""

from typing import Any, Dict, Optional


class TradingSystemError(Exception):
    """Base class for all trading engine errors."""
    pass


class BrokerApiError(TradingSystemError):
    """A broker HTTP call failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.payload = payload or {}


class TransientApiError(BrokerApiError):
    """Network error, timeout, HTTP 429 or 5xx. Safe to retry."""
    pass


class AuthenticationError(BrokerApiError):
    """Access token rejected by the broker (HTTP 401 or AUTHENTICATION_ERROR)."""
    pass


class CircuitOpenError(TradingSystemError):
    """Circuit breaker is open; the call was not attempted."""

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class TokenRefreshError(TradingSystemError):
    """Access token generation failed."""
    pass


class BusinessRuleRejection(TradingSystemError):
    """An order or entry was rejected by a trading rule (not retried)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
