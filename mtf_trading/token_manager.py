# mtf_trading/token_manager.py
"""
Access Token Coordinator

Owns the broker access token for one set of credentials:
- Signs clientId + epochMillis with the account's Ed25519 private key
- Caches the token and treats it as valid only with > 5 minutes remaining
- Single-flight refresh: concurrent callers share one in-flight request
- force_refresh() bypasses the cache (used after HTTP 401)

One coordinator instance is created per account and passed to every
component that needs authenticated access.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import requests
from nacl.signing import SigningKey

from . import config
from .errors import TokenRefreshError
from .models import AccessToken, AccountCredentials
from .utils import epoch_millis, get_ist_now, parse_timestamp

logger = logging.getLogger(__name__)


def sign_message(private_key_hex: str, message: str) -> str:
    """
    Sign a message with an Ed25519 private key.

    Args:
        private_key_hex: 32-byte seed, hex encoded
        message: Text to sign

    Returns:
        Hex-encoded signature
    """
    signing_key = SigningKey(bytes.fromhex(private_key_hex))
    return signing_key.sign(message.encode('utf-8')).signature.hex()


class _Flight:
    """A single in-flight refresh shared by all waiters."""

    def __init__(self):
        self.done = threading.Event()
        self.token: Optional[AccessToken] = None
        self.error: Optional[Exception] = None


class TokenCoordinator:
    """
    Per-account access token provider with single-flight refresh.

    Usage:
        coordinator = TokenCoordinator(credentials)
        token = coordinator.get_valid_token()
    """

    def __init__(
        self,
        credentials: AccountCredentials,
        session: Optional[requests.Session] = None,
        base_url: str = config.LEMON_BASE_URL,
        clock: Callable[[], datetime] = get_ist_now,
        millis: Callable[[], int] = epoch_millis
    ):
        self.credentials = credentials
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip('/')
        self._clock = clock
        self._millis = millis

        self._lock = threading.Lock()
        self._token: Optional[AccessToken] = None
        self._flight: Optional[_Flight] = None
        self.refresh_count = 0

    # =========================================================================
    # Public interface
    # =========================================================================

    def get_valid_token(self) -> str:
        """Return a cached token with > 5 min left, refreshing if needed."""
        with self._lock:
            if self._is_valid(self._token):
                return self._token.token
        return self._refresh(force=False).token

    def force_refresh(self) -> str:
        """Refresh regardless of the cached token."""
        logger.info(f"🔄 Forcing token refresh for {self.credentials.client_id}")
        return self._refresh(force=True).token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None

    def auth_headers(self) -> Dict[str, str]:
        """Headers for authenticated broker requests."""
        return {
            'x-api-key': self.credentials.public_key,
            'x-auth-key': self.get_valid_token(),
            'x-client-id': self.credentials.client_id,
            'Content-Type': 'application/json'
        }

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            token = self._token
            in_flight = self._flight is not None
        return {
            'has_token': token is not None,
            'is_valid': self._is_valid(token),
            'expires_at': token.expires_at.isoformat() if token else None,
            'refresh_in_flight': in_flight,
            'refresh_count': self.refresh_count
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _is_valid(self, token: Optional[AccessToken]) -> bool:
        if token is None:
            return False
        return token.seconds_remaining(self._clock()) > config.TOKEN_REFRESH_BUFFER_SECONDS

    def _refresh(self, force: bool) -> AccessToken:
        with self._lock:
            flight = self._flight
            if flight is None:
                # Re-check under the lock: another caller may have just refreshed
                if not force and self._is_valid(self._token):
                    return self._token
                flight = _Flight()
                self._flight = flight
                leader = True
            else:
                leader = False

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.token

        try:
            token = self._request_token()
            flight.token = token
            with self._lock:
                self._token = token
            return token
        except TokenRefreshError as e:
            flight.error = e
            raise
        except Exception as e:
            flight.error = TokenRefreshError(f"Token refresh failed: {e}")
            raise flight.error from e
        finally:
            with self._lock:
                self._flight = None
            flight.done.set()

    def _request_token(self) -> AccessToken:
        """POST a signed token request to the broker."""
        epoch_time = str(self._millis())
        message = f"{self.credentials.client_id}{epoch_time}"
        signature = sign_message(self.credentials.private_key, message)

        self.refresh_count += 1
        logger.info(f"🔄 Requesting access token for {self.credentials.client_id}")

        try:
            response = self.session.post(
                f"{self.base_url}{config.TOKEN_PATH}",
                headers={
                    'x-api-key': self.credentials.public_key,
                    'x-epoch-time': epoch_time,
                    'x-signature': signature,
                    'Content-Type': 'application/json'
                },
                json={'client_id': self.credentials.client_id},
                timeout=config.REQUEST_TIMEOUT_SECONDS
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"❌ Token request failed: {e}")
            raise TokenRefreshError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"❌ Token request rejected: HTTP {response.status_code}")
            raise TokenRefreshError(f"Token generation failed: HTTP {response.status_code}")

        body = response.json()
        data = body.get('data') or {}
        access_token = data.get('access_token')
        if not access_token:
            message = body.get('message') or 'missing access_token'
            logger.error(f"❌ Token generation failed: {message}")
            raise TokenRefreshError(f"Token generation failed: {message}")

        expires_at = parse_timestamp(data.get('expires_at'))
        if expires_at is None:
            expires_at = self._clock() + timedelta(hours=config.TOKEN_DEFAULT_TTL_HOURS)

        logger.info(f"✅ Access token refreshed (expires {expires_at.isoformat()})")
        return AccessToken(token=access_token, expires_at=expires_at)


def create_token_coordinator(credentials: Optional[AccountCredentials] = None) -> TokenCoordinator:
    """Create a coordinator from explicit or environment credentials."""
    if credentials is None:
        credentials = AccountCredentials.from_dict(config.get_broker_credentials())
    return TokenCoordinator(credentials)
