# mtf_trading/resilience.py
"""
Resilience Layer

Wraps every broker data call with:
- A retry policy value object (attempts, base delay, multiplier, cap)
- A generic with_retry(policy, fn) combinator
- A circuit breaker that fails fast after repeated failures
- A time-boxed response cache keyed by (type, symbol, interval, day)
- Rate-limit-aware batching (fixed worker pool + pause between batches)
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import config
from .errors import (
    AuthenticationError,
    BrokerApiError,
    BusinessRuleRejection,
    CircuitOpenError,
    TransientApiError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# RETRY POLICY
# =============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: delay = min(base * multiplier^(attempt-1), max_delay)."""
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


def is_retryable_error(error: Exception) -> bool:
    """
    Decide whether an error is worth another attempt.

    Circuit-open, business-rule and authentication errors are never retried
    here (authentication has its own one-shot refresh in the broker client).
    Broker errors with a known non-retryable code fail immediately.
    """
    if isinstance(error, (CircuitOpenError, BusinessRuleRejection, AuthenticationError)):
        return False

    if isinstance(error, TransientApiError):
        return True

    if isinstance(error, BrokerApiError):
        if error.error_code in config.NON_RETRYABLE_ERROR_CODES:
            return False
        if error.error_code in config.RETRYABLE_ERROR_CODES:
            return True
        message = str(error).lower()
        return any(hint in message for hint in ('timeout', 'network', 'connection', 'rate limit'))

    return True


def with_retry(
    policy: RetryPolicy,
    fn: Callable[[], Any],
    operation_name: str = 'operation',
    should_retry: Callable[[Exception], bool] = is_retryable_error,
    on_failure: Optional[Callable[[Exception], None]] = None,
    before_retry: Optional[Callable[[int], None]] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Any:
    """
    Execute fn under a retry policy.

    Args:
        policy: RetryPolicy to apply
        fn: Zero-argument callable
        operation_name: Name for logging
        should_retry: Predicate deciding whether an error is retryable
        on_failure: Called with every caught error (e.g. breaker bookkeeping)
        before_retry: Called with the next attempt number before retrying;
            may raise to abort at the retry boundary
        sleep: Sleep function (injectable for tests)

    Returns:
        Result of fn

    Raises:
        The last error once attempts are exhausted, or immediately for
        non-retryable errors
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn()
        except Exception as e:
            if on_failure is not None:
                on_failure(e)

            if not should_retry(e):
                logger.error(f"❌ {operation_name} failed (not retryable): {e}")
                raise

            if attempt >= policy.max_attempts:
                logger.error(f"❌ {operation_name} failed after {policy.max_attempts} attempts: {e}")
                raise

            wait_time = policy.delay_for(attempt)
            logger.warning(
                f"⚠️ {operation_name} failed (attempt {attempt}/{policy.max_attempts}): {e}. "
                f"Retrying in {wait_time:.1f}s..."
            )
            sleep(wait_time)

            if before_retry is not None:
                before_retry(attempt + 1)


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitBreaker:
    """
    Counts failures across calls and opens after a threshold.

    The breaker closes again automatically once reset_timeout seconds have
    passed since the last recorded failure. Any success resets the counter.
    """

    def __init__(
        self,
        threshold: int = config.CIRCUIT_BREAKER_THRESHOLD,
        reset_timeout: float = config.CIRCUIT_BREAKER_RESET_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self.consecutive_failures = 0
        self.last_failure_time: Optional[float] = None

    def _cooled_down(self) -> bool:
        return (
            self.last_failure_time is not None
            and self._clock() - self.last_failure_time >= self.reset_timeout
        )

    @property
    def is_open(self) -> bool:
        with self._lock:
            if self.consecutive_failures < self.threshold:
                return False
            if self._cooled_down():
                logger.info("✅ Circuit breaker cool-down elapsed - closing")
                self.consecutive_failures = 0
                return False
            return True

    def retry_after(self) -> float:
        """Seconds until the breaker auto-closes (0 if closed)."""
        with self._lock:
            if self.consecutive_failures < self.threshold or self.last_failure_time is None:
                return 0.0
            return max(0.0, self.reset_timeout - (self._clock() - self.last_failure_time))

    def record_failure(self) -> None:
        with self._lock:
            self.consecutive_failures += 1
            self.last_failure_time = self._clock()
            if self.consecutive_failures == self.threshold:
                logger.critical(
                    f"🚨 Circuit breaker OPEN after {self.consecutive_failures} failures "
                    f"(cool-down {self.reset_timeout:.0f}s)"
                )

    def record_success(self) -> None:
        with self._lock:
            self.consecutive_failures = 0

    def get_state(self) -> Dict[str, Any]:
        """Snapshot of the breaker state."""
        is_open = self.is_open
        with self._lock:
            return {
                'consecutive_failures': self.consecutive_failures,
                'last_failure_time': self.last_failure_time,
                'is_open': is_open
            }


# =============================================================================
# RESPONSE CACHE
# =============================================================================

class ResponseCache:
    """
    Thread-safe in-memory TTL cache.

    Safe for concurrent read/write but not transactional: a concurrent
    refresh may overwrite an entry.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(data_type: str, symbol: str, interval: str, day: str) -> str:
        """Cache key format: {type}_{symbol}_{interval}_{date}"""
        return f"{data_type}_{symbol}_{interval}_{day}"

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# =============================================================================
# RESILIENT API CLIENT
# =============================================================================

class ResilientApiClient:
    """
    Cache -> circuit breaker -> retry with backoff, in that order.

    Usage:
        client = ResilientApiClient()
        data = client.call(lambda: broker.get_chart(...), cache_key=key, ttl=3600)
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        cache: Optional[ResponseCache] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.policy = policy or config.get_retry_policy()
        self.breaker = breaker or CircuitBreaker()
        self.cache = cache or ResponseCache()
        self._sleep = sleep

    def _ensure_closed(self, operation_name: str) -> None:
        if self.breaker.is_open:
            retry_after = self.breaker.retry_after()
            logger.error(f"❌ {operation_name} blocked: circuit breaker open ({retry_after:.0f}s left)")
            raise CircuitOpenError(
                f"Service unavailable: circuit breaker open, retry in {retry_after:.0f}s",
                retry_after=retry_after
            )

    def _on_failure(self, error: Exception) -> None:
        # Every failed attempt counts; business rejections are not service failures
        if not isinstance(error, BusinessRuleRejection):
            self.breaker.record_failure()

    def call(
        self,
        request: Callable[[], Any],
        cache_key: Optional[str] = None,
        ttl: Optional[float] = None,
        operation_name: str = 'API call'
    ) -> Any:
        """
        Execute a broker request with caching, breaker and retries.

        Args:
            request: Zero-argument callable performing the HTTP call
            cache_key: Optional cache key; enables cache read and write
            ttl: Cache TTL in seconds (required with cache_key to store)
            operation_name: Name for logging

        Raises:
            CircuitOpenError: breaker open (before the call or mid-retry)
            The final request error once retries are exhausted
        """
        if cache_key:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Cache hit: {cache_key}")
                return cached

        self._ensure_closed(operation_name)

        result = with_retry(
            self.policy,
            request,
            operation_name=operation_name,
            on_failure=self._on_failure,
            before_retry=lambda _attempt: self._ensure_closed(operation_name),
            sleep=self._sleep
        )

        self.breaker.record_success()
        if cache_key and ttl:
            self.cache.set(cache_key, result, ttl)

        return result

    def get_status(self) -> Dict[str, Any]:
        """Breaker and cache status for monitoring."""
        return {
            'circuit_breaker': self.breaker.get_state(),
            'cache_entries': len(self.cache),
            'cache_hits': self.cache.hits,
            'cache_misses': self.cache.misses
        }


# =============================================================================
# BATCH PROCESSING
# =============================================================================

def process_in_batches(
    items: List[Any],
    fn: Callable[[Any], Any],
    batch_size: int = config.BATCH_CONCURRENCY,
    delay_between_batches: float = config.BATCH_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep
) -> List[Dict[str, Any]]:
    """
    Process items in fixed-size batches with a worker pool per batch.

    Args:
        items: Items to process (e.g. symbols)
        fn: Callable applied to each item
        batch_size: Concurrency within a batch
        delay_between_batches: Pause after each batch except the last
        sleep: Sleep function (injectable for tests)

    Returns:
        One dict per item, in input order: {'item', 'result', 'error'}
    """
    outcomes: Dict[int, Dict[str, Any]] = {}
    batches = [items[i:i + batch_size] for i in range(0, len(items), batch_size)]

    for batch_number, batch in enumerate(batches, start=1):
        offset = (batch_number - 1) * batch_size
        logger.info(f"Processing batch {batch_number}/{len(batches)} ({len(batch)} items)")

        with ThreadPoolExecutor(max_workers=batch_size) as executor:
            future_to_index = {
                executor.submit(fn, item): offset + i
                for i, item in enumerate(batch)
            }

            for future in as_completed(future_to_index):
                index = future_to_index[future]
                try:
                    outcomes[index] = {'item': items[index], 'result': future.result(), 'error': None}
                except Exception as e:
                    logger.error(f"❌ Error processing {items[index]}: {e}")
                    outcomes[index] = {'item': items[index], 'result': None, 'error': str(e)}

        if batch_number < len(batches) and delay_between_batches > 0:
            sleep(delay_between_batches)

    return [outcomes[i] for i in range(len(items))]
