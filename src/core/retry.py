"""Retry policies for store calls: backoff, circuit breaker, and the offline queue."""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from src.core.config import settings
from src.core.errors import (
    ConcurrencyError,
    ErrorCategory,
    StoreUnavailableError,
    TransactionAbortedError,
    categorize,
)


if TYPE_CHECKING:
    from src.core.document_store import DocumentStore, Transaction


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorRetryability(Enum):
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"


@dataclass
class RetryConfig:
    """Attempts, backoff and circuit breaker limits for one retry policy."""

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown: float = 60.0


def network_retry_config() -> RetryConfig:
    """Retry configuration for store calls that fail with network errors."""
    return RetryConfig(
        max_attempts=settings.network_retry_attempts,
        base_delay=settings.network_retry_base_delay,
        max_delay=settings.network_retry_max_delay,
    )


def transaction_retry_config() -> RetryConfig:
    """Retry configuration for aborted transactions (initial attempt plus retries)."""
    return RetryConfig(
        max_attempts=settings.transaction_max_retries + 1,
        base_delay=settings.transaction_retry_base_delay,
        max_delay=settings.network_retry_max_delay,
    )


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops calling the store after ``threshold`` consecutive network failures.

    While open, calls are refused until ``cooldown`` seconds have passed since
    the last failure; the next call then probes the store (half-open).
    """

    def __init__(self, threshold: int = 5, cooldown: float = 60.0) -> None:
        self.threshold = threshold
        self.cooldown = cooldown
        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = CircuitBreakerState.CLOSED

    def _cooling_down(self) -> bool:
        return time.monotonic() - self.last_failure_time < self.cooldown

    def record_success(self) -> None:
        if self.state != CircuitBreakerState.CLOSED:
            logger.info("circuit_breaker_closed", extra={"failure_count": self.failure_count})
        self.state = CircuitBreakerState.CLOSED
        self.failure_count = 0

    def record_failure(self) -> None:
        self.last_failure_time = time.monotonic()
        self.failure_count += 1
        if self.failure_count < self.threshold or self.state == CircuitBreakerState.OPEN:
            return
        self.state = CircuitBreakerState.OPEN
        logger.warning(
            "circuit_breaker_opened",
            extra={"failure_count": self.failure_count, "cooldown_seconds": self.cooldown},
        )

    def can_attempt(self) -> bool:
        """Return False while the breaker is open and still cooling down."""
        if self.state != CircuitBreakerState.OPEN:
            return True
        if self._cooling_down():
            return False
        self.state = CircuitBreakerState.HALF_OPEN
        logger.info("circuit_breaker_probing", extra={"failure_count": self.failure_count})
        return True


class RetryPolicy:
    """Exponential backoff for the error categories a policy is responsible for.

    Validation, permission and not-found errors are never retried; they
    propagate on the first attempt.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        retry_on: frozenset[ErrorCategory] = frozenset({ErrorCategory.NETWORK}),
    ) -> None:
        self.config = config or network_retry_config()
        self.retry_on = retry_on
        self.circuit_breaker = CircuitBreaker(
            self.config.circuit_breaker_threshold, self.config.circuit_breaker_cooldown
        )

    def classify_error(self, exception: Exception) -> ErrorRetryability:
        if not isinstance(exception, ConcurrencyError) and categorize(exception) in self.retry_on:
            return ErrorRetryability.RETRYABLE
        return ErrorRetryability.NON_RETRYABLE

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failure (0-indexed), capped at ``max_delay``."""
        return min(self.config.base_delay * self.config.backoff_multiplier**attempt, self.config.max_delay)

    def _ensure_closed(self, attempt: int) -> None:
        if self.circuit_breaker.can_attempt():
            return
        logger.warning(
            "store_call_refused", extra={"attempt": attempt, "failure_count": self.circuit_breaker.failure_count}
        )
        msg = "Circuit breaker is open. Document store temporarily unavailable."
        raise StoreUnavailableError(msg)

    async def execute(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``func(*args, **kwargs)``, retrying failures in ``retry_on`` with backoff.

        Raises:
            StoreUnavailableError: If the circuit breaker is open
            The original exception when it is not retryable or attempts run out
        """
        if self.config.max_attempts < 1:
            msg = "Retry policy configured with no attempts"
            raise ValueError(msg)

        attempt = 0
        while True:
            self._ensure_closed(attempt)
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                if self.classify_error(e) == ErrorRetryability.NON_RETRYABLE:
                    raise
                self.circuit_breaker.record_failure()
                attempt += 1
                context = {"attempt": attempt, "max_attempts": self.config.max_attempts, "error_type": type(e).__name__}
                if attempt >= self.config.max_attempts:
                    logger.error("store_call_failed", extra={**context, "error_message": str(e)})
                    raise
                delay = self.calculate_delay(attempt - 1)
                logger.info("store_call_retrying", extra={**context, "delay_seconds": delay})
                await asyncio.sleep(delay)
                continue

            self.circuit_breaker.record_success()
            if attempt:
                logger.info("store_call_recovered", extra={"attempts": attempt + 1})
            return result


async def run_transaction_with_retry(
    store: "DocumentStore",
    fn: "Callable[[Transaction], Awaitable[T]]",
    *,
    config: RetryConfig | None = None,
) -> T:
    """Run a transaction, retrying on abort with bounded exponential backoff.

    Raises:
        ConcurrencyError: If the transaction still aborts after every retry
    """
    policy = RetryPolicy(config or transaction_retry_config(), retry_on=frozenset({ErrorCategory.CONCURRENCY}))
    try:
        return await policy.execute(store.run_transaction, fn)
    except TransactionAbortedError as e:
        msg = "The document was modified concurrently. Please try again."
        raise ConcurrencyError(msg, attempts=policy.config.max_attempts) from e


@dataclass
class QueuedOperation:
    name: str
    operation: Callable[[], Awaitable[Any]]
    queued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0


class OfflineQueue:
    """Writes held while the document store is unreachable, replayed in order on reconnect."""

    def __init__(self, max_size: int | None = None) -> None:
        self.max_size = max_size or settings.offline_queue_max_size
        self._pending: deque[QueuedOperation] = deque()

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> list[str]:
        return [item.name for item in self._pending]

    def enqueue(self, name: str, operation: Callable[[], Awaitable[Any]]) -> None:
        if len(self._pending) >= self.max_size:
            dropped = self._pending.popleft()
            logger.warning("offline_queue_full", extra={"dropped_operation": dropped.name, "max_size": self.max_size})
        self._pending.append(QueuedOperation(name=name, operation=operation))
        logger.info("operation_queued_offline", extra={"operation": name, "queue_length": len(self._pending)})

    async def process(self) -> int:
        """Replay queued operations in order.

        An operation that fails because the store is still unreachable is put
        back at the front with everything after it, and processing stops.
        Any other failure is logged and the operation is dropped.

        Returns:
            Number of operations that completed
        """
        completed = 0
        while self._pending:
            item = self._pending.popleft()
            item.attempts += 1
            try:
                await item.operation()
            except StoreUnavailableError:
                self._pending.appendleft(item)
                logger.warning(
                    "offline_queue_still_offline",
                    extra={"operation": item.name, "remaining": len(self._pending)},
                )
                break
            except Exception:
                logger.exception("offline_operation_failed", extra={"operation": item.name, "attempts": item.attempts})
            else:
                completed += 1

        if completed:
            logger.info("offline_queue_processed", extra={"completed": completed, "remaining": len(self._pending)})
        return completed
