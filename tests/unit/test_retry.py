"""Unit tests for store retry policies and the offline queue."""

import time
from unittest.mock import AsyncMock

import pytest

from src.core.errors import (
    ConcurrencyError,
    InvalidInputError,
    StoreUnavailableError,
    TransactionAbortedError,
)
from src.core.retry import (
    CircuitBreaker,
    CircuitBreakerState,
    ErrorRetryability,
    OfflineQueue,
    RetryConfig,
    RetryPolicy,
    run_transaction_with_retry,
)
from tests.unit.mocks import FlakyStore


@pytest.mark.unit
class TestRetryPolicy:
    """Tests for backoff and error classification."""

    @pytest.fixture
    def policy(self):
        config = RetryConfig(
            max_attempts=3,
            base_delay=0.01,
            backoff_multiplier=2.0,
            circuit_breaker_threshold=2,
            circuit_breaker_cooldown=0.1,
        )
        return RetryPolicy(config)

    def test_network_errors_are_retryable(self, policy):
        assert policy.classify_error(StoreUnavailableError("offline")) == ErrorRetryability.RETRYABLE
        assert policy.classify_error(ConnectionError("reset")) == ErrorRetryability.RETRYABLE

    def test_validation_errors_fail_fast(self, policy):
        assert policy.classify_error(InvalidInputError("bad")) == ErrorRetryability.NON_RETRYABLE
        assert policy.classify_error(ValueError("bad")) == ErrorRetryability.NON_RETRYABLE

    def test_aborted_transactions_are_not_network_retries(self, policy):
        assert policy.classify_error(TransactionAbortedError("lost")) == ErrorRetryability.NON_RETRYABLE

    def test_calculate_delay_exponential_backoff(self, policy):
        assert policy.calculate_delay(0) == 0.01
        assert policy.calculate_delay(1) == 0.02
        assert policy.calculate_delay(2) == 0.04

    def test_calculate_delay_is_capped(self):
        policy = RetryPolicy(RetryConfig(base_delay=10.0, max_delay=15.0))
        assert policy.calculate_delay(3) == 15.0

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, policy):
        func = AsyncMock(return_value="ok")

        assert await policy.execute(func, 1, key="v") == "ok"
        func.assert_called_once_with(1, key="v")

    @pytest.mark.asyncio
    async def test_retries_network_failure_then_succeeds(self, policy, mock_asyncio_sleep):
        func = AsyncMock(side_effect=[StoreUnavailableError("offline"), "ok"])

        assert await policy.execute(func) == "ok"
        assert func.call_count == 2
        mock_asyncio_sleep.assert_awaited_once_with(0.01)

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self, policy):
        func = AsyncMock(side_effect=InvalidInputError("bad"))

        with pytest.raises(InvalidInputError):
            await policy.execute(func)
        assert func.call_count == 1

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_last_error(self):
        policy = RetryPolicy(RetryConfig(max_attempts=3, base_delay=0.01, circuit_breaker_threshold=10))
        func = AsyncMock(side_effect=StoreUnavailableError("offline"))

        with pytest.raises(StoreUnavailableError):
            await policy.execute(func)
        assert func.call_count == 3

    @pytest.mark.asyncio
    async def test_open_circuit_blocks_calls(self, policy):
        policy.circuit_breaker.state = CircuitBreakerState.OPEN
        policy.circuit_breaker.last_failure_time = time.monotonic()
        func = AsyncMock(return_value="ok")

        with pytest.raises(StoreUnavailableError, match="Circuit breaker"):
            await policy.execute(func)
        func.assert_not_called()


@pytest.mark.unit
class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(threshold=2, cooldown=60.0)
        breaker.record_failure()
        assert breaker.state == CircuitBreakerState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitBreakerState.OPEN
        assert not breaker.can_attempt()

    def test_half_open_after_cooldown(self):
        breaker = CircuitBreaker(threshold=1, cooldown=0.0)
        breaker.record_failure()
        assert breaker.can_attempt()
        assert breaker.state == CircuitBreakerState.HALF_OPEN

    def test_success_closes(self):
        breaker = CircuitBreaker(threshold=1)
        breaker.record_failure()
        breaker.record_success()
        assert breaker.state == CircuitBreakerState.CLOSED
        assert breaker.failure_count == 0


@pytest.mark.unit
class TestTransactionRetry:
    @pytest.mark.asyncio
    async def test_retries_aborted_transaction(self, transaction_config, mock_asyncio_sleep):
        store = FlakyStore(abort_next=2)
        await store.set("counters", "c", {"n": 0})

        async def increment(txn):
            snapshot = await txn.get("counters", "c")
            txn.update("counters", "c", {"n": snapshot.get("n") + 1})

        await run_transaction_with_retry(store, increment, config=transaction_config)

        assert store.aborted == 2
        assert (await store.get("counters", "c")).data == {"n": 1}
        assert [call.args[0] for call in mock_asyncio_sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_gives_up_with_concurrency_error(self, transaction_config):
        store = FlakyStore(abort_next=3)
        await store.set("counters", "c", {"n": 0})

        async def increment(txn):
            snapshot = await txn.get("counters", "c")
            txn.update("counters", "c", {"n": snapshot.get("n") + 1})

        with pytest.raises(ConcurrencyError):
            await run_transaction_with_retry(store, increment, config=transaction_config)

        assert store.aborted == 3
        assert (await store.get("counters", "c")).data == {"n": 0}

    @pytest.mark.asyncio
    async def test_validation_error_inside_transaction_not_retried(self, transaction_config):
        store = FlakyStore()
        calls = []

        async def reject(_txn):
            calls.append(1)
            raise InvalidInputError("nope")

        with pytest.raises(InvalidInputError):
            await run_transaction_with_retry(store, reject, config=transaction_config)
        assert len(calls) == 1


@pytest.mark.unit
class TestOfflineQueue:
    @pytest.mark.asyncio
    async def test_replays_in_order(self):
        queue = OfflineQueue(max_size=10)
        order = []

        async def first():
            order.append("first")

        async def second():
            order.append("second")

        queue.enqueue("first", first)
        queue.enqueue("second", second)

        assert await queue.process() == 2
        assert order == ["first", "second"]
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_stops_when_still_offline(self):
        queue = OfflineQueue(max_size=10)
        blocked = AsyncMock(side_effect=StoreUnavailableError("offline"))
        later = AsyncMock()

        queue.enqueue("blocked", blocked)
        queue.enqueue("later", later)

        assert await queue.process() == 0
        assert queue.pending == ["blocked", "later"]
        later.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_failures_are_dropped(self):
        queue = OfflineQueue(max_size=10)
        queue.enqueue("broken", AsyncMock(side_effect=InvalidInputError("bad")))
        queue.enqueue("fine", AsyncMock())

        assert await queue.process() == 1
        assert len(queue) == 0

    def test_full_queue_drops_oldest(self):
        queue = OfflineQueue(max_size=2)
        for name in ("a", "b", "c"):
            queue.enqueue(name, AsyncMock())

        assert queue.pending == ["b", "c"]
