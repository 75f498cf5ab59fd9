"""Unit tests for error classification utilities."""

import pytest

from src.core.errors import (
    AlreadySharedError,
    BoardError,
    ConcurrencyError,
    ErrorCategory,
    ErrorCode,
    ErrorSeverity,
    NotCollaboratorError,
    StoreUnavailableError,
    TaskFinalizedError,
    TransactionAbortedError,
    categorize,
    classify_error,
    is_retryable,
)


@pytest.mark.unit
class TestCategorize:
    """Tests for mapping exceptions to error categories."""

    def test_board_errors_carry_their_category(self):
        assert categorize(TaskFinalizedError("locked")) == ErrorCategory.VALIDATION
        assert categorize(NotCollaboratorError("no")) == ErrorCategory.PERMISSION
        assert categorize(StoreUnavailableError("down")) == ErrorCategory.NETWORK
        assert categorize(TransactionAbortedError("lost")) == ErrorCategory.CONCURRENCY

    def test_builtin_errors(self):
        assert categorize(ConnectionError("reset")) == ErrorCategory.NETWORK
        assert categorize(TimeoutError()) == ErrorCategory.NETWORK
        assert categorize(PermissionError("denied")) == ErrorCategory.PERMISSION
        assert categorize(ValueError("bad")) == ErrorCategory.VALIDATION
        assert categorize(RuntimeError("boom")) == ErrorCategory.UNKNOWN


@pytest.mark.unit
class TestIsRetryable:
    def test_network_and_aborts_are_retryable(self):
        assert is_retryable(StoreUnavailableError("down"))
        assert is_retryable(TransactionAbortedError("lost"))

    def test_exhausted_concurrency_is_final(self):
        assert not is_retryable(ConcurrencyError("gave up"))

    def test_validation_is_not_retryable(self):
        assert not is_retryable(AlreadySharedError("already"))


@pytest.mark.unit
class TestClassifyError:
    def test_board_error_response(self):
        response = classify_error(TaskFinalizedError("This task has been finalized", task_id="t1"))

        assert response.code == ErrorCode.ERR_TASK_FINALIZED
        assert response.category == ErrorCategory.VALIDATION
        assert response.severity == ErrorSeverity.LOW
        assert response.retryable is False
        assert response.message == "This task has been finalized"

    def test_timeout_maps_to_deadline_exceeded(self):
        response = classify_error(TimeoutError())

        assert response.code == ErrorCode.ERR_DEADLINE_EXCEEDED
        assert response.retryable is True
        assert response.message == "TimeoutError"

    def test_unknown_error(self):
        response = classify_error(RuntimeError("boom"))

        assert response.code == ErrorCode.ERR_UNKNOWN
        assert response.category == ErrorCategory.UNKNOWN
        assert response.retryable is False

    def test_context_is_kept_on_the_exception(self):
        error = BoardError("failed", task_id="t1", user_id="alice")

        assert error.context == {"task_id": "t1", "user_id": "alice"}
        assert str(error) == "failed"
