"""Typed errors raised by the board engines and their classification."""

from enum import Enum

from pydantic import BaseModel


class ErrorCategory(Enum):
    """Categories of errors that can occur while reconciling board state."""

    NETWORK = "network"
    VALIDATION = "validation"
    PERMISSION = "permission"
    CONCURRENCY = "concurrency"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCode:
    """Error codes for specific error conditions."""

    # Network errors
    ERR_STORE_UNAVAILABLE = "ERR_STORE_UNAVAILABLE"
    ERR_DEADLINE_EXCEEDED = "ERR_DEADLINE_EXCEEDED"

    # Validation errors
    ERR_AUTH_REQUIRED = "ERR_AUTH_REQUIRED"
    ERR_INVALID_INPUT = "ERR_INVALID_INPUT"
    ERR_INVALID_EMAIL = "ERR_INVALID_EMAIL"
    ERR_INVALID_INDEX = "ERR_INVALID_INDEX"
    ERR_EMPTY_FRIEND_LIST = "ERR_EMPTY_FRIEND_LIST"
    ERR_ALREADY_SHARED = "ERR_ALREADY_SHARED"
    ERR_NOT_FRIEND = "ERR_NOT_FRIEND"
    ERR_SELF_FRIEND_REQUEST = "ERR_SELF_FRIEND_REQUEST"
    ERR_ALREADY_FRIENDS = "ERR_ALREADY_FRIENDS"
    ERR_DUPLICATE_REQUEST = "ERR_DUPLICATE_REQUEST"
    ERR_TASK_FINALIZED = "ERR_TASK_FINALIZED"
    ERR_ALREADY_FINALIZED = "ERR_ALREADY_FINALIZED"
    ERR_TASK_NOT_COMPLETED = "ERR_TASK_NOT_COMPLETED"
    ERR_SUBTASKS_INCOMPLETE = "ERR_SUBTASKS_INCOMPLETE"
    ERR_OPERATION_IN_PROGRESS = "ERR_OPERATION_IN_PROGRESS"

    # Permission errors
    ERR_PERMISSION_DENIED = "ERR_PERMISSION_DENIED"
    ERR_NOT_OWNER = "ERR_NOT_OWNER"
    ERR_NOT_COLLABORATOR = "ERR_NOT_COLLABORATOR"

    # Not found errors
    ERR_NOT_FOUND = "ERR_NOT_FOUND"
    ERR_TASK_NOT_FOUND = "ERR_TASK_NOT_FOUND"
    ERR_USER_NOT_FOUND = "ERR_USER_NOT_FOUND"
    ERR_COMMENT_NOT_FOUND = "ERR_COMMENT_NOT_FOUND"
    ERR_REQUEST_NOT_FOUND = "ERR_REQUEST_NOT_FOUND"

    # Concurrency errors
    ERR_TRANSACTION_ABORTED = "ERR_TRANSACTION_ABORTED"
    ERR_CONCURRENT_MODIFICATION = "ERR_CONCURRENT_MODIFICATION"

    # Generic errors
    ERR_UNKNOWN = "ERR_UNKNOWN"


class ErrorResponse(BaseModel):
    """Machine-readable description of a failure, for callers that present errors."""

    code: str
    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool
    message: str


class BoardError(Exception):
    """Base class for every error raised by the board engines."""

    code: str = ErrorCode.ERR_UNKNOWN
    category: ErrorCategory = ErrorCategory.UNKNOWN
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


# Network


class StoreUnavailableError(BoardError):
    code = ErrorCode.ERR_STORE_UNAVAILABLE
    category = ErrorCategory.NETWORK
    severity = ErrorSeverity.HIGH


# Validation


class ValidationFailedError(BoardError):
    """Input or state rejected before touching the store."""

    code = ErrorCode.ERR_INVALID_INPUT
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.LOW


class AuthenticationRequiredError(ValidationFailedError):
    code = ErrorCode.ERR_AUTH_REQUIRED


class InvalidInputError(ValidationFailedError):
    code = ErrorCode.ERR_INVALID_INPUT


class InvalidEmailError(ValidationFailedError):
    code = ErrorCode.ERR_INVALID_EMAIL


class InvalidIndexError(ValidationFailedError):
    code = ErrorCode.ERR_INVALID_INDEX


class EmptySelectionError(ValidationFailedError):
    code = ErrorCode.ERR_EMPTY_FRIEND_LIST


class AlreadySharedError(ValidationFailedError):
    code = ErrorCode.ERR_ALREADY_SHARED


class NotFriendError(ValidationFailedError):
    code = ErrorCode.ERR_NOT_FRIEND


class SelfFriendRequestError(ValidationFailedError):
    code = ErrorCode.ERR_SELF_FRIEND_REQUEST


class AlreadyFriendsError(ValidationFailedError):
    code = ErrorCode.ERR_ALREADY_FRIENDS


class DuplicateRequestError(ValidationFailedError):
    code = ErrorCode.ERR_DUPLICATE_REQUEST


class TaskFinalizedError(ValidationFailedError):
    """Raised when mutating a task that has been finalized."""

    code = ErrorCode.ERR_TASK_FINALIZED


class AlreadyFinalizedError(ValidationFailedError):
    code = ErrorCode.ERR_ALREADY_FINALIZED


class TaskNotCompletedError(ValidationFailedError):
    code = ErrorCode.ERR_TASK_NOT_COMPLETED


class SubtasksIncompleteError(ValidationFailedError):
    code = ErrorCode.ERR_SUBTASKS_INCOMPLETE


class OperationInProgressError(ValidationFailedError):
    """Raised when a non-idempotent action is submitted while it is still running."""

    code = ErrorCode.ERR_OPERATION_IN_PROGRESS


# Permission


class PermissionDeniedError(BoardError):
    code = ErrorCode.ERR_PERMISSION_DENIED
    category = ErrorCategory.PERMISSION


class NotTaskOwnerError(PermissionDeniedError):
    code = ErrorCode.ERR_NOT_OWNER


class NotCollaboratorError(PermissionDeniedError):
    code = ErrorCode.ERR_NOT_COLLABORATOR


# Not found


class NotFoundError(BoardError):
    code = ErrorCode.ERR_NOT_FOUND
    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.LOW


class DocumentNotFoundError(NotFoundError):
    code = ErrorCode.ERR_NOT_FOUND


class TaskNotFoundError(NotFoundError):
    code = ErrorCode.ERR_TASK_NOT_FOUND


class UserNotFoundError(NotFoundError):
    code = ErrorCode.ERR_USER_NOT_FOUND


class CommentNotFoundError(NotFoundError):
    code = ErrorCode.ERR_COMMENT_NOT_FOUND


class FriendRequestNotFoundError(NotFoundError):
    code = ErrorCode.ERR_REQUEST_NOT_FOUND


# Concurrency


class TransactionAbortedError(BoardError):
    """A transaction lost an optimistic version check and may be retried."""

    code = ErrorCode.ERR_TRANSACTION_ABORTED
    category = ErrorCategory.CONCURRENCY
    severity = ErrorSeverity.LOW


class ConcurrencyError(BoardError):
    """Retries for an aborted transaction were exhausted."""

    code = ErrorCode.ERR_CONCURRENT_MODIFICATION
    category = ErrorCategory.CONCURRENCY


_RETRYABLE_CATEGORIES = {ErrorCategory.NETWORK, ErrorCategory.CONCURRENCY}


def categorize(exception: BaseException) -> ErrorCategory:
    """Return the error category for any exception, including non-board ones."""
    if isinstance(exception, BoardError):
        return exception.category
    if isinstance(exception, ConnectionError | TimeoutError):
        return ErrorCategory.NETWORK
    if isinstance(exception, PermissionError):
        return ErrorCategory.PERMISSION
    if isinstance(exception, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


def is_retryable(exception: BaseException) -> bool:
    """Network and concurrency failures may be retried; everything else fails fast."""
    if isinstance(exception, ConcurrencyError):
        return False
    return categorize(exception) in _RETRYABLE_CATEGORIES


def classify_error(exception: BaseException) -> ErrorResponse:
    """Classify an error into a structured response.

    Args:
        exception: The exception raised by an engine or the store

    Returns:
        ErrorResponse with code, category, severity, and whether a retry makes sense
    """
    if isinstance(exception, BoardError):
        return ErrorResponse(
            code=exception.code,
            category=exception.category,
            severity=exception.severity,
            retryable=is_retryable(exception),
            message=exception.message,
        )

    category = categorize(exception)
    code = {
        ErrorCategory.NETWORK: ErrorCode.ERR_STORE_UNAVAILABLE,
        ErrorCategory.PERMISSION: ErrorCode.ERR_PERMISSION_DENIED,
        ErrorCategory.VALIDATION: ErrorCode.ERR_INVALID_INPUT,
    }.get(category, ErrorCode.ERR_UNKNOWN)
    if isinstance(exception, TimeoutError):
        code = ErrorCode.ERR_DEADLINE_EXCEEDED

    return ErrorResponse(
        code=code,
        category=category,
        severity=ErrorSeverity.MEDIUM,
        retryable=is_retryable(exception),
        message=str(exception) or type(exception).__name__,
    )
