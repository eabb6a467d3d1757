"""
Custom exception classes for tenant data access.

This module defines the exception hierarchy raised by the data-access layer.
Every exception carries a ``kind`` (an :class:`~tenantdb.classifier.ErrorKind`)
so callers can branch on the taxonomy without inspecting messages.

Propagation policy:
- Programming errors (invalid scope state, missing values, type mismatches)
  propagate to the caller
- Database failures are raised as :class:`DatabaseOperationError` carrying an
  :class:`~tenantdb.classifier.ErrorClassification`; the service layer turns
  them into failure outcomes
"""

from typing import Any, Optional, Sequence

from tenantdb.classifier import ErrorClassification, ErrorKind


class DataAccessError(Exception):
    """Base exception for all data-access errors.

    All tenantdb exceptions inherit from this base class to allow for
    consistent error handling and logging.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN


class ConfigurationError(DataAccessError):
    """Raised when the data-access configuration is unusable.

    This exception is raised when:
    - A tenant entry cannot be turned into an engine URL
    - A required configuration file section is missing
    """

    pass


class TenantNotFoundError(DataAccessError):
    """Raised when a tenant identifier has no configured database.

    This is a terminal error: retrying without a configuration reload
    cannot succeed.
    """

    kind = ErrorKind.TENANT_NOT_FOUND

    def __init__(self, tenant: Any, message: Optional[str] = None):
        self.tenant = tenant
        super().__init__(message or f"No database is configured for tenant {tenant!r}")


class InvalidScopeStateError(DataAccessError):
    """Raised when a transaction scope is used in a state that forbids it.

    This exception is raised when:
    - commit() or rollback() is called on a terminal scope
    - A savepoint is created, rolled back or released outside an open scope
    - A savepoint handle is reused after rollback or release
    - Two tasks use the same scope at the same time
    """

    kind = ErrorKind.INVALID_SCOPE_STATE


class MissingValueError(DataAccessError):
    """Raised when a column is absent or null and no default was supplied."""

    kind = ErrorKind.MISSING_VALUE

    def __init__(self, column: str, message: Optional[str] = None):
        self.column = column
        super().__init__(message or f"Column {column!r} is absent or null")


class TypeMismatchError(DataAccessError):
    """Raised when a stored value cannot be converted to the requested type
    without loss.
    """

    kind = ErrorKind.TYPE_MISMATCH

    def __init__(self, column: str, expected: type, value: Any):
        self.column = column
        self.expected = expected
        self.actual_type = type(value)
        super().__init__(
            f"Column {column!r} holds {type(value).__name__}, "
            f"cannot read it as {getattr(expected, '__name__', expected)}"
        )


class ResultSetsExhaustedError(DataAccessError):
    """Raised when reading past the last result set of a multi-statement read."""

    kind = ErrorKind.INVALID_SCOPE_STATE


class DatabaseOperationError(DataAccessError):
    """Raised when a statement, connection or commit fails in the engine.

    The raw engine error is available as ``__cause__`` and its text as
    ``classification.details``; ``str(error)`` only ever contains the safe
    user message.

    Attributes:
        classification: Classified form of the underlying engine error
    """

    def __init__(self, classification: ErrorClassification, message: Optional[str] = None):
        self.classification = classification
        super().__init__(message or classification.user_message)

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return self.classification.kind

    @property
    def retryable(self) -> bool:
        return self.classification.retryable

    @property
    def user_message(self) -> str:
        return self.classification.user_message


class BatchItemError(DatabaseOperationError):
    """Raised when a required batch item fails; aborts the whole scope.

    Attributes:
        index: Position of the failing item in the batch
        key: Caller-supplied item key, if any
    """

    def __init__(
        self,
        classification: ErrorClassification,
        index: int,
        key: Optional[Any] = None,
    ):
        self.index = index
        self.key = key
        super().__init__(classification)


class PartialCommitError(DatabaseOperationError):
    """Raised when a joint scope committed on some tenants but not others.

    The committed tenants are NOT rolled back; the caller must reconcile
    them manually.

    Attributes:
        committed: Tenants whose transaction committed
        failed: Tenant whose commit raised
        rolled_back: Tenants whose transaction was rolled back afterwards
        cause: Classification of the failing commit
    """

    requires_reconciliation = True

    def __init__(
        self,
        committed: Sequence[str],
        failed: str,
        rolled_back: Sequence[str],
        cause: ErrorClassification,
    ):
        self.committed = tuple(committed)
        self.failed = failed
        self.rolled_back = tuple(rolled_back)
        self.cause = cause
        classification = ErrorClassification.for_kind(
            ErrorKind.PARTIAL_COMMIT_FAILURE,
            details=(
                f"committed={list(self.committed)} failed={failed!r} "
                f"rolled_back={list(self.rolled_back)} cause={cause.kind.value}: {cause.details}"
            ),
        )
        super().__init__(classification)
