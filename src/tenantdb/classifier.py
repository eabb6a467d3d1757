"""
Storage error classification.

This module maps low-level storage engine errors (constraint violations,
timeouts, connectivity failures) onto a closed taxonomy with safe,
user-facing messages and an explicit retry flag.

Detection is driver-agnostic:
- PostgreSQL drivers (asyncpg, psycopg, psycopg2) expose the SQLSTATE code
  as ``sqlstate`` or ``pgcode`` somewhere along the exception chain
- SQLite exposes ``sqlite_errorname`` (Python 3.11+) and stable message text
- SQLAlchemy pool and disconnection errors are recognized by type

Example:
    >>> from tenantdb.classifier import classify
    >>> result = classify(error)
    >>> result.kind, result.retryable
    (<ErrorKind.UNIQUE_CONSTRAINT_VIOLATION: 'UniqueConstraintViolation'>, False)
"""

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional, Pattern, Tuple

from sqlalchemy import exc as sa_exc


class ErrorKind(str, Enum):
    """Closed taxonomy of data-access failure kinds.

    The value of each member is the stable code surfaced to callers in
    ``OperationOutcome.code``.
    """

    TENANT_NOT_FOUND = "TenantNotFound"
    INVALID_SCOPE_STATE = "InvalidScopeState"
    UNIQUE_CONSTRAINT_VIOLATION = "UniqueConstraintViolation"
    FOREIGN_KEY_VIOLATION = "ForeignKeyViolation"
    CHECK_CONSTRAINT_VIOLATION = "CheckConstraintViolation"
    TIMEOUT = "Timeout"
    CONNECTIVITY_FAILURE = "ConnectivityFailure"
    PARTIAL_COMMIT_FAILURE = "PartialCommitFailure"
    MISSING_VALUE = "MissingValue"
    TYPE_MISMATCH = "TypeMismatch"
    UNKNOWN = "Unknown"

    @property
    def is_business_error(self) -> bool:
        return self in BUSINESS_KINDS

    @property
    def is_infrastructure_error(self) -> bool:
        return self in INFRASTRUCTURE_KINDS

    @property
    def is_programming_error(self) -> bool:
        return self in PROGRAMMING_KINDS


BUSINESS_KINDS = frozenset(
    {
        ErrorKind.UNIQUE_CONSTRAINT_VIOLATION,
        ErrorKind.FOREIGN_KEY_VIOLATION,
        ErrorKind.CHECK_CONSTRAINT_VIOLATION,
    }
)

INFRASTRUCTURE_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.CONNECTIVITY_FAILURE})

PROGRAMMING_KINDS = frozenset(
    {
        ErrorKind.INVALID_SCOPE_STATE,
        ErrorKind.MISSING_VALUE,
        ErrorKind.TYPE_MISMATCH,
    }
)

# Kinds the classifier itself may produce from an engine error
ENGINE_KINDS = BUSINESS_KINDS | INFRASTRUCTURE_KINDS | {ErrorKind.UNKNOWN}

USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.UNIQUE_CONSTRAINT_VIOLATION: "A record with this information already exists.",
    ErrorKind.FOREIGN_KEY_VIOLATION: "This operation would violate data relationships.",
    ErrorKind.CHECK_CONSTRAINT_VIOLATION: (
        "The data provided does not meet validation requirements."
    ),
    ErrorKind.TIMEOUT: "The operation took too long to complete. Please try again.",
    ErrorKind.CONNECTIVITY_FAILURE: (
        "The database is temporarily unavailable. Please try again later."
    ),
    ErrorKind.PARTIAL_COMMIT_FAILURE: (
        "The operation was only partially applied and requires manual reconciliation."
    ),
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please contact support.",
}

RETRYABLE_KINDS = INFRASTRUCTURE_KINDS

# PostgreSQL SQLSTATE codes
SQLSTATE_KINDS: Dict[str, ErrorKind] = {
    "23505": ErrorKind.UNIQUE_CONSTRAINT_VIOLATION,  # unique_violation
    "23503": ErrorKind.FOREIGN_KEY_VIOLATION,  # foreign_key_violation
    "23514": ErrorKind.CHECK_CONSTRAINT_VIOLATION,  # check_violation
    "23502": ErrorKind.CHECK_CONSTRAINT_VIOLATION,  # not_null_violation
    "57014": ErrorKind.TIMEOUT,  # query_canceled (statement_timeout)
    "55P03": ErrorKind.TIMEOUT,  # lock_not_available
    "25P03": ErrorKind.TIMEOUT,  # idle_in_transaction_session_timeout
    "53300": ErrorKind.CONNECTIVITY_FAILURE,  # too_many_connections
    "57P01": ErrorKind.CONNECTIVITY_FAILURE,  # admin_shutdown
    "57P02": ErrorKind.CONNECTIVITY_FAILURE,  # crash_shutdown
    "57P03": ErrorKind.CONNECTIVITY_FAILURE,  # cannot_connect_now
}

# Whole SQLSTATE classes
SQLSTATE_CLASS_KINDS: Dict[str, ErrorKind] = {
    "08": ErrorKind.CONNECTIVITY_FAILURE,  # connection_exception
}

SQLITE_ERRORNAME_KINDS: Dict[str, ErrorKind] = {
    "SQLITE_CONSTRAINT_UNIQUE": ErrorKind.UNIQUE_CONSTRAINT_VIOLATION,
    "SQLITE_CONSTRAINT_PRIMARYKEY": ErrorKind.UNIQUE_CONSTRAINT_VIOLATION,
    "SQLITE_CONSTRAINT_FOREIGNKEY": ErrorKind.FOREIGN_KEY_VIOLATION,
    "SQLITE_CONSTRAINT_CHECK": ErrorKind.CHECK_CONSTRAINT_VIOLATION,
    "SQLITE_CONSTRAINT_NOTNULL": ErrorKind.CHECK_CONSTRAINT_VIOLATION,
    "SQLITE_BUSY": ErrorKind.TIMEOUT,
    "SQLITE_BUSY_TIMEOUT": ErrorKind.TIMEOUT,
    "SQLITE_LOCKED": ErrorKind.TIMEOUT,
    "SQLITE_INTERRUPT": ErrorKind.TIMEOUT,
    "SQLITE_CANTOPEN": ErrorKind.CONNECTIVITY_FAILURE,
}

# Message fallbacks for engines/drivers that expose no structured code
MESSAGE_PATTERNS: Tuple[Tuple[Pattern[str], ErrorKind], ...] = (
    (
        re.compile(r"UNIQUE constraint failed|duplicate key value", re.IGNORECASE),
        ErrorKind.UNIQUE_CONSTRAINT_VIOLATION,
    ),
    (
        re.compile(r"FOREIGN KEY constraint failed|violates foreign key", re.IGNORECASE),
        ErrorKind.FOREIGN_KEY_VIOLATION,
    ),
    (
        re.compile(
            r"(CHECK|NOT NULL) constraint failed|violates check constraint",
            re.IGNORECASE,
        ),
        ErrorKind.CHECK_CONSTRAINT_VIOLATION,
    ),
    (
        re.compile(r"database (table )?is locked", re.IGNORECASE),
        ErrorKind.TIMEOUT,
    ),
    (
        re.compile(r"unable to open database file", re.IGNORECASE),
        ErrorKind.CONNECTIVITY_FAILURE,
    ),
)

_MAX_CHAIN_DEPTH = 10


@dataclass(frozen=True)
class ErrorClassification:
    """Result of classifying a raw storage error.

    Attributes:
        kind: Taxonomy member
        user_message: Stable, non-leaking message safe to show to end users
        retryable: Whether the caller may retry (with backoff)
        sqlstate: SQLSTATE code when the engine reported one
        details: Raw diagnostic text, for logs only
    """

    kind: ErrorKind
    user_message: str
    retryable: bool
    sqlstate: Optional[str] = None
    details: str = field(default="", compare=False)

    @property
    def is_business_error(self) -> bool:
        return self.kind.is_business_error

    @classmethod
    def for_kind(
        cls, kind: ErrorKind, details: str = "", sqlstate: Optional[str] = None
    ) -> "ErrorClassification":
        """Build a classification with the standard message and retry flag for ``kind``."""
        return cls(
            kind=kind,
            user_message=USER_MESSAGES.get(kind, USER_MESSAGES[ErrorKind.UNKNOWN]),
            retryable=kind in RETRYABLE_KINDS,
            sqlstate=sqlstate,
            details=details,
        )


def iter_error_chain(error: BaseException) -> Iterator[BaseException]:
    """Yield ``error`` followed by the exceptions it wraps.

    Follows SQLAlchemy's ``orig`` attribute as well as ``__cause__`` and
    ``__context__``, visiting each exception once.
    """
    seen = set()
    pending: List[BaseException] = [error]

    while pending and len(seen) < _MAX_CHAIN_DEPTH:
        current = pending.pop(0)
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current

        for linked in (
            getattr(current, "orig", None),
            current.__cause__,
            current.__context__,
        ):
            if isinstance(linked, BaseException) and id(linked) not in seen:
                pending.append(linked)


def _sqlstate_of(error: BaseException) -> Optional[str]:
    for attr in ("sqlstate", "pgcode"):
        value = getattr(error, attr, None)
        if isinstance(value, str) and len(value) == 5:
            return value.upper()
    return None


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class ErrorClassifier:
    """Classifies raw storage errors into :class:`ErrorKind` members.

    Classification is a pure function of the error: classifying the same
    error twice yields the same kind and retry flag.

    Args:
        sqlstate_overrides: Optional extra SQLSTATE → kind mappings, applied on
            top of the built-in table. Only engine kinds are accepted.

    Raises:
        ValueError: If an override maps to a non-engine kind

    Example:
        >>> classifier = ErrorClassifier({"40P01": ErrorKind.TIMEOUT})
        >>> classifier.classify(deadlock_error).kind
        <ErrorKind.TIMEOUT: 'Timeout'>
    """

    def __init__(
        self, sqlstate_overrides: Optional[Mapping[str, ErrorKind]] = None
    ) -> None:
        self.sqlstate_kinds: Dict[str, ErrorKind] = dict(SQLSTATE_KINDS)

        for code, kind in (sqlstate_overrides or {}).items():
            kind = ErrorKind(kind)
            if kind not in ENGINE_KINDS:
                raise ValueError(
                    f"SQLSTATE override {code!r} must map to an engine error kind, got {kind.value}"
                )
            self.sqlstate_kinds[code.upper()] = kind

    def classify(self, error: BaseException) -> ErrorClassification:
        """Classify ``error``.

        Args:
            error: Any exception raised while talking to a storage engine

        Returns:
            ErrorClassification with kind, user message and retry flag
        """
        chain = list(iter_error_chain(error))
        details = _describe(error)

        # 1. Structured SQLSTATE codes win over everything else
        for linked in chain:
            sqlstate = _sqlstate_of(linked)
            if sqlstate is None:
                continue
            kind = self.sqlstate_kinds.get(sqlstate) or SQLSTATE_CLASS_KINDS.get(
                sqlstate[:2], ErrorKind.UNKNOWN
            )
            return ErrorClassification.for_kind(kind, details=details, sqlstate=sqlstate)

        # 2. SQLite extended result codes
        for linked in chain:
            errorname = getattr(linked, "sqlite_errorname", None)
            if isinstance(errorname, str) and errorname in SQLITE_ERRORNAME_KINDS:
                return ErrorClassification.for_kind(
                    SQLITE_ERRORNAME_KINDS[errorname], details=details
                )

        # 3. Exception types
        for linked in chain:
            kind = self._kind_from_type(linked)
            if kind is not None:
                return ErrorClassification.for_kind(kind, details=details)

        # 4. Message text
        for linked in chain:
            message = str(linked)
            for pattern, kind in MESSAGE_PATTERNS:
                if pattern.search(message):
                    return ErrorClassification.for_kind(kind, details=details)

        return ErrorClassification.for_kind(ErrorKind.UNKNOWN, details=details)

    @staticmethod
    def _kind_from_type(error: BaseException) -> Optional[ErrorKind]:
        # Pool checkout timeout: the engine was never reached
        if isinstance(error, sa_exc.TimeoutError):
            return ErrorKind.CONNECTIVITY_FAILURE
        if isinstance(error, sa_exc.DisconnectionError):
            return ErrorKind.CONNECTIVITY_FAILURE
        if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
            return ErrorKind.CONNECTIVITY_FAILURE
        if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
            return ErrorKind.TIMEOUT
        if isinstance(error, (ConnectionError, OSError)):
            return ErrorKind.CONNECTIVITY_FAILURE
        return None


_default_classifier = ErrorClassifier()


def classify(error: BaseException) -> ErrorClassification:
    """Classify ``error`` with the default :class:`ErrorClassifier`."""
    return _default_classifier.classify(error)
