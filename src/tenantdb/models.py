"""
Data models shared across the data-access layer.

This module defines:
- OperationOutcome: Structured result of a unit of work
- Page: One page of a paged read
- BatchItem / BatchFailure / BatchResult: Savepoint-guarded batch inputs and results
- ChangeRecord: A change registered on a scope for post-commit hooks
- AuditRecord: Audit trail entry derived from a change
- ScopeResult: What post-commit hooks receive
- HookReport: Result of one post-commit hook run
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

from tenantdb.classifier import ErrorClassification, ErrorKind

T = TypeVar("T")

SUCCESS_CODE = "Success"


@dataclass(frozen=True)
class OperationOutcome:
    """Result returned to callers of a unit of work.

    Attributes:
        succeeded: Whether the operation committed
        code: "Success" or an ErrorKind value
        message: Safe, user-facing message
        payload: Value produced by the unit of work (success only)
        retryable: Whether retrying may succeed
        details: Diagnostic text for logs; never part of to_dict()
    """

    succeeded: bool
    code: str
    message: str = ""
    payload: Any = None
    retryable: bool = False
    details: str = field(default="", repr=False, compare=False)

    @classmethod
    def success(cls, payload: Any = None, message: str = "") -> "OperationOutcome":
        return cls(succeeded=True, code=SUCCESS_CODE, message=message, payload=payload)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        retryable: bool = False,
        details: str = "",
    ) -> "OperationOutcome":
        return cls(
            succeeded=False,
            code=ErrorKind(kind).value,
            message=message,
            retryable=retryable,
            details=details,
        )

    @classmethod
    def from_classification(cls, classification: ErrorClassification) -> "OperationOutcome":
        return cls.failure(
            classification.kind,
            classification.user_message,
            retryable=classification.retryable,
            details=classification.details,
        )

    @property
    def kind(self) -> Optional[ErrorKind]:
        """ErrorKind of a failed outcome, None on success."""
        if self.succeeded:
            return None
        return ErrorKind(self.code)

    @property
    def requires_reconciliation(self) -> bool:
        return self.code == ErrorKind.PARTIAL_COMMIT_FAILURE.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "code": self.code,
            "message": self.message,
            "payload": self.payload,
            "retryable": self.retryable,
        }


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a paged read.

    Attributes:
        items: Rows of this page
        total_count: Rows matching the base query across all pages
        page: 1-based page number
        page_size: Requested page size
    """

    items: List[T]
    total_count: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total_count == 0:
            return 0
        return math.ceil(self.total_count / self.page_size)

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1


@dataclass(frozen=True)
class BatchItem(Generic[T]):
    """One input of a savepoint-guarded batch.

    Attributes:
        value: Passed to the batch writer
        required: A failing required item aborts the whole scope; a failing
            optional item is rolled back to its savepoint and skipped
        key: Optional caller identifier, echoed in failures
    """

    value: T
    required: bool = True
    key: Optional[Any] = None


@dataclass(frozen=True)
class BatchFailure:
    """An optional batch item that failed and was skipped."""

    index: int
    key: Optional[Any]
    classification: ErrorClassification


@dataclass
class BatchResult:
    """Outcome of a batch run.

    Attributes:
        applied: Indexes of items whose work was kept
        failures: Optional items that were rolled back and skipped
    """

    applied: List[int] = field(default_factory=list)
    failures: List[BatchFailure] = field(default_factory=list)

    @property
    def applied_count(self) -> int:
        return len(self.applied)

    @property
    def skipped_count(self) -> int:
        return len(self.failures)


@dataclass(frozen=True)
class ChangeRecord:
    """A change made by a unit of work, registered on its scope.

    Attributes:
        tenant: Tenant whose data changed
        action: What happened ("Created", "Updated", "Deleted", ...)
        entity_type: Kind of entity (e.g. "Order")
        entity_id: Identifier of the changed entity
        before: Field values before the change (None when created)
        after: Field values after the change (None when deleted)
    """

    tenant: str
    action: str
    entity_type: str
    entity_id: Any
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None

    @property
    def event_name(self) -> str:
        return f"{self.entity_type}{self.action}"


@dataclass(frozen=True)
class AuditRecord:
    """Audit trail entry for one committed change.

    Attributes:
        tenant: Tenant whose data changed
        actor: Who performed the change (user id, service name)
        action: Change action
        entity_type: Kind of entity
        entity_id: Identifier of the changed entity
        before: Field values before the change
        after: Field values after the change
        timestamp: When the change was committed (UTC)
    """

    tenant: str
    actor: Optional[str]
    action: str
    entity_type: str
    entity_id: Any
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_change(
        cls, change: ChangeRecord, actor: Optional[str], timestamp: Optional[datetime] = None
    ) -> "AuditRecord":
        return cls(
            tenant=change.tenant,
            actor=actor,
            action=change.action,
            entity_type=change.entity_type,
            entity_id=change.entity_id,
            before=change.before,
            after=change.after,
            timestamp=timestamp or datetime.now(timezone.utc),
        )

    def changed_fields(self) -> List[Tuple[str, Any, Any]]:
        """Fields whose value differs between before and after.

        Returns:
            (field, old_value, new_value) tuples in a stable order
        """
        before = self.before or {}
        after = self.after or {}
        names = list(before) + [name for name in after if name not in before]

        return [
            (name, before.get(name), after.get(name))
            for name in names
            if before.get(name) != after.get(name)
        ]

    def summary(self) -> str:
        """Human readable description of the change.

        Example:
            >>> record.summary()
            "status: 'open' → 'shipped', total: '10.00' → '12.50'"
        """
        label = f"{self.entity_type} {self.entity_id}"
        if self.before is None and self.after is not None:
            return f"Created: {label}"
        if self.after is None and self.before is not None:
            return f"Deleted: {label}"

        changes = [
            f"{name}: '{old}' → '{new}'" for name, old, new in self.changed_fields()
        ]
        return ", ".join(changes) if changes else f"{self.action}: {label}"


@dataclass(frozen=True)
class ScopeResult:
    """What the post-commit pipeline receives after a scope finished.

    Attributes:
        scope_id: Identifier of the finished scope
        tenants: Tenants the scope spanned
        outcome: Outcome returned to the caller
        changes: Changes registered by the unit of work
        actor: Who ran the unit of work
        committed_at: When the scope committed (None if it did not)
    """

    scope_id: str
    tenants: Tuple[str, ...]
    outcome: OperationOutcome
    changes: Tuple[ChangeRecord, ...] = ()
    actor: Optional[str] = None
    committed_at: Optional[datetime] = None


@dataclass(frozen=True)
class HookReport:
    """Result of running one post-commit hook."""

    hook: str
    succeeded: bool
    error: Optional[str] = None
