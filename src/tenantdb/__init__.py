"""
Multi-tenant relational data access.

This package provides:
- Tenant connection routing with per-tenant connection pools (ConnectionRouter)
- Transaction scopes over one or several tenants (TransactionCoordinator)
- Typed statement execution with null-safe row access (QueryExecutor, ResultRow)
- Classification of storage errors into a closed taxonomy (ErrorClassifier)
- Post-commit audit and notification hooks (PostCommitPipeline)
- A caller-facing operation surface (DataAccessService)
"""

# Configuration classes
from tenantdb.config import DataAccessConfig, TenantDatabaseConfig

# Error classification
from tenantdb.classifier import ErrorClassification, ErrorClassifier, ErrorKind, classify

# Exception classes
from tenantdb.exceptions import (
    BatchItemError,
    ConfigurationError,
    DataAccessError,
    DatabaseOperationError,
    InvalidScopeStateError,
    MissingValueError,
    PartialCommitError,
    ResultSetsExhaustedError,
    TenantNotFoundError,
    TypeMismatchError,
)

# Rows and records
from tenantdb.cursor import MISSING, ResultRow
from tenantdb.models import (
    AuditRecord,
    BatchFailure,
    BatchItem,
    BatchResult,
    ChangeRecord,
    HookReport,
    OperationOutcome,
    Page,
    ScopeResult,
)

# Connections, scopes and statements
from tenantdb.router import ConnectionDescriptor, ConnectionRouter
from tenantdb.transaction import SavepointHandle, ScopeState, TransactionCoordinator, TransactionScope
from tenantdb.executor import QueryExecutor, ResultSetReader

# Post-commit hooks
from tenantdb.hooks import PostCommitHook, PostCommitPipeline
from tenantdb.audit import AuditHook, AuditSink, DatabaseAuditSink, InMemoryAuditSink
from tenantdb.notifications import (
    InMemoryNotificationChannel,
    NotificationChannel,
    NotifyHook,
    WebhookNotificationChannel,
)

# Operation surface
from tenantdb.service import DataAccessService

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "DataAccessConfig",
    "TenantDatabaseConfig",
    # Classification
    "ErrorClassification",
    "ErrorClassifier",
    "ErrorKind",
    "classify",
    # Exceptions
    "BatchItemError",
    "ConfigurationError",
    "DataAccessError",
    "DatabaseOperationError",
    "InvalidScopeStateError",
    "MissingValueError",
    "PartialCommitError",
    "ResultSetsExhaustedError",
    "TenantNotFoundError",
    "TypeMismatchError",
    # Rows and records
    "MISSING",
    "ResultRow",
    "AuditRecord",
    "BatchFailure",
    "BatchItem",
    "BatchResult",
    "ChangeRecord",
    "HookReport",
    "OperationOutcome",
    "Page",
    "ScopeResult",
    # Connections, scopes and statements
    "ConnectionDescriptor",
    "ConnectionRouter",
    "SavepointHandle",
    "ScopeState",
    "TransactionCoordinator",
    "TransactionScope",
    "QueryExecutor",
    "ResultSetReader",
    # Post-commit hooks
    "PostCommitHook",
    "PostCommitPipeline",
    "AuditHook",
    "AuditSink",
    "DatabaseAuditSink",
    "InMemoryAuditSink",
    "InMemoryNotificationChannel",
    "NotificationChannel",
    "NotifyHook",
    "WebhookNotificationChannel",
    # Operation surface
    "DataAccessService",
]
