"""
Audit trail hook and sinks.

``AuditHook`` turns the changes registered on a committed scope into
``AuditRecord``s and hands them to an ``AuditSink``. ``DatabaseAuditSink``
persists them in the tenant's own database, in a fresh scope outside the
transaction that made the change.

Expected audit table (PostgreSQL):
    CREATE TABLE audit_log (
        id BIGSERIAL PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        actor TEXT,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        details TEXT NOT NULL,
        before_data TEXT,
        after_data TEXT,
        created_at TIMESTAMPTZ NOT NULL
    );
"""

import json
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import DateTime, bindparam, text

from tenantdb.executor import QueryExecutor
from tenantdb.hooks import PostCommitHook
from tenantdb.logger import StructuredLogger
from tenantdb.models import AuditRecord, ScopeResult
from tenantdb.transaction import TransactionCoordinator
from tenantdb.utils import validate_identifier

logger = StructuredLogger("tenantdb.audit")


class AuditSink(ABC):
    """Destination of audit records."""

    @abstractmethod
    async def write(self, records: Sequence[AuditRecord]) -> None:
        """Persist audit records."""
        pass


class InMemoryAuditSink(AuditSink):
    """Keeps audit records in a list (local development and tests)."""

    def __init__(self):
        self.records: List[AuditRecord] = []

    async def write(self, records: Sequence[AuditRecord]) -> None:
        self.records.extend(records)


def _json_or_none(data: Optional[Dict[str, Any]]) -> Optional[str]:
    if data is None:
        return None
    return json.dumps(data, default=str, sort_keys=True)


class DatabaseAuditSink(AuditSink):
    """Writes audit records to a table in each record's tenant database.

    Args:
        coordinator: Opens the fresh scope used for the insert
        executor: Runs the insert
        table: Audit table name (validated identifier)
    """

    def __init__(
        self,
        coordinator: TransactionCoordinator,
        executor: QueryExecutor,
        table: str = "audit_log",
    ):
        self.coordinator = coordinator
        self.executor = executor
        self.table = validate_identifier(table, kind="table")
        self._statement = text(
            f"INSERT INTO {self.table} ("
            "tenant_id, actor, action, entity_type, entity_id, details, "
            "before_data, after_data, created_at"
            ") VALUES ("
            ":tenant_id, :actor, :action, :entity_type, :entity_id, :details, "
            ":before_data, :after_data, :created_at"
            ")"
        ).bindparams(bindparam("created_at", type_=DateTime(timezone=True)))

    @staticmethod
    def _parameters(record: AuditRecord) -> Dict[str, Any]:
        return {
            "tenant_id": record.tenant,
            "actor": record.actor,
            "action": record.action,
            "entity_type": record.entity_type,
            "entity_id": str(record.entity_id),
            "details": record.summary(),
            "before_data": _json_or_none(record.before),
            "after_data": _json_or_none(record.after),
            "created_at": record.timestamp,
        }

    async def write(self, records: Sequence[AuditRecord]) -> None:
        by_tenant: Dict[str, List[AuditRecord]] = defaultdict(list)
        for record in records:
            by_tenant[record.tenant].append(record)

        # Tenants are written independently; the first failure is raised after all were tried
        first_error: Optional[Exception] = None
        for tenant, tenant_records in by_tenant.items():
            try:
                async with self.coordinator.transaction(tenant) as scope:
                    await self.executor.execute_many(
                        scope, self._statement, [self._parameters(r) for r in tenant_records]
                    )
            except Exception as e:
                logger.exception("Audit write failed", tenant=tenant, count=len(tenant_records))
                first_error = first_error or e
                continue
            logger.debug("Audit records written", tenant=tenant, count=len(tenant_records))

        if first_error is not None:
            raise first_error


class AuditHook(PostCommitHook):
    """Writes one audit record per registered change.

    Updates whose before and after snapshots are identical produce no
    record.
    """

    def __init__(self, sink: AuditSink):
        self.sink = sink

    async def __call__(self, result: ScopeResult) -> None:
        records = []
        for change in result.changes:
            record = AuditRecord.from_change(change, result.actor, result.committed_at)
            if record.before is not None and record.after is not None and not record.changed_fields():
                continue
            records.append(record)

        if records:
            await self.sink.write(records)
