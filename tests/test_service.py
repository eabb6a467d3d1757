import sqlite3

import pytest
from sqlalchemy import exc as sa_exc

from conftest import count_rows, create_schema, fail_commit_on, insert_customer, make_config
from tenantdb.audit import InMemoryAuditSink
from tenantdb.classifier import ErrorClassification, ErrorKind
from tenantdb.exceptions import (
    DatabaseOperationError,
    InvalidScopeStateError,
    MissingValueError,
    TenantNotFoundError,
)
from tenantdb.models import OperationOutcome
from tenantdb.notifications import InMemoryNotificationChannel
from tenantdb.service import DataAccessService
from tenantdb.transaction import ScopeState


@pytest.mark.asyncio
async def test_successful_unit_of_work_commits(service):
    async def create_customer(scope):
        return await insert_customer(service.executor, scope, "ada@example.com")

    outcome = await service.run("A", create_customer)

    assert outcome.succeeded is True
    assert outcome.code == "Success"
    assert outcome.payload == 1
    assert await count_rows(service, "A", "customers") == 1


@pytest.mark.asyncio
async def test_duplicate_email_becomes_failure_outcome(service):
    async def create_twice(scope):
        await insert_customer(service.executor, scope, "ada@example.com")
        await insert_customer(service.executor, scope, "ada@example.com")

    outcome = await service.run("A", create_twice)

    assert outcome.succeeded is False
    assert outcome.code == "UniqueConstraintViolation"
    assert outcome.kind is ErrorKind.UNIQUE_CONSTRAINT_VIOLATION
    assert outcome.message == "A record with this information already exists."
    assert outcome.retryable is False
    assert "customers.email" in outcome.details
    assert "details" not in outcome.to_dict()
    assert await count_rows(service, "A", "customers") == 0


@pytest.mark.asyncio
async def test_joint_unit_of_work_commits_every_tenant(service):
    async def create_everywhere(scope):
        for tenant in scope.tenants:
            await insert_customer(service.executor, scope, "ada@example.com", tenant=tenant)

    outcome = await service.run_multi(["A", "B"], create_everywhere)

    assert outcome.succeeded is True
    assert await count_rows(service, "A", "customers") == 1
    assert await count_rows(service, "B", "customers") == 1


@pytest.mark.asyncio
async def test_partial_commit_requires_reconciliation(monkeypatch, service):
    async def create_everywhere(scope):
        for tenant in scope.tenants:
            await insert_customer(service.executor, scope, "ada@example.com", tenant=tenant)
        fail_commit_on(
            monkeypatch,
            scope.connection("B"),
            sa_exc.OperationalError("COMMIT", {}, sqlite3.OperationalError("disk I/O error")),
        )

    outcome = await service.run_multi(["A", "B"], create_everywhere)
    monkeypatch.undo()

    assert outcome.succeeded is False
    assert outcome.code == "PartialCommitFailure"
    assert outcome.requires_reconciliation is True
    assert "committed=['A']" in outcome.details
    assert await count_rows(service, "A", "customers") == 1
    assert await count_rows(service, "B", "customers") == 0


@pytest.mark.asyncio
async def test_missing_value_propagates_after_rollback(service):
    scopes = []

    async def read_missing_total(scope):
        scopes.append(scope)
        await insert_customer(service.executor, scope, "ada@example.com")
        return await service.fetch_value(scope, "SELECT total FROM orders WHERE id = :id", {"id": 1}, int)

    with pytest.raises(MissingValueError):
        await service.run("A", read_missing_total)

    assert scopes[0].state is ScopeState.ROLLED_BACK
    assert await count_rows(service, "A", "customers") == 0


@pytest.mark.asyncio
async def test_missing_value_with_default(service):
    async def read_total(scope):
        return await service.fetch_value(
            scope, "SELECT total FROM orders WHERE id = :id", {"id": 1}, int, default=0
        )

    outcome = await service.run("A", read_total)

    assert outcome.payload == 0


@pytest.mark.asyncio
async def test_failed_outcome_from_work_rolls_back(service):
    async def reject(scope):
        await insert_customer(service.executor, scope, "ada@example.com")
        return OperationOutcome.failure(ErrorKind.CHECK_CONSTRAINT_VIOLATION, "Email domain not allowed")

    outcome = await service.run("A", reject)

    assert outcome.succeeded is False
    assert outcome.message == "Email domain not allowed"
    assert await count_rows(service, "A", "customers") == 0


@pytest.mark.asyncio
async def test_successful_outcome_from_work_is_returned(service):
    async def create(scope):
        customer_id = await insert_customer(service.executor, scope, "ada@example.com")
        return OperationOutcome.success({"id": customer_id}, message="Customer created")

    outcome = await service.run("A", create)

    assert outcome.payload == {"id": 1}
    assert outcome.message == "Customer created"


@pytest.mark.asyncio
async def test_programming_errors_propagate_after_rollback(service):
    async def broken(scope):
        await insert_customer(service.executor, scope, "ada@example.com")
        raise KeyError("customer_id")

    with pytest.raises(KeyError):
        await service.run("A", broken)

    assert await count_rows(service, "A", "customers") == 0


@pytest.mark.asyncio
async def test_unknown_tenant_propagates(service):
    async def work(scope):
        return None

    with pytest.raises(TenantNotFoundError):
        await service.run("Z", work)
    with pytest.raises(TenantNotFoundError):
        await service.run_multi(["A", "Z"], work)


@pytest.mark.asyncio
async def test_connectivity_failure_becomes_retryable_outcome(monkeypatch, service):
    async def unreachable(tenants, isolation_level=None):
        raise DatabaseOperationError(
            ErrorClassification.for_kind(ErrorKind.CONNECTIVITY_FAILURE, details="connection refused")
        )

    monkeypatch.setattr(service.coordinator, "begin_multi", unreachable)

    async def work(scope):
        return None

    outcome = await service.run("A", work)

    assert outcome.code == "ConnectivityFailure"
    assert outcome.retryable is True


@pytest.mark.asyncio
async def test_work_may_commit_its_own_scope(service):
    async def create_and_commit(scope):
        await insert_customer(service.executor, scope, "ada@example.com")
        await service.commit(scope)
        return "done"

    outcome = await service.run("A", create_and_commit)

    assert outcome.payload == "done"
    assert await count_rows(service, "A", "customers") == 1


@pytest.mark.asyncio
async def test_work_that_rolled_back_cannot_report_success(service):
    async def roll_back(scope):
        await service.rollback(scope)
        return "done"

    with pytest.raises(InvalidScopeStateError):
        await service.run("A", roll_back)


@pytest.mark.asyncio
async def test_savepoints_through_the_service(service):
    async def create_with_savepoint(scope):
        await insert_customer(service.executor, scope, "ada@example.com")
        handle = await service.savepoint(scope)
        await insert_customer(service.executor, scope, "grace@example.com")
        await service.rollback_to(scope, handle)
        kept = await service.savepoint(scope)
        await insert_customer(service.executor, scope, "linus@example.com")
        await service.release(scope, kept)

    outcome = await service.run("A", create_with_savepoint)

    assert outcome.succeeded
    assert await count_rows(service, "A", "customers") == 2
    assert await count_rows(service, "A", "customers", {"email": "grace@example.com"}) == 0


@pytest.mark.asyncio
async def test_hooks_receive_actor_and_changes(service):
    results = []

    @service.pipeline.register
    async def capture(result):
        results.append(result)

    async def create(scope):
        customer_id = await insert_customer(service.executor, scope, "ada@example.com")
        scope.record_change("Created", "Customer", customer_id, after={"email": "ada@example.com"})
        return customer_id

    outcome = await service.run("A", create, actor="user-42")

    assert len(results) == 1
    result = results[0]
    assert result.actor == "user-42"
    assert result.tenants == ("A",)
    assert result.outcome is outcome
    assert result.changes[0].event_name == "CustomerCreated"
    assert result.committed_at is not None


@pytest.mark.asyncio
async def test_hooks_do_not_run_for_failures(service):
    results = []

    @service.pipeline.register
    async def capture(result):
        results.append(result)

    async def create_twice(scope):
        scope.record_change("Created", "Customer", 1)
        await insert_customer(service.executor, scope, "ada@example.com")
        await insert_customer(service.executor, scope, "ada@example.com")

    await service.run("A", create_twice)

    assert results == []


@pytest.mark.asyncio
async def test_failing_hook_keeps_success_outcome(service):
    @service.pipeline.register
    async def broken(result):
        raise RuntimeError("audit store down")

    async def create(scope):
        return await insert_customer(service.executor, scope, "ada@example.com")

    outcome = await service.run("A", create)

    assert outcome.succeeded is True
    assert await count_rows(service, "A", "customers") == 1


@pytest.mark.asyncio
async def test_read_never_persists(service):
    async def sneaky_write(scope):
        await insert_customer(service.executor, scope, "ada@example.com")
        return await service.executor.count_rows(scope, "customers")

    assert await service.read("A", sneaky_write) == 1
    assert await count_rows(service, "A", "customers") == 0


@pytest.mark.asyncio
async def test_paged_read_through_the_service(service):
    async def seed(scope):
        for i in range(5):
            await insert_customer(service.executor, scope, f"user{i}@example.com")

    await service.run("A", seed)

    page = await service.read(
        "A",
        lambda scope: service.fetch_page(
            scope, "SELECT email FROM customers ORDER BY id", page=2, page_size=2
        ),
    )

    assert page.total_count == 5
    assert [row.get("email", str) for row in page.items] == ["user2@example.com", "user3@example.com"]


@pytest.mark.asyncio
async def test_from_config_with_database_audit(tmp_path):
    config = make_config(tmp_path)
    channel = InMemoryNotificationChannel()

    async with DataAccessService.from_config(config, audit=True, notification_channel=channel) as service:
        await create_schema(service.router)

        async def create(scope):
            customer_id = await insert_customer(service.executor, scope, "ada@example.com")
            scope.record_change("Created", "Customer", customer_id, after={"email": "ada@example.com"})
            return customer_id

        outcome = await service.run("B", create, actor="importer")

        assert outcome.succeeded
        assert await count_rows(service, "B", "audit_log") == 1
        assert await count_rows(service, "B", "audit_log", {"actor": "importer", "action": "Created"}) == 1
        assert await count_rows(service, "A", "audit_log") == 0
        assert channel.events[0][:2] == ("B", "CustomerCreated")


@pytest.mark.asyncio
async def test_from_config_with_background_hooks(tmp_path):
    config = make_config(tmp_path, fire_and_forget_hooks=True)
    sink = InMemoryAuditSink()

    service = DataAccessService.from_config(config, audit_sink=sink)
    await create_schema(service.router)

    async def create(scope):
        customer_id = await insert_customer(service.executor, scope, "ada@example.com")
        scope.record_change("Created", "Customer", customer_id)
        return customer_id

    outcome = await service.run("A", create)
    await service.close()

    assert outcome.succeeded
    assert [record.action for record in sink.records] == ["Created"]
    assert service.pipeline.pending_count == 0


@pytest.mark.asyncio
async def test_classify_delegates_to_classifier(service):
    classification = service.classify(TimeoutError("statement timeout"))

    assert classification.kind is ErrorKind.TIMEOUT
