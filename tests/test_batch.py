import pytest

from conftest import count_rows, insert_customer
from tenantdb.classifier import ErrorKind
from tenantdb.exceptions import BatchItemError
from tenantdb.models import BatchItem, OperationOutcome
from tenantdb.transaction import ScopeState


def customer_writer(executor):
    async def write(scope, email):
        await insert_customer(executor, scope, email)

    return write


@pytest.mark.asyncio
async def test_optional_failures_are_skipped(coordinator, executor, service):
    scope = await coordinator.begin("A")

    result = await executor.run_batch(
        scope,
        [
            BatchItem("ada@example.com"),
            BatchItem("ada@example.com", required=False, key="duplicate"),
            BatchItem("grace@example.com"),
        ],
        customer_writer(executor),
    )
    await scope.commit()

    assert result.applied == [0, 2]
    assert result.applied_count == 2
    assert result.skipped_count == 1
    failure = result.failures[0]
    assert (failure.index, failure.key) == (1, "duplicate")
    assert failure.classification.kind is ErrorKind.UNIQUE_CONSTRAINT_VIOLATION
    assert await count_rows(service, "A", "customers") == 2


@pytest.mark.asyncio
async def test_required_failure_aborts_the_scope(coordinator, executor, service):
    scope = await coordinator.begin("A")

    with pytest.raises(BatchItemError) as excinfo:
        await executor.run_batch(
            scope,
            [
                BatchItem("ada@example.com"),
                BatchItem("grace@example.com", required=False),
                BatchItem("ada@example.com", key="order-3"),
            ],
            customer_writer(executor),
        )

    error = excinfo.value
    assert error.index == 2
    assert error.key == "order-3"
    assert error.kind is ErrorKind.UNIQUE_CONSTRAINT_VIOLATION
    assert scope.state is ScopeState.ROLLED_BACK
    assert await count_rows(service, "A", "customers") == 0


@pytest.mark.asyncio
async def test_plain_values_are_required(coordinator, executor, service):
    scope = await coordinator.begin("A")

    with pytest.raises(BatchItemError) as excinfo:
        await executor.run_batch(
            scope, ["ada@example.com", "ada@example.com"], customer_writer(executor)
        )

    assert excinfo.value.index == 1
    assert await count_rows(service, "A", "customers") == 0


@pytest.mark.asyncio
async def test_programming_errors_propagate(coordinator, executor):
    scope = await coordinator.begin("A")

    async def writer(scope, value):
        if value == "bad":
            raise KeyError(value)
        await insert_customer(executor, scope, value)

    try:
        with pytest.raises(KeyError):
            await executor.run_batch(scope, ["ada@example.com", "bad"], writer)
        assert scope.is_open
    finally:
        await scope.ensure_rolled_back()

    assert scope.state is ScopeState.ROLLED_BACK


@pytest.mark.asyncio
async def test_batch_inside_a_unit_of_work(service):
    async def import_customers(scope):
        return await service.run_batch(
            scope,
            [BatchItem("ada@example.com"), BatchItem("ada@example.com", required=False)],
            customer_writer(service.executor),
        )

    outcome = await service.run("A", import_customers)

    assert outcome.succeeded
    assert outcome.payload.applied == [0]
    assert await count_rows(service, "A", "customers") == 1


@pytest.mark.asyncio
async def test_required_batch_failure_becomes_failure_outcome(service):
    async def import_customers(scope):
        await service.run_batch(
            scope, ["ada@example.com", "ada@example.com"], customer_writer(service.executor)
        )

    outcome = await service.run("A", import_customers)

    assert isinstance(outcome, OperationOutcome)
    assert outcome.succeeded is False
    assert outcome.code == "UniqueConstraintViolation"
    assert await count_rows(service, "A", "customers") == 0
