from datetime import datetime, timedelta, timezone

import pytest

from tenantdb.classifier import ErrorClassification, ErrorKind
from tenantdb.exceptions import DatabaseOperationError
from tenantdb.utils import (
    build_where_clause,
    normalize_tenant_id,
    parse_timestamp,
    retry_on_retryable,
    validate_identifier,
)


@pytest.mark.parametrize("tenant, expected", [(1, "1"), ("1", "1"), (" acme ", "acme"), (0, "0")])
def test_normalize_tenant_id(tenant, expected):
    assert normalize_tenant_id(tenant) == expected


@pytest.mark.parametrize("tenant", [None, True, "", "   ", 1.5, ("a",)])
def test_normalize_tenant_id_rejects_invalid(tenant):
    with pytest.raises(ValueError, match="Invalid tenant identifier"):
        normalize_tenant_id(tenant)


@pytest.mark.parametrize("name", ["orders", "audit_log", "public.orders", "T2"])
def test_validate_identifier_accepts(name):
    assert validate_identifier(name) == name


@pytest.mark.parametrize("name", ["", "orders; DROP TABLE x", "a.b.c", "my-table", "name with space"])
def test_validate_identifier_rejects(name):
    with pytest.raises(ValueError, match="Invalid table name"):
        validate_identifier(name)


def test_columns_cannot_be_qualified():
    with pytest.raises(ValueError, match="Invalid column name"):
        validate_identifier("orders.id", kind="column")


def test_build_where_clause():
    clause, params = build_where_clause({"status": "open", "deleted_at": None, "customer_id": 3})

    assert clause == "status = :status AND deleted_at IS NULL AND customer_id = :customer_id"
    assert params == {"status": "open", "customer_id": 3}


def test_build_where_clause_empty():
    assert build_where_clause({}) == ("", {})


def test_build_where_clause_validates_columns():
    with pytest.raises(ValueError):
        build_where_clause({"id = 1 OR 1": 1})


def test_parse_timestamp():
    assert parse_timestamp("2026-01-15T14:00:00Z") == datetime(2026, 1, 15, 14, tzinfo=timezone.utc)
    assert parse_timestamp("2026-01-15 14:00:00.000000") == datetime(2026, 1, 15, 14)
    assert parse_timestamp("2026-01-15T14:00:00+02:00").utcoffset() == timedelta(hours=2)


@pytest.mark.parametrize("text", ["yesterday", "", 1700000000])
def test_parse_timestamp_rejects(text):
    with pytest.raises(ValueError):
        parse_timestamp(text)


def operation_error(kind: ErrorKind) -> DatabaseOperationError:
    return DatabaseOperationError(ErrorClassification.for_kind(kind))


@pytest.mark.asyncio
async def test_retry_on_retryable_retries_until_success():
    calls = []

    @retry_on_retryable(max_attempts=3, initial_delay=0)
    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise operation_error(ErrorKind.CONNECTIVITY_FAILURE)
        return "ok"

    assert await flaky() == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_on_retryable_gives_up_after_max_attempts():
    calls = []

    @retry_on_retryable(max_attempts=2, initial_delay=0)
    async def always_times_out():
        calls.append(1)
        raise operation_error(ErrorKind.TIMEOUT)

    with pytest.raises(DatabaseOperationError) as excinfo:
        await always_times_out()

    assert excinfo.value.kind is ErrorKind.TIMEOUT
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_retry_on_retryable_does_not_retry_business_errors():
    calls = []

    @retry_on_retryable(max_attempts=5, initial_delay=0)
    async def duplicate():
        calls.append(1)
        raise operation_error(ErrorKind.UNIQUE_CONSTRAINT_VIOLATION)

    with pytest.raises(DatabaseOperationError):
        await duplicate()

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_retry_on_retryable_ignores_other_exceptions():
    calls = []

    @retry_on_retryable(initial_delay=0)
    async def broken():
        calls.append(1)
        raise RuntimeError("bug")

    with pytest.raises(RuntimeError):
        await broken()

    assert len(calls) == 1


def test_retry_on_retryable_requires_an_attempt():
    with pytest.raises(ValueError):
        retry_on_retryable(max_attempts=0)
