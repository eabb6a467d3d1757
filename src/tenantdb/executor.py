"""
Typed statement execution inside transaction scopes.

This module provides the QueryExecutor class, which runs parameterized
statements on a scope's connections, maps rows through ``ResultRow`` and
raises classified ``DatabaseOperationError``s on engine failures. Reads,
writes, paged reads, multi-statement reads and savepoint-guarded batches
are supported.

Statements are SQL strings with ``:name`` bind parameters or SQLAlchemy
executables. Caller values are always bound by the driver, never
interpolated into statement text.
"""

import asyncio
import time
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

import pandas as pd
from sqlalchemy import Select, func, select, text
from sqlalchemy.engine import CursorResult
from sqlalchemy.sql.base import Executable

from tenantdb.classifier import ErrorClassifier
from tenantdb.cursor import MISSING, ResultRow
from tenantdb.exceptions import (
    BatchItemError,
    DatabaseOperationError,
    MissingValueError,
    ResultSetsExhaustedError,
)
from tenantdb.logger import StructuredLogger
from tenantdb.models import BatchFailure, BatchItem, BatchResult, Page
from tenantdb.transaction import TransactionScope
from tenantdb.utils import build_where_clause, validate_identifier

T = TypeVar("T")

Statement = Union[str, Executable]
Mapper = Callable[[ResultRow], T]

PAGE_LIMIT_PARAM = "_page_limit"
PAGE_OFFSET_PARAM = "_page_offset"
_RESERVED_PAGE_PARAMS = frozenset({PAGE_LIMIT_PARAM, PAGE_OFFSET_PARAM})

# Seconds an interrupted statement gets to unwind before its task is cancelled
INTERRUPT_GRACE_SECONDS = 1.0


def _rows(result: CursorResult) -> List[ResultRow]:
    if not result.returns_rows:
        return []
    return [ResultRow.from_row(row) for row in result]


def _rowcount(result: CursorResult) -> int:
    return max(result.rowcount, 0)


def _apply(rows: List[ResultRow], mapper: Optional[Mapper]) -> List[Any]:
    if mapper is None:
        return rows
    return [mapper(row) for row in rows]


class ResultSetReader:
    """Sequential access to the result sets of a multi-statement read.

    Result sets are consumed in submission order, one per ``read`` call.

    Example:
        >>> reader = await executor.fetch_multiple(scope, [orders_sql, lines_sql])
        >>> order = reader.read_one(Order.from_row)
        >>> lines = reader.read(OrderLine.from_row)
    """

    def __init__(self, result_sets: List[List[ResultRow]]):
        self._result_sets = result_sets
        self._position = 0

    @property
    def has_more(self) -> bool:
        return self._position < len(self._result_sets)

    def __len__(self) -> int:
        return len(self._result_sets)

    def _next(self) -> List[ResultRow]:
        if not self.has_more:
            raise ResultSetsExhaustedError(
                f"All {len(self._result_sets)} result sets have already been read"
            )
        rows = self._result_sets[self._position]
        self._position += 1
        return rows

    def read(self, mapper: Optional[Mapper] = None) -> List[Any]:
        """Read the next result set, mapping each row."""
        return _apply(self._next(), mapper)

    def read_one(self, mapper: Optional[Mapper] = None) -> Optional[Any]:
        """Read the next result set and return its first row, or None when empty."""
        rows = self._next()
        if not rows:
            return None
        return mapper(rows[0]) if mapper is not None else rows[0]


class QueryExecutor:
    """Runs statements on transaction scopes.

    Args:
        classifier: Error classifier for engine failures
        statement_timeout: Default per-call timeout in seconds
        max_page_size: Largest page size accepted by ``fetch_page``

    Example:
        >>> executor = QueryExecutor(statement_timeout=10)
        >>> async with coordinator.transaction(1) as scope:
        ...     orders = await executor.fetch(
        ...         scope,
        ...         "SELECT id, total FROM orders WHERE status = :status",
        ...         {"status": "open"},
        ...         lambda row: (row.get("id", int), row.get("total", Decimal)),
        ...     )
    """

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        statement_timeout: float = 30.0,
        max_page_size: int = 1000,
    ) -> None:
        if statement_timeout <= 0:
            raise ValueError("statement_timeout must be greater than 0")
        if max_page_size <= 0:
            raise ValueError("max_page_size must be greater than 0")

        self.classifier = classifier or ErrorClassifier()
        self.statement_timeout = statement_timeout
        self.max_page_size = max_page_size
        self.logger = StructuredLogger("tenantdb.executor")

    @staticmethod
    def _prepare(statement: Statement) -> Executable:
        if isinstance(statement, str):
            return text(statement)
        if isinstance(statement, Executable):
            return statement
        raise TypeError(
            f"statement must be a SQL string or SQLAlchemy executable, got {type(statement).__name__}"
        )

    @staticmethod
    def _parameters(parameters: Optional[Mapping]) -> Dict[str, Any]:
        if parameters is None:
            return {}
        if not isinstance(parameters, Mapping):
            raise TypeError(
                f"parameters must be a mapping of bind names to values, got {type(parameters).__name__}"
            )
        return dict(parameters)

    async def _run(
        self,
        scope: TransactionScope,
        statement: Statement,
        parameters: Optional[Mapping],
        consume: Callable[[CursorResult], T],
        tenant: Any = None,
        timeout: Optional[float] = None,
    ) -> T:
        prepared = self._prepare(statement)
        params = self._parameters(parameters)
        timeout = self.statement_timeout if timeout is None else timeout

        async def _execute(connection):
            result = await connection.execute(prepared, params)
            return consume(result)

        start_time = time.time()
        async with scope.using(tenant) as connection:
            try:
                value = await self._with_deadline(connection, _execute(connection), timeout)
            except Exception as e:
                duration_ms = (time.time() - start_time) * 1000
                raise self._failure(e, scope, tenant, prepared, duration_ms) from e

        duration_ms = (time.time() - start_time) * 1000
        self.logger.debug(
            "Statement executed",
            scope_id=scope.scope_id,
            tenant=tenant,
            query=str(prepared)[:100],  # Truncate long statements
            duration_ms=duration_ms,
        )
        return value

    async def _with_deadline(self, connection, work: Awaitable[T], timeout: Optional[float]) -> T:
        """Await ``work``, stopping the running statement once ``timeout`` passes.

        Cancelling the task alone does not stop a statement running in a
        driver thread (aiosqlite), so the driver connection is interrupted
        first. Drivers without ``interrupt`` cancel the server-side command
        when the task is cancelled (asyncpg).
        """
        task = asyncio.ensure_future(work)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if task in done:
                return task.result()
            await self._interrupt(connection, task)
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise

        cause = None if task.cancelled() else task.exception()
        raise asyncio.TimeoutError(f"Statement exceeded {timeout}s") from cause

    async def _interrupt(self, connection, task: asyncio.Future) -> None:
        raw = await connection.get_raw_connection()
        interrupt = getattr(raw.driver_connection, "interrupt", None)
        if interrupt is None:
            task.cancel()
            return

        await interrupt()
        done, _ = await asyncio.wait({task}, timeout=INTERRUPT_GRACE_SECONDS)
        if not done:
            self.logger.warning("Interrupted statement still running, cancelling task")
            task.cancel()

    def _failure(
        self,
        error: Exception,
        scope: TransactionScope,
        tenant: Any,
        statement: Executable,
        duration_ms: float,
    ) -> DatabaseOperationError:
        classification = self.classifier.classify(error)
        context = {
            "scope_id": scope.scope_id,
            "tenant": tenant,
            "query": str(statement)[:100],
            "duration_ms": duration_ms,
            "kind": classification.kind.value,
            "retryable": classification.retryable,
            "details": classification.details,
        }

        if classification.is_business_error:
            self.logger.warning("Statement rejected by constraint", **context)
        else:
            self.logger.exception("Statement failed", **context)

        return DatabaseOperationError(classification)

    async def fetch(
        self,
        scope: TransactionScope,
        statement: Statement,
        parameters: Optional[Mapping] = None,
        mapper: Optional[Mapper] = None,
        *,
        tenant: Any = None,
        timeout: Optional[float] = None,
    ) -> List[Any]:
        """Run a read and map every row.

        Args:
            scope: Open transaction scope
            statement: SQL with ``:name`` binds, or an executable
            parameters: Bind values
            mapper: Called with each ``ResultRow``; rows are returned as-is
                without one
            tenant: Target tenant; optional on single-tenant scopes
            timeout: Seconds before the call fails with Timeout

        Returns:
            Mapped rows in result order

        Raises:
            DatabaseOperationError: If the engine fails (classified)
            MissingValueError, TypeMismatchError: If the mapper reads a value
                incorrectly
        """
        rows = await self._run(scope, statement, parameters, _rows, tenant, timeout)
        return _apply(rows, mapper)

    async def fetch_one(
        self,
        scope: TransactionScope,
        statement: Statement,
        parameters: Optional[Mapping] = None,
        mapper: Optional[Mapper] = None,
        *,
        tenant: Any = None,
        timeout: Optional[float] = None,
    ) -> Optional[Any]:
        """Run a read and map its first row; None when there are no rows."""
        rows = await self._run(scope, statement, parameters, _rows, tenant, timeout)
        if not rows:
            return None
        return mapper(rows[0]) if mapper is not None else rows[0]

    async def fetch_value(
        self,
        scope: TransactionScope,
        statement: Statement,
        parameters: Optional[Mapping] = None,
        type_: type = object,
        *,
        column: Optional[str] = None,
        default: Any = MISSING,
        tenant: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Run a read and extract one typed value from its first row.

        Args:
            column: Column to read (default: the first column)
            default: Returned when there is no row or the value is null

        Raises:
            MissingValueError: If there is no row or the value is null and no
                default was supplied
            TypeMismatchError: If the value cannot be read as ``type_``
        """
        rows = await self._run(scope, statement, parameters, _rows, tenant, timeout)
        if not rows:
            if default is MISSING:
                raise MissingValueError(column or "<first column>", "Statement returned no rows")
            return default

        row = rows[0]
        return row.get(column or row.columns[0], type_, default)

    async def execute(
        self,
        scope: TransactionScope,
        statement: Statement,
        parameters: Optional[Mapping] = None,
        *,
        tenant: Any = None,
        timeout: Optional[float] = None,
    ) -> int:
        """Run a write and return the affected row count."""
        return await self._run(scope, statement, parameters, _rowcount, tenant, timeout)

    async def execute_many(
        self,
        scope: TransactionScope,
        statement: Statement,
        parameter_list: Iterable[Mapping],
        *,
        tenant: Any = None,
        timeout: Optional[float] = None,
    ) -> int:
        """Run a write once per parameter set and return the total affected rows."""
        total = 0
        for parameters in parameter_list:
            total += await self.execute(
                scope, statement, parameters, tenant=tenant, timeout=timeout
            )
        return total

    async def fetch_multiple(
        self,
        scope: TransactionScope,
        statements: Sequence[Union[Statement, Tuple[Statement, Mapping]]],
        parameters: Optional[Mapping] = None,
        *,
        tenant: Any = None,
        timeout: Optional[float] = None,
    ) -> ResultSetReader:
        """Run several reads in submission order and expose their result sets.

        Args:
            statements: Statements, or ``(statement, parameters)`` pairs
            parameters: Bind values for statements given without their own

        Returns:
            ResultSetReader over the buffered result sets
        """
        result_sets: List[List[ResultRow]] = []
        for item in statements:
            if isinstance(item, tuple):
                statement, statement_parameters = item
            else:
                statement, statement_parameters = item, parameters
            result_sets.append(
                await self._run(scope, statement, statement_parameters, _rows, tenant, timeout)
            )
        return ResultSetReader(result_sets)

    async def fetch_page(
        self,
        scope: TransactionScope,
        base_statement: Union[str, Select],
        parameters: Optional[Mapping] = None,
        mapper: Optional[Mapper] = None,
        *,
        page: int = 1,
        page_size: int = 20,
        tenant: Any = None,
        timeout: Optional[float] = None,
    ) -> Page:
        """Run a paged read: total count plus one page of rows.

        Both statements run under the same scope, so the count and the page
        come from the same transaction.

        Args:
            base_statement: Unpaged SELECT (SQL text or ``select()``)
            page: 1-based page number
            page_size: Rows per page, at most ``max_page_size``

        Returns:
            Page with the mapped items and the total count

        Raises:
            ValueError: For invalid paging arguments or reserved parameter names
        """
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        if page_size < 1 or page_size > self.max_page_size:
            raise ValueError(
                f"page_size must be between 1 and {self.max_page_size}, got {page_size}"
            )

        params = self._parameters(parameters)
        reserved = _RESERVED_PAGE_PARAMS & set(params)
        if reserved:
            raise ValueError(f"Parameter names reserved for paging: {sorted(reserved)}")

        offset = (page - 1) * page_size

        if isinstance(base_statement, Select):
            subquery = base_statement.subquery("paged_source")
            count_statement: Statement = select(func.count().label("total_count")).select_from(subquery)
            page_statement: Statement = base_statement.limit(page_size).offset(offset)
            page_params = params
        else:
            base_sql = self._base_sql(base_statement)
            count_statement = f"SELECT COUNT(*) AS total_count FROM ({base_sql}) AS paged_source"
            page_statement = f"{base_sql} LIMIT :{PAGE_LIMIT_PARAM} OFFSET :{PAGE_OFFSET_PARAM}"
            page_params = {**params, PAGE_LIMIT_PARAM: page_size, PAGE_OFFSET_PARAM: offset}

        total_count = await self.fetch_value(
            scope, count_statement, params, int, tenant=tenant, timeout=timeout
        )
        items = await self.fetch(
            scope, page_statement, page_params, mapper, tenant=tenant, timeout=timeout
        )

        return Page(items=items, total_count=total_count, page=page, page_size=page_size)

    @staticmethod
    def _base_sql(statement: Any) -> str:
        if not isinstance(statement, str):
            raise TypeError(
                f"base_statement must be SQL text or a select(), got {type(statement).__name__}"
            )
        sql = statement.strip().rstrip(";").strip()
        if not sql:
            raise ValueError("base_statement must not be empty")
        return sql

    async def run_batch(
        self,
        scope: TransactionScope,
        items: Iterable[Union[BatchItem, Any]],
        writer: Callable[[TransactionScope, Any], Awaitable[Any]],
    ) -> BatchResult:
        """Run ``writer`` for each item inside its own savepoint.

        An optional item that fails with a database error is rolled back to
        its savepoint, recorded and skipped. A required item that fails rolls
        the whole scope back and raises ``BatchItemError``. Values that are
        not ``BatchItem``s are treated as required.

        Args:
            scope: Open transaction scope
            items: Batch items
            writer: Coroutine function called as ``writer(scope, item.value)``

        Returns:
            BatchResult with applied indexes and skipped failures

        Raises:
            BatchItemError: If a required item fails
        """
        result = BatchResult()

        for index, item in enumerate(items):
            if not isinstance(item, BatchItem):
                item = BatchItem(value=item)

            handle = await scope.savepoint()
            try:
                await writer(scope, item.value)
            except DatabaseOperationError as e:
                await scope.rollback_to(handle)

                if item.required:
                    self.logger.error(
                        "Required batch item failed; aborting scope",
                        scope_id=scope.scope_id,
                        index=index,
                        key=item.key,
                        kind=e.kind.value,
                    )
                    await scope.rollback()
                    raise BatchItemError(e.classification, index, item.key) from e

                result.failures.append(BatchFailure(index, item.key, e.classification))
                self.logger.warning(
                    "Optional batch item skipped",
                    scope_id=scope.scope_id,
                    index=index,
                    key=item.key,
                    kind=e.kind.value,
                )
                continue

            await scope.release(handle)
            result.applied.append(index)

        self.logger.info(
            "Batch completed",
            scope_id=scope.scope_id,
            applied=result.applied_count,
            skipped=result.skipped_count,
        )
        return result

    async def count_rows(
        self,
        scope: TransactionScope,
        table: str,
        conditions: Optional[Dict[str, Any]] = None,
        *,
        tenant: Any = None,
        timeout: Optional[float] = None,
    ) -> int:
        """Count rows of ``table`` matching equality ``conditions``.

        Example:
            >>> await executor.count_rows(scope, "orders", {"status": "open", "deleted_at": None})
            12
        """
        validate_identifier(table, kind="table")
        where_clause, params = build_where_clause(conditions or {})

        sql = f"SELECT COUNT(*) AS row_count FROM {table}"
        if where_clause:
            sql += f" WHERE {where_clause}"

        return await self.fetch_value(scope, sql, params, int, tenant=tenant, timeout=timeout)

    async def fetch_frame(
        self,
        scope: TransactionScope,
        statement: Statement,
        parameters: Optional[Mapping] = None,
        *,
        tenant: Any = None,
        timeout: Optional[float] = None,
    ) -> pd.DataFrame:
        """Run a read and return it as a DataFrame (columns kept when empty)."""

        def _table(result: CursorResult) -> Tuple[List[str], List[tuple]]:
            if not result.returns_rows:
                return [], []
            return list(result.keys()), [tuple(row) for row in result]

        columns, rows = await self._run(scope, statement, parameters, _table, tenant, timeout)
        return pd.DataFrame(rows, columns=columns)
