"""
Caller-facing data-access service.

``DataAccessService`` wires the router, coordinator, executor, classifier
and post-commit pipeline together and exposes the operation surface used by
application code. Its unit-of-work runners return ``OperationOutcome``s for
expected failures (constraint violations, timeouts, connectivity, partial
commits) and let programming errors propagate.

Example:
    >>> async with DataAccessService.from_config(config, audit=True) as service:
    ...     async def create_order(scope):
    ...         order_id = await service.fetch_value(
    ...             scope,
    ...             "INSERT INTO orders (number, total) VALUES (:number, :total) RETURNING id",
    ...             {"number": "SO-1001", "total": Decimal("12.50")},
    ...             int,
    ...         )
    ...         scope.record_change("Created", "Order", order_id, after={"number": "SO-1001"})
    ...         return order_id
    ...     outcome = await service.run(1, create_order, actor="user-42")
    ...     outcome.succeeded, outcome.code
    (True, 'Success')
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional, Sequence, TypeVar

import pandas as pd

from tenantdb.audit import AuditHook, AuditSink, DatabaseAuditSink
from tenantdb.classifier import ErrorClassification, ErrorClassifier
from tenantdb.config import DataAccessConfig
from tenantdb.cursor import MISSING
from tenantdb.exceptions import DatabaseOperationError, InvalidScopeStateError, PartialCommitError
from tenantdb.executor import Mapper, QueryExecutor, ResultSetReader, Statement
from tenantdb.hooks import HookCallable, PostCommitPipeline
from tenantdb.logger import StructuredLogger
from tenantdb.models import BatchResult, OperationOutcome, Page, ScopeResult
from tenantdb.notifications import NotificationChannel, NotifyHook
from tenantdb.router import ConnectionRouter
from tenantdb.transaction import SavepointHandle, ScopeState, TransactionCoordinator, TransactionScope

T = TypeVar("T")

UnitOfWork = Callable[[TransactionScope], Awaitable[Any]]


class DataAccessService:
    """Operation surface over the data-access components.

    Args:
        router: Tenant connection router
        coordinator: Transaction coordinator (default: built on ``router``)
        executor: Query executor (default: timeouts and page size from the
            router's configuration)
        pipeline: Post-commit pipeline (default: empty, hook mode from the
            router's configuration)
        classifier: Error classifier shared by the default components
    """

    def __init__(
        self,
        router: ConnectionRouter,
        coordinator: Optional[TransactionCoordinator] = None,
        executor: Optional[QueryExecutor] = None,
        pipeline: Optional[PostCommitPipeline] = None,
        classifier: Optional[ErrorClassifier] = None,
    ) -> None:
        config = router.config
        self.router = router
        self.classifier = classifier or ErrorClassifier()
        self.coordinator = coordinator or TransactionCoordinator(router, self.classifier)
        self.executor = executor or QueryExecutor(
            self.classifier,
            statement_timeout=config.statement_timeout,
            max_page_size=config.max_page_size,
        )
        self.pipeline = pipeline or PostCommitPipeline(
            fire_and_forget=config.fire_and_forget_hooks
        )
        self.logger = StructuredLogger("tenantdb.service")

    @classmethod
    def from_config(
        cls,
        config: DataAccessConfig,
        *,
        audit: bool = False,
        audit_sink: Optional[AuditSink] = None,
        notification_channel: Optional[NotificationChannel] = None,
        hooks: Iterable[HookCallable] = (),
    ) -> "DataAccessService":
        """Build a fully wired service from configuration.

        Args:
            config: Data-access configuration
            audit: Register an AuditHook writing to ``config.audit_table``
            audit_sink: Register an AuditHook writing to this sink instead
            notification_channel: Register a NotifyHook on this channel
            hooks: Extra post-commit hooks, run after audit and notification
        """
        service = cls(ConnectionRouter(config))

        if audit_sink is not None:
            service.pipeline.register(AuditHook(audit_sink))
        elif audit:
            service.pipeline.register(
                AuditHook(
                    DatabaseAuditSink(service.coordinator, service.executor, config.audit_table)
                )
            )

        if notification_channel is not None:
            service.pipeline.register(NotifyHook(notification_channel))

        for hook in hooks:
            service.pipeline.register(hook)

        return service

    # Scope lifecycle

    async def begin(self, tenant: Any, isolation_level: Optional[str] = None) -> TransactionScope:
        return await self.coordinator.begin(tenant, isolation_level)

    async def begin_multi(
        self, tenants: Sequence[Any], isolation_level: Optional[str] = None
    ) -> TransactionScope:
        return await self.coordinator.begin_multi(tenants, isolation_level)

    async def commit(self, scope: TransactionScope) -> None:
        await scope.commit()

    async def rollback(self, scope: TransactionScope) -> None:
        await scope.rollback()

    async def savepoint(self, scope: TransactionScope, name: Optional[str] = None) -> SavepointHandle:
        return await scope.savepoint(name)

    async def rollback_to(self, scope: TransactionScope, handle: SavepointHandle) -> None:
        await scope.rollback_to(handle)

    async def release(self, scope: TransactionScope, handle: SavepointHandle) -> None:
        await scope.release(handle)

    def classify(self, error: BaseException) -> ErrorClassification:
        return self.classifier.classify(error)

    # Statements

    async def fetch(
        self,
        scope: TransactionScope,
        statement: Statement,
        parameters: Optional[Mapping] = None,
        mapper: Optional[Mapper] = None,
        **kwargs: Any,
    ) -> List[Any]:
        return await self.executor.fetch(scope, statement, parameters, mapper, **kwargs)

    async def fetch_one(
        self,
        scope: TransactionScope,
        statement: Statement,
        parameters: Optional[Mapping] = None,
        mapper: Optional[Mapper] = None,
        **kwargs: Any,
    ) -> Optional[Any]:
        return await self.executor.fetch_one(scope, statement, parameters, mapper, **kwargs)

    async def fetch_value(
        self,
        scope: TransactionScope,
        statement: Statement,
        parameters: Optional[Mapping] = None,
        type_: type = object,
        *,
        default: Any = MISSING,
        **kwargs: Any,
    ) -> Any:
        return await self.executor.fetch_value(
            scope, statement, parameters, type_, default=default, **kwargs
        )

    async def execute(
        self,
        scope: TransactionScope,
        statement: Statement,
        parameters: Optional[Mapping] = None,
        **kwargs: Any,
    ) -> int:
        return await self.executor.execute(scope, statement, parameters, **kwargs)

    async def fetch_page(
        self,
        scope: TransactionScope,
        base_statement: Statement,
        parameters: Optional[Mapping] = None,
        mapper: Optional[Mapper] = None,
        **kwargs: Any,
    ) -> Page:
        return await self.executor.fetch_page(scope, base_statement, parameters, mapper, **kwargs)

    async def fetch_multiple(
        self, scope: TransactionScope, statements: Sequence[Any], parameters: Optional[Mapping] = None, **kwargs: Any
    ) -> ResultSetReader:
        return await self.executor.fetch_multiple(scope, statements, parameters, **kwargs)

    async def fetch_frame(
        self,
        scope: TransactionScope,
        statement: Statement,
        parameters: Optional[Mapping] = None,
        **kwargs: Any,
    ) -> pd.DataFrame:
        return await self.executor.fetch_frame(scope, statement, parameters, **kwargs)

    async def run_batch(
        self,
        scope: TransactionScope,
        items: Iterable[Any],
        writer: Callable[[TransactionScope, Any], Awaitable[Any]],
    ) -> BatchResult:
        return await self.executor.run_batch(scope, items, writer)

    # Units of work

    async def read(self, tenant: Any, work: Callable[[TransactionScope], Awaitable[T]]) -> T:
        """Run a read-only unit of work; its scope is always rolled back.

        Raises:
            DatabaseOperationError: Classified engine failures propagate
        """
        scope = await self.coordinator.begin(tenant)
        try:
            return await work(scope)
        finally:
            await scope.ensure_rolled_back()

    async def run(
        self,
        tenant: Any,
        work: UnitOfWork,
        *,
        actor: Optional[str] = None,
        isolation_level: Optional[str] = None,
    ) -> OperationOutcome:
        """Run ``work`` in a single-tenant scope and return its outcome.

        The scope commits when ``work`` returns, then the post-commit hooks
        run. ``work`` may return an ``OperationOutcome``: a failed one rolls
        the scope back and is returned unchanged; any other value becomes the
        success payload.

        Args:
            tenant: Tenant identifier
            work: Coroutine function receiving the open scope
            actor: Who runs the operation (for audit records)
            isolation_level: Optional isolation level

        Returns:
            OperationOutcome; failures carry the ErrorKind value as ``code``

        Raises:
            TenantNotFoundError: If the tenant is not configured
            InvalidScopeStateError, MissingValueError, TypeMismatchError:
                Programming errors, after the implicit rollback
        """
        return await self._run_unit([tenant], work, actor, isolation_level)

    async def run_multi(
        self,
        tenants: Sequence[Any],
        work: UnitOfWork,
        *,
        actor: Optional[str] = None,
        isolation_level: Optional[str] = None,
    ) -> OperationOutcome:
        """Run ``work`` in a joint scope across ``tenants``.

        Same contract as :meth:`run`; a commit that succeeded on some tenants
        but not on others yields a ``PartialCommitFailure`` outcome whose
        ``requires_reconciliation`` is True.
        """
        return await self._run_unit(list(tenants), work, actor, isolation_level)

    async def _run_unit(
        self,
        tenants: List[Any],
        work: UnitOfWork,
        actor: Optional[str],
        isolation_level: Optional[str],
    ) -> OperationOutcome:
        try:
            scope = await self.coordinator.begin_multi(tenants, isolation_level)
        except DatabaseOperationError as e:
            return self._failure_outcome(e, tenants)

        try:
            result = await work(scope)

            if isinstance(result, OperationOutcome) and not result.succeeded:
                await scope.ensure_rolled_back()
                return result

            if scope.is_open:
                await scope.commit()
            elif scope.state is not ScopeState.COMMITTED:
                raise InvalidScopeStateError(
                    f"Unit of work left scope {scope.scope_id} {scope.state.value} but reported success"
                )
        except PartialCommitError as e:
            return self._failure_outcome(e, tenants)
        except DatabaseOperationError as e:
            await scope.ensure_rolled_back()
            return self._failure_outcome(e, tenants)
        except Exception as e:
            self.logger.exception(
                "Unit of work raised a programming error",
                scope_id=scope.scope_id,
                tenants=list(scope.tenants),
                error_type=type(e).__name__,
                kind=getattr(getattr(e, "kind", None), "value", None),
            )
            await scope.ensure_rolled_back()
            raise
        except BaseException:
            await scope.ensure_rolled_back()
            raise

        outcome = result if isinstance(result, OperationOutcome) else OperationOutcome.success(result)

        await self.pipeline.after_commit(
            ScopeResult(
                scope_id=scope.scope_id,
                tenants=scope.tenants,
                outcome=outcome,
                changes=scope.changes,
                actor=actor,
                committed_at=datetime.now(timezone.utc),
            )
        )
        return outcome

    def _failure_outcome(self, error: DatabaseOperationError, tenants: List[Any]) -> OperationOutcome:
        outcome = OperationOutcome.from_classification(error.classification)
        self.logger.info(
            "Operation failed",
            tenants=[str(t) for t in tenants],
            code=outcome.code,
            retryable=outcome.retryable,
        )
        return outcome

    # Lifecycle

    async def close(self) -> None:
        """Wait for background hooks and dispose every tenant engine."""
        await self.pipeline.drain()
        await self.router.dispose()

    async def __aenter__(self) -> "DataAccessService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
