"""
Transaction scopes over one or more tenant databases.

A ``TransactionScope`` owns the live connections of a single logical
operation: one connection for a single-tenant scope, or one connection per
tenant for a joint scope. A joint scope commits each underlying transaction
in the order the connections were opened. This is a best-effort joint
commit, not two-phase commit: when a later commit fails after an earlier one
succeeded, the committed work stays committed and ``PartialCommitError`` is
raised.

State machine:
    OPEN ──commit()──▶ COMMITTED
      │  └─────────▶ PARTIALLY_COMMITTED   (joint scopes only)
      └──rollback()──▶ ROLLED_BACK

Example:
    >>> coordinator = TransactionCoordinator(router)
    >>> async with coordinator.transaction(1) as scope:
    ...     await executor.execute(scope, "UPDATE orders SET status = :s", {"s": "open"})
    ...     handle = await scope.savepoint()
    ...     ...
    ...     await scope.rollback_to(handle)
"""

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncTransaction

from tenantdb.classifier import ErrorClassifier
from tenantdb.exceptions import (
    DatabaseOperationError,
    InvalidScopeStateError,
    PartialCommitError,
    TenantNotFoundError,
)
from tenantdb.logger import StructuredLogger
from tenantdb.models import ChangeRecord
from tenantdb.router import ConnectionRouter
from tenantdb.utils import normalize_tenant_id

logger = StructuredLogger("tenantdb.transaction")


class ScopeState(Enum):
    """Transaction scope states."""

    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    PARTIALLY_COMMITTED = "partially_committed"

    @property
    def is_terminal(self) -> bool:
        return self is not ScopeState.OPEN


@dataclass(eq=False)
class SavepointHandle:
    """A named rollback point inside an open scope.

    A handle is usable once: after ``rollback_to`` or ``release`` it is
    inactive.

    Attributes:
        name: Sequence-numbered name (``sp_1``, ``sp_2``, ...) or caller name
        sequence: Position in the scope's savepoint sequence
        scope_id: Owning scope
        active: False once rolled back or released
    """

    name: str
    sequence: int
    scope_id: str
    active: bool = True
    _nested: Dict[str, AsyncTransaction] = field(default_factory=dict, repr=False)


class TransactionScope:
    """Live connections and transactions of one logical operation.

    Scopes are created by :class:`TransactionCoordinator`. A scope serves a
    single operation and is never reused after reaching a terminal state.
    Statements inside a scope run sequentially; using one scope from two
    tasks at the same time raises ``InvalidScopeStateError``.

    Used as an async context manager, an exception escaping the block rolls
    the scope back before propagating and a clean exit commits it.
    """

    def __init__(
        self,
        connections: Dict[str, AsyncConnection],
        transactions: Dict[str, AsyncTransaction],
        classifier: ErrorClassifier,
        scope_id: Optional[str] = None,
    ) -> None:
        self.scope_id = scope_id or uuid.uuid4().hex[:12]
        self._connections = connections
        self._transactions = transactions
        self._classifier = classifier
        self._state = ScopeState.OPEN
        self._savepoints: List[SavepointHandle] = []
        self._sequence = 0
        self._changes: List[ChangeRecord] = []
        self._busy = False

    @property
    def state(self) -> ScopeState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ScopeState.OPEN

    @property
    def tenants(self) -> Tuple[str, ...]:
        return tuple(self._connections)

    @property
    def is_joint(self) -> bool:
        return len(self._connections) > 1

    @property
    def savepoint_depth(self) -> int:
        return len(self._savepoints)

    @property
    def changes(self) -> Tuple[ChangeRecord, ...]:
        return tuple(self._changes)

    def __repr__(self) -> str:
        return (
            f"TransactionScope(scope_id={self.scope_id!r}, tenants={list(self.tenants)}, "
            f"state={self._state.value}, savepoint_depth={self.savepoint_depth})"
        )

    # Guards

    def _require_open(self, action: str) -> None:
        if self._state is not ScopeState.OPEN:
            raise InvalidScopeStateError(
                f"Cannot {action}: scope {self.scope_id} is {self._state.value}"
            )

    def _require_idle(self, action: str) -> None:
        if self._busy:
            raise InvalidScopeStateError(
                f"Cannot {action}: scope {self.scope_id} is in use by another task"
            )

    def _operation_error(self, error: Exception, action: str, **context: Any) -> DatabaseOperationError:
        classification = self._classifier.classify(error)
        log = logger.warning if classification.is_business_error else logger.error
        log(
            f"Scope {action} failed",
            scope_id=self.scope_id,
            kind=classification.kind.value,
            retryable=classification.retryable,
            details=classification.details,
            **context,
        )
        return DatabaseOperationError(classification)

    def _tenant_key(self, tenant: Any) -> str:
        if tenant is None:
            if len(self._connections) == 1:
                return next(iter(self._connections))
            raise ValueError(
                f"Scope {self.scope_id} spans {list(self.tenants)}; a tenant is required"
            )

        key = normalize_tenant_id(tenant)
        if key not in self._connections:
            raise TenantNotFoundError(
                key, f"Tenant {key!r} is not part of scope {self.scope_id}"
            )
        return key

    # Connections

    def connection(self, tenant: Any = None) -> AsyncConnection:
        """Return the scope's connection for ``tenant``.

        Args:
            tenant: Tenant identifier; optional on single-tenant scopes

        Raises:
            InvalidScopeStateError: If the scope is terminal
            TenantNotFoundError: If the tenant is not part of this scope
            ValueError: If no tenant is given on a joint scope
        """
        self._require_open("use a connection")
        return self._connections[self._tenant_key(tenant)]

    @asynccontextmanager
    async def using(self, tenant: Any = None) -> AsyncIterator[AsyncConnection]:
        """Borrow the tenant's connection for one statement.

        Marks the scope busy for the duration of the block so that concurrent
        use from another task is detected.
        """
        self._require_open("execute a statement")
        connection = self._connections[self._tenant_key(tenant)]

        async with self._exclusive("execute a statement"):
            yield connection

    @asynccontextmanager
    async def _exclusive(self, action: str) -> AsyncIterator[None]:
        self._require_idle(action)
        self._busy = True
        try:
            yield
        finally:
            self._busy = False

    def record_change(
        self,
        action: str,
        entity_type: str,
        entity_id: Any,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        tenant: Any = None,
    ) -> ChangeRecord:
        """Register a change for the post-commit hooks (audit, notifications)."""
        self._require_open("record a change")
        change = ChangeRecord(
            tenant=self._tenant_key(tenant),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before=dict(before) if before is not None else None,
            after=dict(after) if after is not None else None,
        )
        self._changes.append(change)
        return change

    # Savepoints

    async def savepoint(self, name: Optional[str] = None) -> SavepointHandle:
        """Create a savepoint on every connection of the scope.

        Args:
            name: Optional label; defaults to ``sp_<n>``

        Returns:
            SavepointHandle for ``rollback_to`` / ``release``

        Raises:
            InvalidScopeStateError: If the scope is not open
            DatabaseOperationError: If the engine rejects the savepoint
        """
        self._require_open("create a savepoint")

        async with self._exclusive("create a savepoint"):
            self._sequence += 1
            handle = SavepointHandle(
                name=name or f"sp_{self._sequence}",
                sequence=self._sequence,
                scope_id=self.scope_id,
            )

            try:
                for key, connection in self._connections.items():
                    handle._nested[key] = await connection.begin_nested()
            except Exception as e:
                for nested in reversed(list(handle._nested.values())):
                    await self._quietly(nested.rollback(), "savepoint cleanup")
                raise self._operation_error(e, "savepoint", savepoint=handle.name) from e

        self._savepoints.append(handle)
        logger.debug(
            "Savepoint created",
            scope_id=self.scope_id,
            savepoint=handle.name,
            depth=self.savepoint_depth,
        )
        return handle

    def _check_handle(self, handle: SavepointHandle, action: str) -> int:
        self._require_open(action)
        self._require_idle(action)
        if handle.scope_id != self.scope_id:
            raise InvalidScopeStateError(
                f"Savepoint {handle.name} belongs to scope {handle.scope_id}, not {self.scope_id}"
            )
        if not handle.active or handle not in self._savepoints:
            raise InvalidScopeStateError(
                f"Savepoint {handle.name} was already rolled back or released"
            )
        return self._savepoints.index(handle)

    async def rollback_to(self, handle: SavepointHandle) -> None:
        """Revert work done since ``handle`` without ending the scope.

        Savepoints created after ``handle`` are discarded first.

        Raises:
            InvalidScopeStateError: If the scope is not open or the handle is
                inactive
            DatabaseOperationError: If the engine rejects the rollback
        """
        index = self._check_handle(handle, "roll back to a savepoint")

        async with self._exclusive("roll back to a savepoint"):
            try:
                for savepoint in reversed(self._savepoints[index:]):
                    for nested in reversed(list(savepoint._nested.values())):
                        if nested.is_active:
                            await nested.rollback()
                    savepoint.active = False
            except Exception as e:
                raise self._operation_error(e, "rollback to savepoint", savepoint=handle.name) from e
            finally:
                del self._savepoints[index:]

        logger.debug(
            "Rolled back to savepoint",
            scope_id=self.scope_id,
            savepoint=handle.name,
            depth=self.savepoint_depth,
        )

    async def release(self, handle: SavepointHandle) -> None:
        """Keep the work done since ``handle`` and discard the savepoint.

        Savepoints created after ``handle`` are released with it.
        """
        index = self._check_handle(handle, "release a savepoint")

        async with self._exclusive("release a savepoint"):
            await self._release_from(index, handle)

    async def _release_from(self, index: int, handle: SavepointHandle) -> None:
        try:
            for savepoint in reversed(self._savepoints[index:]):
                for nested in reversed(list(savepoint._nested.values())):
                    if nested.is_active:
                        await nested.commit()
                savepoint.active = False
        except Exception as e:
            raise self._operation_error(e, "savepoint release", savepoint=handle.name) from e
        finally:
            del self._savepoints[index:]

    # Terminal transitions

    async def commit(self) -> None:
        """Commit every underlying transaction in open order.

        Raises:
            InvalidScopeStateError: If the scope is already terminal
            DatabaseOperationError: If the first commit fails; nothing was
                made durable and the scope is rolled back
            PartialCommitError: If a later commit fails after an earlier one
                succeeded; the scope is partially committed
        """
        self._require_open("commit")
        async with self._exclusive("commit"):
            await self._commit_in_order()

    async def _commit_in_order(self) -> None:
        if self._savepoints:
            await self._release_from(0, self._savepoints[0])

        keys = list(self._transactions)
        committed: List[str] = []

        for position, key in enumerate(keys):
            try:
                await self._transactions[key].commit()
            except Exception as e:
                classification = self._classifier.classify(e)
                remaining = keys[position + 1:]
                await self._rollback_quietly([key] + remaining)

                if not committed:
                    await self._finish(ScopeState.ROLLED_BACK)
                    logger.error(
                        "Scope commit failed",
                        scope_id=self.scope_id,
                        tenant=key,
                        kind=classification.kind.value,
                        details=classification.details,
                    )
                    raise DatabaseOperationError(classification) from e

                await self._finish(ScopeState.PARTIALLY_COMMITTED)
                logger.critical(
                    "Joint scope partially committed; manual reconciliation required",
                    scope_id=self.scope_id,
                    committed=committed,
                    failed=key,
                    rolled_back=remaining,
                    kind=classification.kind.value,
                    details=classification.details,
                )
                raise PartialCommitError(committed, key, remaining, classification) from e

            committed.append(key)

        await self._finish(ScopeState.COMMITTED)
        logger.info("Scope committed", scope_id=self.scope_id, tenants=committed)

    async def rollback(self) -> None:
        """Roll back every underlying transaction.

        Raises:
            InvalidScopeStateError: If the scope is already terminal
            DatabaseOperationError: If a connection failed to roll back; the
                scope is terminal regardless
        """
        self._require_open("roll back")
        async with self._exclusive("roll back"):
            await self._rollback_all()

    async def _rollback_all(self) -> None:
        first_error: Optional[Exception] = None
        for key, transaction in self._transactions.items():
            try:
                if transaction.is_active:
                    await transaction.rollback()
            except Exception as e:
                logger.error(
                    "Rollback failed", scope_id=self.scope_id, tenant=key, error=str(e)
                )
                if first_error is None:
                    first_error = e

        await self._finish(ScopeState.ROLLED_BACK)
        logger.info("Scope rolled back", scope_id=self.scope_id, tenants=list(self.tenants))

        if first_error is not None:
            raise DatabaseOperationError(self._classifier.classify(first_error)) from first_error

    async def ensure_rolled_back(self) -> None:
        """Roll back unless the scope is already terminal.

        Rollback failures are logged and not raised, so this is safe to call
        from cleanup paths while another exception is propagating.
        """
        if self._state.is_terminal:
            return

        # Cleanup runs after the failing statement released the scope
        self._busy = False
        try:
            await self.rollback()
        except DatabaseOperationError as e:
            logger.warning(
                "Safe rollback failed",
                scope_id=self.scope_id,
                kind=e.kind.value,
                details=e.classification.details,
            )

    async def _rollback_quietly(self, keys: Sequence[str]) -> List[str]:
        rolled_back = []
        for key in keys:
            transaction = self._transactions[key]
            if transaction.is_active and await self._quietly(transaction.rollback(), "rollback", tenant=key):
                rolled_back.append(key)
        return rolled_back

    async def _quietly(self, awaitable, action: str, **context: Any) -> bool:
        try:
            await awaitable
            return True
        except Exception as e:
            logger.warning(
                f"Scope {action} failed during cleanup",
                scope_id=self.scope_id,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            return False

    async def _finish(self, state: ScopeState) -> None:
        self._state = state
        for savepoint in self._savepoints:
            savepoint.active = False
        self._savepoints.clear()

        for key, connection in self._connections.items():
            await self._quietly(connection.close(), "connection close", tenant=key)

    async def __aenter__(self) -> "TransactionScope":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            await self.ensure_rolled_back()
            return False

        if self.is_open:
            await self.commit()
        return False


class TransactionCoordinator:
    """Opens transaction scopes on tenant connections.

    Args:
        router: Tenant connection router
        classifier: Error classifier for connection failures

    Example:
        >>> coordinator = TransactionCoordinator(router)
        >>> scope = await coordinator.begin_multi(["eu", "us"])
        >>> try:
        ...     ...
        ...     await scope.commit()
        ... finally:
        ...     await scope.ensure_rolled_back()
    """

    def __init__(
        self, router: ConnectionRouter, classifier: Optional[ErrorClassifier] = None
    ) -> None:
        self.router = router
        self.classifier = classifier or ErrorClassifier()

    async def begin(self, tenant: Any, isolation_level: Optional[str] = None) -> TransactionScope:
        """Open a single-tenant scope: one connection, one transaction.

        Args:
            tenant: Tenant identifier
            isolation_level: Optional isolation level (e.g. "SERIALIZABLE")

        Raises:
            TenantNotFoundError: If the tenant is not configured
            DatabaseOperationError: If no connection could be acquired
                (ConnectivityFailure, including pool exhaustion)
        """
        return await self._open([tenant], isolation_level)

    async def begin_multi(
        self, tenants: Sequence[Any], isolation_level: Optional[str] = None
    ) -> TransactionScope:
        """Open a joint scope with one connection and transaction per tenant.

        Connections are opened in the given order, which is also the commit
        order.

        Raises:
            ValueError: If ``tenants`` is empty or contains duplicates
            TenantNotFoundError: If any tenant is not configured
            DatabaseOperationError: If a connection could not be acquired; the
                connections opened so far are rolled back and released
        """
        return await self._open(list(tenants), isolation_level)

    async def _open(self, tenants: List[Any], isolation_level: Optional[str]) -> TransactionScope:
        keys = [normalize_tenant_id(tenant) for tenant in tenants]
        if not keys:
            raise ValueError("At least one tenant is required to open a scope")
        if len(set(keys)) != len(keys):
            raise ValueError(f"Duplicate tenants in joint scope: {keys}")

        # Resolve everything before touching any pool
        descriptors = [self.router.resolve(key) for key in keys]

        connections: Dict[str, AsyncConnection] = {}
        transactions: Dict[str, AsyncTransaction] = {}
        try:
            for descriptor in descriptors:
                connection = await descriptor.engine.connect()
                connections[descriptor.tenant] = connection
                if isolation_level is not None:
                    await connection.execution_options(isolation_level=isolation_level)
                transactions[descriptor.tenant] = await connection.begin()
        except Exception as e:
            for key, connection in connections.items():
                try:
                    await connection.close()
                except Exception as close_error:
                    logger.warning(
                        "Connection release failed", tenant=key, error=str(close_error)
                    )

            classification = self.classifier.classify(e)
            logger.error(
                "Failed to open scope",
                tenants=keys,
                kind=classification.kind.value,
                retryable=classification.retryable,
                details=classification.details,
            )
            raise DatabaseOperationError(classification) from e

        scope = TransactionScope(connections, transactions, self.classifier)
        logger.debug(
            "Scope opened",
            scope_id=scope.scope_id,
            tenants=keys,
            isolation_level=isolation_level,
        )
        return scope

    @asynccontextmanager
    async def transaction(
        self, tenant: Any, isolation_level: Optional[str] = None
    ) -> AsyncIterator[TransactionScope]:
        """Single-tenant scope that commits on clean exit and rolls back on error."""
        scope = await self.begin(tenant, isolation_level)
        async with scope:
            yield scope

    @asynccontextmanager
    async def joint_transaction(
        self, tenants: Sequence[Any], isolation_level: Optional[str] = None
    ) -> AsyncIterator[TransactionScope]:
        """Joint scope that commits on clean exit and rolls back on error."""
        scope = await self.begin_multi(tenants, isolation_level)
        async with scope:
            yield scope
