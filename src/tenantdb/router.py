"""
Tenant connection routing with per-tenant connection pools.

This module provides the ConnectionRouter class, which maps tenant
identifiers to connection descriptors backed by pooled SQLAlchemy
``AsyncEngine`` instances. Engines are created lazily on first resolution
and cached for the process lifetime; ``reload()`` swaps in a new routing
snapshot atomically.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import event, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from tenantdb.config import DataAccessConfig, TenantDatabaseConfig
from tenantdb.exceptions import ConfigurationError, TenantNotFoundError
from tenantdb.logger import StructuredLogger
from tenantdb.utils import normalize_tenant_id


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Resolved connection target of one tenant.

    Attributes:
        tenant: Normalized tenant key
        address: Loggable database location (never contains the password)
        user: Database user
        password: Database password (hidden from repr)
        pool_size: Connections kept in the pool
        max_connections: Upper bound of open connections
        pool_timeout: Seconds to wait for a free connection
        url: SQLAlchemy URL
        engine: Pooled async engine shared by every scope on this tenant
        settings: Tenant configuration the descriptor was built from
    """

    tenant: str
    address: str
    user: Optional[str]
    password: str = field(repr=False)
    pool_size: int
    max_connections: int
    pool_timeout: float
    url: URL = field(repr=False)
    engine: AsyncEngine = field(repr=False, compare=False)
    settings: TenantDatabaseConfig = field(repr=False, compare=False)


@dataclass(frozen=True)
class _RoutingTable:
    """Immutable routing snapshot: tenant settings plus the engines created so far."""

    config: DataAccessConfig
    descriptors: Dict[str, ConnectionDescriptor]


def _install_sqlite_hooks(engine: AsyncEngine) -> None:
    """Let SQLAlchemy emit BEGIN itself so savepoints work, and enforce foreign keys."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


class ConnectionRouter:
    """Routes tenant identifiers to pooled connection descriptors.

    The router is constructed explicitly and passed to its consumers; there
    is no process-wide instance. Resolution is deterministic: two calls for
    the same tenant without a reload in between share the same engine and
    pool.

    Attributes:
        config: Active data-access configuration

    Example:
        >>> async with ConnectionRouter(config) as router:
        ...     descriptor = router.resolve(1)
        ...     print(descriptor.address)
        ...     print(await router.health_check())
    """

    def __init__(
        self,
        config: DataAccessConfig,
        engine_factory: Callable[..., AsyncEngine] = create_async_engine,
    ) -> None:
        self._engine_factory = engine_factory
        self._lock = threading.Lock()
        self._table = _RoutingTable(config=config, descriptors={})
        self.logger = StructuredLogger("tenantdb.router")

    @property
    def config(self) -> DataAccessConfig:
        return self._table.config

    def tenants(self) -> List[str]:
        return list(self._table.config.tenants)

    def is_known(self, tenant: Any) -> bool:
        return normalize_tenant_id(tenant) in self._table.config.tenants

    def resolve(self, tenant: Any) -> ConnectionDescriptor:
        """Resolve a tenant to its connection descriptor.

        Args:
            tenant: Tenant identifier (int or str)

        Returns:
            ConnectionDescriptor with the tenant's pooled engine

        Raises:
            TenantNotFoundError: If the tenant is not configured
            ValueError: If the identifier itself is invalid
            ConfigurationError: If no engine can be built for the tenant (e.g. the
                driver is not installed)
        """
        key = normalize_tenant_id(tenant)

        table = self._table
        descriptor = table.descriptors.get(key)
        if descriptor is not None:
            return descriptor

        with self._lock:
            # A reload may have swapped the table while we waited
            table = self._table
            descriptor = table.descriptors.get(key)
            if descriptor is not None:
                return descriptor

            settings = table.config.tenants.get(key)
            if settings is None:
                raise TenantNotFoundError(key)

            descriptor = self._create_descriptor(key, settings)
            table.descriptors[key] = descriptor
            return descriptor

    def _create_descriptor(
        self, key: str, settings: TenantDatabaseConfig
    ) -> ConnectionDescriptor:
        url = settings.sqlalchemy_url()
        engine_kwargs: Dict[str, Any] = {
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": settings.pool_size,
            "max_overflow": settings.max_overflow,
            "pool_timeout": settings.pool_timeout,
            "pool_pre_ping": settings.pool_pre_ping,
        }
        if url.drivername == "postgresql+asyncpg":
            engine_kwargs["connect_args"] = {
                "command_timeout": self._table.config.statement_timeout
            }

        try:
            engine = self._engine_factory(url, **engine_kwargs)
        except (sa_exc.ArgumentError, sa_exc.NoSuchModuleError, ImportError) as e:
            raise ConfigurationError(
                f"Cannot create engine for tenant {key!r} ({settings.address}): {e}"
            ) from e

        if url.get_backend_name() == "sqlite":
            _install_sqlite_hooks(engine)

        self.logger.info(
            "Tenant engine created",
            tenant=key,
            address=settings.address,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
            pool_pre_ping=settings.pool_pre_ping,
        )

        return ConnectionDescriptor(
            tenant=key,
            address=settings.address,
            user=url.username,
            password=settings.password,
            pool_size=settings.pool_size,
            max_connections=settings.max_connections,
            pool_timeout=settings.pool_timeout,
            url=url,
            engine=engine,
            settings=settings,
        )

    async def reload(self, config: DataAccessConfig) -> None:
        """Swap in a new configuration.

        The new routing snapshot replaces the old one in a single assignment.
        Descriptors of tenants whose settings did not change are kept; engines
        of removed or changed tenants are disposed after the swap. Scopes
        already holding a connection from a retired engine keep it until they
        finish.

        Args:
            config: New data-access configuration
        """
        with self._lock:
            old_table = self._table
            kept: Dict[str, ConnectionDescriptor] = {}
            retired: List[ConnectionDescriptor] = []

            for key, descriptor in old_table.descriptors.items():
                if config.tenants.get(key) == descriptor.settings:
                    kept[key] = descriptor
                else:
                    retired.append(descriptor)

            self._table = _RoutingTable(config=config, descriptors=kept)

        self.logger.info(
            "Routing configuration reloaded",
            tenants=len(config.tenants),
            kept=len(kept),
            retired=len(retired),
        )

        for descriptor in retired:
            await self._dispose_descriptor(descriptor)

    async def _dispose_descriptor(self, descriptor: ConnectionDescriptor) -> None:
        await descriptor.engine.dispose()
        self.logger.info(
            "Tenant engine disposed", tenant=descriptor.tenant, address=descriptor.address
        )

    async def health_check(self, tenants: Optional[Iterable[Any]] = None) -> Dict[str, Any]:
        """Check connectivity and pool statistics per tenant.

        Executes ``SELECT 1`` through each tenant's pool.

        Args:
            tenants: Tenants to check (default: every configured tenant)

        Returns:
            Dict keyed by tenant:
            {
                "<tenant>": {
                    "status": "healthy" | "unhealthy: <error>" | "unknown tenant",
                    "address": str,
                    "pool_size": int,
                    "checked_in": int,
                    "checked_out": int,
                    "latency_ms": float
                }
            }

        Note:
            Returns pool statistics even if the connection test fails.
        """
        keys = (
            [normalize_tenant_id(tenant) for tenant in tenants]
            if tenants is not None
            else self.tenants()
        )
        result: Dict[str, Any] = {}

        for key in keys:
            entry: Dict[str, Any] = {
                "status": "unknown",
                "address": None,
                "pool_size": 0,
                "checked_in": 0,
                "checked_out": 0,
                "latency_ms": None,
            }
            result[key] = entry

            try:
                descriptor = self.resolve(key)
            except TenantNotFoundError:
                entry["status"] = "unknown tenant"
                continue

            entry["address"] = descriptor.address
            start_time = time.time()
            try:
                async with descriptor.engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                entry["status"] = "healthy"
                entry["latency_ms"] = round((time.time() - start_time) * 1000, 3)
            except Exception as e:
                entry["status"] = f"unhealthy: {e}"
                self.logger.warning(
                    "Tenant health check failed",
                    tenant=key,
                    address=descriptor.address,
                    error=str(e),
                    error_type=type(e).__name__,
                )

            pool = descriptor.engine.pool
            entry["pool_size"] = pool.size()
            entry["checked_in"] = pool.checkedin()
            entry["checked_out"] = pool.checkedout()

        return result

    async def dispose(self) -> None:
        """Dispose every tenant engine.

        Safe to call multiple times. Tenants resolved afterwards get a fresh
        engine.
        """
        with self._lock:
            table = self._table
            descriptors = list(table.descriptors.values())
            self._table = _RoutingTable(config=table.config, descriptors={})

        for descriptor in descriptors:
            await self._dispose_descriptor(descriptor)

    async def __aenter__(self) -> "ConnectionRouter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.dispose()
