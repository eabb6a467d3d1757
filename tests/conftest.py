from pathlib import Path
from typing import Any, Dict, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncTransaction

from tenantdb.config import DataAccessConfig
from tenantdb.executor import QueryExecutor
from tenantdb.router import ConnectionRouter
from tenantdb.service import DataAccessService
from tenantdb.transaction import TransactionCoordinator

SCHEMA = (
    """
    CREATE TABLE customers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        customer_id INTEGER REFERENCES customers(id),
        number TEXT NOT NULL UNIQUE,
        total NUMERIC CHECK (total >= 0),
        paid INTEGER NOT NULL DEFAULT 0,
        placed_at TIMESTAMP,
        note TEXT,
        gift INTEGER
    )
    """,
    """
    CREATE TABLE audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id TEXT NOT NULL,
        actor TEXT,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        details TEXT NOT NULL,
        before_data TEXT,
        after_data TEXT,
        created_at TIMESTAMP NOT NULL
    )
    """,
)


def sqlite_tenant(path: Path, **overrides: Any) -> Dict[str, Any]:
    tenant = {
        "driver": "sqlite+aiosqlite",
        "database": str(path),
        "pool_size": 2,
        "max_connections": 3,
        "pool_timeout": 5,
    }
    tenant.update(overrides)
    return tenant


def make_config(tmp_path: Path, tenants: Optional[Dict[str, Dict[str, Any]]] = None, **settings: Any) -> DataAccessConfig:
    data_access = {"statement_timeout": 5, "max_page_size": 50}
    data_access.update(settings)
    return DataAccessConfig.from_mapping(
        {
            "data_access": data_access,
            "tenants": tenants
            or {
                "A": sqlite_tenant(tmp_path / "tenant_a.db"),
                "B": sqlite_tenant(tmp_path / "tenant_b.db"),
            },
        }
    )


async def create_schema(router: ConnectionRouter) -> None:
    for tenant in router.tenants():
        engine = router.resolve(tenant).engine
        async with engine.begin() as conn:
            for ddl in SCHEMA:
                await conn.exec_driver_sql(ddl)


async def count_rows(service: DataAccessService, tenant: str, table: str, conditions=None) -> int:
    return await service.read(
        tenant, lambda scope: service.executor.count_rows(scope, table, conditions)
    )


async def insert_customer(executor: QueryExecutor, scope, email: str, name: str = "Ada", tenant=None) -> int:
    return await executor.fetch_value(
        scope,
        "INSERT INTO customers (email, name) VALUES (:email, :name) RETURNING id",
        {"email": email, "name": name},
        int,
        tenant=tenant,
    )


def fail_commit_on(monkeypatch, connection, error: Exception) -> None:
    """Make the commit of the transaction running on ``connection`` raise ``error``."""
    original_commit = AsyncTransaction.commit

    async def _commit(self):
        if self.connection is connection:
            raise error
        return await original_commit(self)

    monkeypatch.setattr(AsyncTransaction, "commit", _commit)


@pytest.fixture
def config(tmp_path) -> DataAccessConfig:
    return make_config(tmp_path)


@pytest_asyncio.fixture
async def router(config):
    router = ConnectionRouter(config)
    await create_schema(router)
    yield router
    await router.dispose()


@pytest.fixture
def coordinator(router) -> TransactionCoordinator:
    return TransactionCoordinator(router)


@pytest.fixture
def executor() -> QueryExecutor:
    return QueryExecutor(statement_timeout=5, max_page_size=50)


@pytest_asyncio.fixture
async def service(router):
    service = DataAccessService(router)
    yield service
    await service.pipeline.drain()
