"""
Tenant database configuration using Pydantic v2.

This module provides configuration management for the per-tenant database
connections and the data-access settings, loaded from a mapping, a YAML
file, or a YAML file plus environment variable overrides.

Example YAML:
    data_access:
      statement_timeout: 30
      max_page_size: 1000
      fire_and_forget_hooks: false
      audit_table: audit_log
    tenants:
      1:
        host: db-eu.internal
        database: tenant_1
        user: app
        password: secret
        pool_size: 5
        max_connections: 15
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy.engine import URL, make_url

from tenantdb.utils import normalize_tenant_id, validate_identifier


DEFAULT_CONFIG_PATH = "config/tenants.yaml"

_TRUE_VALUES = ("true", "1", "yes")


class TenantDatabaseConfig(BaseModel):
    """Connection settings for a single tenant database.

    A tenant is configured either with a full SQLAlchemy ``url`` or with the
    discrete ``host``/``port``/``database``/``user``/``password`` fields.
    SQLite drivers only need ``database`` (the file path).

    Attributes:
        host: Database host address
        port: Database port (default: 5432)
        database: Database name (file path for SQLite)
        user: Database user
        password: Database password
        driver: SQLAlchemy async dialect+driver (default: postgresql+asyncpg)
        url: Full SQLAlchemy URL, alternative to the discrete fields
        pool_size: Connections kept in the pool (default: 5)
        max_connections: Upper bound of open connections (default: 15)
        pool_timeout: Seconds to wait for a free connection (default: 30)
        pool_pre_ping: Test connections on checkout (default: True)
    """

    model_config = ConfigDict(frozen=True)

    host: Optional[str] = Field(default=None, description="Database host")
    port: int = Field(default=5432, ge=1, le=65535, description="Database port")
    database: Optional[str] = Field(default=None, description="Database name")
    user: Optional[str] = Field(default=None, description="Database user")
    password: str = Field(default="", repr=False, description="Database password")
    driver: str = Field(default="postgresql+asyncpg", description="Dialect and driver")
    url: Optional[str] = Field(default=None, repr=False, description="Full SQLAlchemy URL")
    pool_size: int = Field(default=5, gt=0, description="Connection pool size")
    max_connections: int = Field(default=15, gt=0, description="Max open connections")
    pool_timeout: float = Field(default=30.0, gt=0, description="Pool checkout timeout")
    pool_pre_ping: bool = Field(default=True, description="Ping connections on checkout")

    @model_validator(mode="after")
    def validate_target(self) -> "TenantDatabaseConfig":
        """Ensure the tenant has a reachable target and a coherent pool."""
        if self.max_connections < self.pool_size:
            raise ValueError(
                f"max_connections ({self.max_connections}) must be greater than "
                f"or equal to pool_size ({self.pool_size})"
            )

        if self.url is not None:
            make_url(self.url)
            return self

        if self.driver.startswith("sqlite"):
            if not self.database:
                raise ValueError("SQLite tenants require 'database' (file path or ':memory:')")
            return self

        missing = [name for name in ("host", "database", "user") if not getattr(self, name)]
        if missing:
            raise ValueError(
                f"Either 'url' or {', '.join(repr(m) for m in missing)} must be provided"
            )
        return self

    @property
    def max_overflow(self) -> int:
        return self.max_connections - self.pool_size

    @property
    def is_sqlite(self) -> bool:
        return self.sqlalchemy_url().get_backend_name() == "sqlite"

    def sqlalchemy_url(self) -> URL:
        """Build the SQLAlchemy URL for this tenant.

        Returns:
            URL object (the password is only rendered when explicitly asked)
        """
        if self.url is not None:
            return make_url(self.url)

        if self.driver.startswith("sqlite"):
            return URL.create(self.driver, database=self.database)

        return URL.create(
            self.driver,
            username=self.user,
            password=self.password or None,
            host=self.host,
            port=self.port,
            database=self.database,
        )

    @property
    def address(self) -> str:
        """Loggable location of the database, never containing the password."""
        if self.url is not None:
            return make_url(self.url).render_as_string(hide_password=True)
        if self.driver.startswith("sqlite"):
            return f"{self.driver}:///{self.database}"
        return f"{self.host}:{self.port}/{self.database}"


class DataAccessConfig(BaseModel):
    """Root configuration of the data-access layer.

    Attributes:
        tenants: Tenant databases keyed by normalized tenant identifier
        statement_timeout: Default per-call timeout in seconds
        max_page_size: Largest page size accepted by paged reads
        fire_and_forget_hooks: Run post-commit hooks in the background
        audit_table: Table written by the database audit sink
    """

    tenants: Dict[str, TenantDatabaseConfig]
    statement_timeout: float = Field(default=30.0, gt=0)
    max_page_size: int = Field(default=1000, gt=0)
    fire_and_forget_hooks: bool = False
    audit_table: str = "audit_log"

    @field_validator("tenants", mode="before")
    @classmethod
    def normalize_tenant_keys(cls, v: Any) -> Any:
        """Normalize tenant keys so that 1 and "1" address the same tenant."""
        if not isinstance(v, Mapping):
            return v

        normalized: Dict[str, Any] = {}
        for key, tenant_data in v.items():
            tenant_key = normalize_tenant_id(key)
            if tenant_key in normalized:
                raise ValueError(f"Tenant {tenant_key!r} is configured more than once")
            normalized[tenant_key] = tenant_data
        return normalized

    @field_validator("tenants")
    @classmethod
    def validate_at_least_one_tenant(
        cls, v: Dict[str, TenantDatabaseConfig]
    ) -> Dict[str, TenantDatabaseConfig]:
        """Ensure at least one tenant is configured."""
        if not v:
            raise ValueError("Configuration must have at least one tenant")
        return v

    @field_validator("audit_table")
    @classmethod
    def validate_audit_table(cls, v: str) -> str:
        return validate_identifier(v, kind="table")

    def get_tenant(self, tenant: Any) -> Optional[TenantDatabaseConfig]:
        """Return the tenant's settings, or None when it is not configured."""
        return self.tenants.get(normalize_tenant_id(tenant))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DataAccessConfig":
        """Build configuration from the YAML document structure.

        Args:
            data: Mapping with a ``tenants`` section and an optional
                ``data_access`` section

        Returns:
            DataAccessConfig instance

        Raises:
            ValidationError: If the configuration is invalid
        """
        data = data or {}
        data_access_section = data.get("data_access") or {}
        tenants_section = data.get("tenants") or {}

        tenants = {
            key: TenantDatabaseConfig(**(tenant_data or {}))
            for key, tenant_data in tenants_section.items()
        }

        return cls(tenants=tenants, **data_access_section)

    @classmethod
    def from_yaml(cls, path: str) -> "DataAccessConfig":
        """Load configuration from a YAML file.

        Args:
            path: Path to the YAML configuration file

        Returns:
            DataAccessConfig instance

        Raises:
            FileNotFoundError: If the file does not exist
            yaml.YAMLError: If the YAML is invalid
            ValidationError: If the configuration is invalid
        """
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(file_path, "r") as f:
            data = yaml.safe_load(f)

        return cls.from_mapping(data or {})

    @classmethod
    def from_env(cls) -> "DataAccessConfig":
        """Load configuration from environment variables.

        First loads from YAML file (specified by TENANTDB_CONFIG_PATH or
        default), then applies environment variable overrides.

        Environment variables:
            TENANTDB_CONFIG_PATH: Path to YAML config (default: config/tenants.yaml)
            TENANTDB_STATEMENT_TIMEOUT: Override default statement timeout
            TENANTDB_MAX_PAGE_SIZE: Override maximum page size
            TENANTDB_FIRE_AND_FORGET_HOOKS: Override hook scheduling mode
            TENANTDB_TENANT_{ID}_HOST / _PORT / _PASSWORD / _POOL_SIZE /
            _MAX_CONNECTIONS: Override a tenant's connection settings

        Returns:
            DataAccessConfig instance

        Raises:
            FileNotFoundError: If the config file does not exist
        """
        config_path = os.getenv("TENANTDB_CONFIG_PATH", DEFAULT_CONFIG_PATH)

        # Load base config from YAML
        config = cls.from_yaml(config_path)

        updates: Dict[str, Any] = {}
        if os.getenv("TENANTDB_STATEMENT_TIMEOUT"):
            updates["statement_timeout"] = float(os.getenv("TENANTDB_STATEMENT_TIMEOUT", "30"))
        if os.getenv("TENANTDB_MAX_PAGE_SIZE"):
            updates["max_page_size"] = int(os.getenv("TENANTDB_MAX_PAGE_SIZE", "1000"))
        if os.getenv("TENANTDB_FIRE_AND_FORGET_HOOKS"):
            flag = os.getenv("TENANTDB_FIRE_AND_FORGET_HOOKS", "").lower()
            updates["fire_and_forget_hooks"] = flag in _TRUE_VALUES

        # Apply tenant-specific overrides
        tenants = dict(config.tenants)
        for tenant_key, tenant_config in tenants.items():
            prefix = f"TENANTDB_TENANT_{_env_token(tenant_key)}_"
            tenant_updates: Dict[str, Any] = {}

            if os.getenv(prefix + "HOST"):
                tenant_updates["host"] = os.getenv(prefix + "HOST")
            if os.getenv(prefix + "PORT"):
                tenant_updates["port"] = int(os.getenv(prefix + "PORT", "5432"))
            if os.getenv(prefix + "PASSWORD"):
                tenant_updates["password"] = os.getenv(prefix + "PASSWORD")
            if os.getenv(prefix + "POOL_SIZE"):
                tenant_updates["pool_size"] = int(os.getenv(prefix + "POOL_SIZE", "5"))
            if os.getenv(prefix + "MAX_CONNECTIONS"):
                tenant_updates["max_connections"] = int(
                    os.getenv(prefix + "MAX_CONNECTIONS", "15")
                )

            if tenant_updates:
                # Re-validate so pool bounds are checked after the override
                tenants[tenant_key] = TenantDatabaseConfig(
                    **{**tenant_config.model_dump(), **tenant_updates}
                )

        updates["tenants"] = tenants
        return cls(**{**config.model_dump(exclude={"tenants"}), **updates})

    def to_yaml(self, path: str) -> None:
        """Export configuration to a YAML file.

        Args:
            path: Path to write the YAML file
        """
        data = {
            "data_access": {
                "statement_timeout": self.statement_timeout,
                "max_page_size": self.max_page_size,
                "fire_and_forget_hooks": self.fire_and_forget_hooks,
                "audit_table": self.audit_table,
            },
            "tenants": {
                key: tenant.model_dump(exclude_none=True)
                for key, tenant in self.tenants.items()
            },
        }

        file_path = Path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def _env_token(tenant_key: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", tenant_key).upper()
