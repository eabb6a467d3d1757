"""
Utility functions for tenant identifiers, SQL identifiers and retries.

This module provides helpers used throughout the package: tenant key
normalization, identifier validation, parameterized WHERE clause building,
timestamp parsing, and an opt-in retry decorator for callers.
"""

import asyncio
import functools
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from tenantdb.exceptions import DatabaseOperationError

# Configure logger
logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z0-9_]+$")


def normalize_tenant_id(tenant: Any) -> str:
    """
    Normalize a tenant identifier to its routing key.

    Integers and strings are accepted; ``1`` and ``" 1 "`` address the same
    tenant.

    Args:
        tenant: Tenant identifier (int or str)

    Returns:
        Non-empty, stripped string key

    Raises:
        ValueError: If tenant is None, a bool, blank, or of another type

    Example:
        >>> normalize_tenant_id(7)
        '7'
        >>> normalize_tenant_id(" acme ")
        'acme'
    """
    if tenant is None or isinstance(tenant, bool):
        raise ValueError(f"Invalid tenant identifier: {tenant!r}")

    if not isinstance(tenant, (int, str)):
        raise ValueError(
            f"Invalid tenant identifier: {tenant!r}. Expected int or str, got {type(tenant).__name__}"
        )

    key = str(tenant).strip()
    if not key:
        raise ValueError("Invalid tenant identifier: empty string")

    return key


def validate_identifier(name: str, kind: str = "table") -> str:
    """
    Validate a table or column name to prevent SQL injection.

    Only alphanumeric characters and underscores are allowed in each part;
    a single ``schema.table`` qualification is accepted for tables.

    Args:
        name: Identifier to validate
        kind: What the identifier names, used in the error message

    Returns:
        The validated identifier (unchanged if valid)

    Raises:
        ValueError: If the identifier is empty or contains forbidden characters

    Example:
        >>> validate_identifier("audit_log")
        'audit_log'
        >>> validate_identifier("public.orders")
        'public.orders'
        >>> validate_identifier("orders; DROP TABLE--")
        Traceback (most recent call last):
            ...
        ValueError: Invalid table name...
    """
    if not isinstance(name, str) or not name:
        raise ValueError(
            f"Invalid {kind} name: {name!r}. Names must contain only alphanumeric characters and underscores."
        )

    parts = name.split(".")
    if len(parts) > 2 or (len(parts) == 2 and kind != "table"):
        raise ValueError(f"Invalid {kind} name: '{name}'. Too many qualifiers.")

    for part in parts:
        if not _IDENTIFIER_RE.match(part):
            raise ValueError(
                f"Invalid {kind} name: '{name}'. Names must contain only alphanumeric characters and underscores."
            )

    return name


def build_where_clause(conditions: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """
    Build parameterized WHERE clause from dictionary of conditions.

    Column names are validated; values are always bound as parameters.
    ``None`` values become ``IS NULL`` checks.

    Args:
        conditions: Dictionary mapping column names to values

    Returns:
        Tuple of (where_clause_string, parameters_dict); the clause has no
        ``WHERE`` keyword and is empty when there are no conditions

    Example:
        >>> build_where_clause({"status": "open", "deleted_at": None})
        ("status = :status AND deleted_at IS NULL", {"status": "open"})
        >>> build_where_clause({})
        ("", {})
    """
    if not conditions:
        return ("", {})

    clauses = []
    params = {}

    for column, value in conditions.items():
        validate_identifier(column, kind="column")
        if value is None:
            clauses.append(f"{column} IS NULL")
        else:
            clauses.append(f"{column} = :{column}")
            params[column] = value

    return (" AND ".join(clauses), params)


def parse_timestamp(timestamp: str) -> datetime:
    """
    Parse an ISO 8601 timestamp string.

    A trailing ``Z`` is read as UTC. Naive timestamps stay naive.

    Args:
        timestamp: ISO format timestamp (e.g. "2026-01-15T14:00:00Z" or
            "2026-01-15 14:00:00.000000")

    Returns:
        Parsed datetime

    Raises:
        ValueError: If the text is not an ISO timestamp
    """
    if not isinstance(timestamp, str):
        raise ValueError(f"Invalid timestamp: {timestamp!r}. Expected ISO format string.")

    text = timestamp.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"

    return datetime.fromisoformat(text)


def retry_on_retryable(
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    backoff_factor: float = 2.0,
) -> Callable:
    """
    Decorator to retry an async operation on retryable database failures.

    Only :class:`DatabaseOperationError` instances whose classification is
    retryable (Timeout, ConnectivityFailure) are retried, with exponential
    backoff. Everything else propagates immediately. Use it only on
    idempotent operations: the data-access core never retries by itself.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 0.5)
        backoff_factor: Multiplier for delay between attempts (default: 2.0)

    Returns:
        Decorated coroutine function with retry logic

    Example:
        @retry_on_retryable(max_attempts=3)
        async def load_order(service, tenant, order_id):
            return await service.read(tenant, lambda scope: ...)
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except DatabaseOperationError as e:
                    if not e.retryable:
                        raise

                    if attempt == max_attempts:
                        logger.error(
                            f"Max retry attempts ({max_attempts}) exceeded",
                            extra={
                                "operation": func.__name__,
                                "attempts": attempt,
                                "kind": e.kind.value,
                            },
                        )
                        raise

                    logger.warning(
                        f"Retryable error on attempt {attempt}/{max_attempts}, retrying in {delay}s",
                        extra={
                            "operation": func.__name__,
                            "attempt": attempt,
                            "delay": delay,
                            "kind": e.kind.value,
                        },
                    )
                    await asyncio.sleep(delay)
                    delay *= backoff_factor

        return wrapper

    return decorator
