"""
Typed, null-safe access to result rows.

``ResultRow`` is a read-only view over one row of a result set. Values are
addressed by column name and extracted with an explicit target type; a null
or absent column is only replaced when the caller supplies a default, and
conversions that would lose information raise instead of truncating.

Example:
    >>> row = ResultRow({"id": 7, "total": Decimal("12.34"), "shipped_at": None})
    >>> row.get("id", int)
    7
    >>> row.get("shipped_at", datetime, default=None) is None
    True
    >>> row.get("shipped_at", datetime)
    Traceback (most recent call last):
        ...
    MissingValueError: Column 'shipped_at' is absent or null
"""

import math
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, Mapping, Type, TypeVar
from uuid import UUID

from tenantdb.exceptions import MissingValueError, TypeMismatchError
from tenantdb.utils import parse_timestamp

T = TypeVar("T")


class _Missing:
    """Sentinel type for "no default supplied"."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        if value.is_finite() and value == value.to_integral_value():
            return int(value)
        raise TypeError
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
        raise TypeError
    raise TypeError


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError
    if isinstance(value, float):
        return value
    if isinstance(value, int):
        try:
            converted = float(value)
        except OverflowError:
            raise TypeError from None
        if int(converted) != value:
            raise TypeError
        return converted
    if isinstance(value, Decimal):
        if value.is_nan():
            raise TypeError
        converted = float(value)
        # Shortest repr must name the same number, so 12.34 passes and 20 digits do not
        if Decimal(repr(converted)) != value:
            raise TypeError
        return converted
    raise TypeError


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise TypeError
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        # Through str so that 12.34 stays 12.34 instead of its binary expansion
        return Decimal(str(value))
    raise TypeError


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise TypeError


def _to_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    raise TypeError


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return parse_timestamp(value)
        except ValueError:
            raise TypeError from None
    raise TypeError


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        raise TypeError
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            raise TypeError from None
    raise TypeError


def _to_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        try:
            return time.fromisoformat(value.strip())
        except ValueError:
            raise TypeError from None
    raise TypeError


def _to_uuid(value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    if isinstance(value, str):
        try:
            return UUID(value)
        except ValueError:
            raise TypeError from None
    raise TypeError


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    raise TypeError


_CONVERTERS: Dict[type, Callable[[Any], Any]] = {
    int: _to_int,
    float: _to_float,
    Decimal: _to_decimal,
    bool: _to_bool,
    str: _to_str,
    datetime: _to_datetime,
    date: _to_date,
    time: _to_time,
    UUID: _to_uuid,
    bytes: _to_bytes,
}


class ResultRow(Mapping[str, Any]):
    """Read-only, typed view over a single result row.

    Args:
        values: Column name → raw value mapping

    Attributes:
        columns: Column names in result order
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any]):
        self._values: Dict[str, Any] = dict(values)

    @classmethod
    def from_row(cls, row: Any) -> "ResultRow":
        """Build a ResultRow from a SQLAlchemy ``Row`` (or any object with ``_mapping``)."""
        mapping = getattr(row, "_mapping", row)
        return cls(mapping)

    @property
    def columns(self) -> list:
        return list(self._values)

    def has_column(self, column: str) -> bool:
        return column in self._values

    def is_null(self, column: str) -> bool:
        """True when the column is absent or holds null."""
        return self._values.get(column) is None

    def get(self, column: str, type_: Type[T] = object, default: Any = MISSING) -> T:  # type: ignore[override]
        """Extract a column value as ``type_``.

        Args:
            column: Column name
            type_: Target type (int, float, Decimal, bool, str, datetime, date,
                time, UUID, bytes, object or any other class)
            default: Returned when the column is absent or null. Pass
                ``default=None`` for a nullable read.

        Returns:
            The converted value, or ``default``

        Raises:
            MissingValueError: If the column is absent or null and no default
                was supplied
            TypeMismatchError: If the stored value cannot be converted to
                ``type_`` without loss
        """
        value = self._values.get(column)

        if value is None:
            if default is MISSING:
                raise MissingValueError(column)
            return default

        if type_ is object or type_ is Any:
            return value

        converter = _CONVERTERS.get(type_)
        if converter is None:
            if isinstance(value, type_):
                return value
            raise TypeMismatchError(column, type_, value)

        try:
            return converter(value)
        except TypeError:
            raise TypeMismatchError(column, type_, value) from None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._values)

    def __getitem__(self, column: str) -> Any:
        return self._values[column]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ResultRow({self._values!r})"
