"""
Common Utilities
================

Shared helpers for turning replicated values into storable forms.
"""

import base64
import json
import math
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_jsonable(value: Any) -> Any:
    """
    Convert a source value into something json.dumps accepts.

    Datetimes become ISO strings, Decimals become strings (no precision loss),
    bytes become base64, NaN becomes None and numpy/pandas scalars are
    unwrapped through ``.item()``.

    Args:
        value: Value read from a source row or a Parquet artifact

    Returns:
        JSON-compatible value
    """
    if value is None:
        return None

    if isinstance(value, bool):
        return value

    if isinstance(value, float):
        return None if math.isnan(value) else value

    if isinstance(value, (int, str)):
        return value

    if isinstance(value, Decimal):
        return str(value)

    if isinstance(value, (datetime, date, time)):
        return value.isoformat()

    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")

    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]

    # pandas.Timestamp, numpy scalars
    if hasattr(value, "to_pydatetime"):
        return value.to_pydatetime().isoformat()
    if hasattr(value, "item"):
        return to_jsonable(value.item())

    return str(value)


def dumps_canonical(value: Any) -> str:
    """Serialize to compact JSON with sorted keys (stable across runs)."""
    return json.dumps(to_jsonable(value), sort_keys=True, separators=(",", ":"))


def canonical_key(values: Iterable[Any]) -> str:
    """
    Build the canonical string form of a primary key tuple.

    Args:
        values: Primary key values in declared column order

    Returns:
        Compact JSON array, e.g. '[1,"eu"]'
    """
    return dumps_canonical(list(values))


def clean_payload(row: Dict[str, Any], exclude: Iterable[str] = ()) -> Dict[str, Any]:
    """
    Drop synthetic columns from a row and make the rest JSON-compatible.

    Args:
        row: Row dict
        exclude: Column names to drop

    Returns:
        New dict with JSON-compatible values
    """
    skip = set(exclude)
    return {k: to_jsonable(v) for k, v in row.items() if k not in skip}


def batch_window(dt: Optional[datetime]) -> str:
    """
    Hourly partition value for artifact paths.

    Args:
        dt: Datetime to bucket (None buckets to 'unknown')

    Returns:
        'YYYYMMDDHH' string
    """
    if dt is None:
        return "unknown"
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y%m%d%H")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO timestamp string (as written by to_jsonable).

    Args:
        value: ISO string, datetime or None

    Returns:
        Parsed datetime or None
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None
