"""
Fast JSON utilities for structured logs and reports.

Uses orjson (3-10x faster than stdlib json). Decimal values are encoded
as strings so prices and quantities keep their exact venue precision.

Usage:
    from conformance.core.json_utils import dumps, loads

    log.info(dumps({"event": "order_submit_ack", "px": Decimal("1.5")}))
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

import orjson

_OPTIONS = orjson.OPT_NON_STR_KEYS


def _default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.name
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj, default=_default, option=_OPTIONS).decode("utf-8")


def dumps_bytes(obj: Any, indent: bool = False) -> bytes:
    """Fast JSON encode to bytes."""
    option = _OPTIONS | orjson.OPT_INDENT_2 if indent else _OPTIONS
    return orjson.dumps(obj, default=_default, option=option)


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
