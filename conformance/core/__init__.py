"""
Core utilities package.

JSON encoding and small time helpers shared by every component.
"""

from conformance.core.json_utils import dumps, dumps_bytes, loads
from conformance.core.utils import now_ms, BoundedSet, to_decimal

__all__ = [
    "dumps",
    "dumps_bytes",
    "loads",
    "now_ms",
    "BoundedSet",
    "to_decimal",
]
