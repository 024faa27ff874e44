"""
Scenario battery and verdict evaluation.
"""

from conformance.models import ExpectedOutcome
from conformance.scenarios.catalog import ScenarioCatalog, ScenarioEntry, default_catalog
from conformance.scenarios.evaluation import check_verdict, expected_error, setup_order_side

__all__ = [
    "ExpectedOutcome",
    "ScenarioCatalog",
    "ScenarioEntry",
    "default_catalog",
    "check_verdict",
    "expected_error",
    "setup_order_side",
]
