"""
Monitoring package: Prometheus metrics for conformance runs.
"""

from conformance.monitoring.metrics import HarnessMetrics

__all__ = ["HarnessMetrics"]
