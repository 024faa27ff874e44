"""
Prometheus metrics for conformance runs.

Organized into: scenarios, orders, conformance findings.
Each harness gets a private registry so parallel runs (and tests) never
share counters. CI picks the numbers up from a textfile export.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile


class HarnessMetrics:
    """Metrics for one conformance run."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        reg = self.registry

        # === Scenario Metrics ===
        self.scenarios_total = Counter(
            'conformance_scenarios_total',
            'Scenarios executed, by verdict',
            labelnames=['venue', 'verdict'],
            registry=reg
        )
        self.scenario_failures = Counter(
            'conformance_scenario_failures_total',
            'Scenario failures, by failure kind',
            labelnames=['venue', 'kind'],
            registry=reg
        )
        self.scenario_duration_sec = Histogram(
            'conformance_scenario_duration_sec',
            'Wall time per scenario (seconds)',
            labelnames=['venue'],
            buckets=[0.1, 0.5, 1, 2, 5, 10, 20, 30, 60, 120],
            registry=reg
        )

        # === Order Metrics ===
        self.orders_submitted = Counter(
            'conformance_orders_submitted_total',
            'Orders submitted to the venue',
            labelnames=['venue', 'order_type', 'side'],
            registry=reg
        )
        self.orders_cancelled = Counter(
            'conformance_cancel_requests_total',
            'Cancel requests sent to the venue, by outcome',
            labelnames=['venue', 'outcome'],
            registry=reg
        )
        self.transitions_total = Counter(
            'conformance_transitions_total',
            'Order state transitions observed',
            labelnames=['venue', 'to_state'],
            registry=reg
        )
        self.ack_latency_ms = Histogram(
            'conformance_ack_latency_ms',
            'Time from submit to first venue event (milliseconds)',
            labelnames=['venue'],
            buckets=[5, 10, 20, 50, 100, 200, 500, 1000, 5000],
            registry=reg
        )

        # === Conformance Findings ===
        self.lifecycle_violations = Counter(
            'conformance_lifecycle_violations_total',
            'Illegal transitions or fill accounting errors reported by the venue',
            labelnames=['venue'],
            registry=reg
        )
        self.divergences = Counter(
            'conformance_divergences_total',
            'Ledger vs venue holdings divergences',
            labelnames=['venue'],
            registry=reg
        )
        self.in_flight_scenarios = Gauge(
            'conformance_in_flight_scenarios',
            'Scenarios currently running',
            labelnames=['venue'],
            registry=reg
        )

    def write_textfile(self, path: str) -> None:
        """Export the registry in Prometheus text format for CI collectors."""
        write_to_textfile(path, self.registry)
