"""
ConformanceHarness: run a scenario catalog against one venue.

Suite flow:
    connect -> start event dispatcher -> holdings query check
      -> for each scenario (bounded by a semaphore):
           baseline -> optional setup leg -> build -> drive -> reconcile -> evaluate
      -> stop dispatcher -> disconnect

Failure handling is per scenario: every exception is caught at the scenario
boundary and recorded with its kind (``internal`` for non-harness errors),
except VenueConnectionError, which aborts the run; scenarios not yet started
are reported as aborted. Entries whose price policy cannot price their order
type fail before anything reaches the venue.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from conformance.config.config import Settings
from conformance.config.venue_profile import VenueProfile
from conformance.core.json_utils import dumps
from conformance.errors import (
    HarnessError,
    OrderBuildError,
    ScenarioCrashed,
    SubmissionError,
    VenueConnectionError,
)
from conformance.execution.event_dispatcher import EventDispatcher
from conformance.execution.lifecycle_driver import DriverConfig, OrderLifecycleDriver, Verdict
from conformance.execution.order_builder import OrderParameterBuilder
from conformance.execution.order_state_machine import OrderStateRecord
from conformance.execution.reconciliation import ReconciliationChecker, ReconciliationConfig
from conformance.execution.venue_gateway import VenueGateway, VenueGatewayConfig
from conformance.market.price_oracle import PriceOracle, PriceOracleConfig
from conformance.models import Connection, ExpectedOutcome, Instrument, OrderType
from conformance.monitoring.metrics import HarnessMetrics
from conformance.report import ABORTED, FAIL, PASS, ScenarioResult, SuiteReport
from conformance.scenarios.catalog import ScenarioCatalog, ScenarioEntry
from conformance.scenarios.evaluation import check_verdict, expected_error, setup_order_side
from conformance.venue.adapter import VenueAdapter

log = logging.getLogger("conformance")


@dataclass
class HarnessConfig:
    """Configuration for ConformanceHarness."""
    concurrency: int = 1
    command_timeout_sec: float = 10.0
    cancel_confirm_timeout_sec: float = 10.0
    holdings_settle_timeout_sec: float = 10.0
    holdings_poll_interval_sec: float = 0.5
    check_cancel_idempotence: bool = True
    idempotence_settle_sec: float = 0.25
    setup_deadline_sec: float = 15.0
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "HarnessConfig":
        return cls(
            concurrency=settings.concurrency,
            command_timeout_sec=settings.command_timeout_sec,
            cancel_confirm_timeout_sec=settings.cancel_confirm_timeout_sec,
            holdings_settle_timeout_sec=settings.holdings_settle_timeout_sec,
            holdings_poll_interval_sec=settings.holdings_poll_interval_sec,
            check_cancel_idempotence=settings.check_cancel_idempotence,
            setup_deadline_sec=settings.market_deadline_sec,
        )


class ConformanceHarness:
    """
    Runs scenarios against a venue and produces a SuiteReport.

    Usage:
        harness = ConformanceHarness(venue, profile, HarnessConfig(concurrency=1))
        report = await harness.run(default_catalog(profile))
        report.write("reports/conformance.json")
    """

    def __init__(
        self,
        venue: VenueAdapter,
        profile: VenueProfile,
        config: Optional[HarnessConfig] = None,
        metrics: Optional[HarnessMetrics] = None,
        credentials: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.venue = venue
        self.profile = profile
        self.config = config or HarnessConfig()
        self.metrics = metrics or HarnessMetrics()
        self.credentials: Mapping[str, Any] = credentials or {}
        self._log_event = self.config.log_event_callback or self._default_log

        self.gateway = VenueGateway(
            venue,
            metrics=self.metrics,
            config=VenueGatewayConfig(command_timeout_sec=self.config.command_timeout_sec),
        )
        self.oracle = PriceOracle(
            venue,
            PriceOracleConfig(
                max_age_sec=profile.quote_max_age_sec,
                query_timeout_sec=self.config.command_timeout_sec,
            ),
        )
        self.builder = OrderParameterBuilder.from_profile(self.oracle, profile)
        self.checker = ReconciliationChecker(
            self.gateway,
            metrics=self.metrics,
            config=ReconciliationConfig(
                settle_timeout_sec=self.config.holdings_settle_timeout_sec,
                poll_interval_sec=self.config.holdings_poll_interval_sec,
                quantity_precision=profile.quantity_precision,
            ),
        )
        self.concurrency = self._effective_concurrency()

        self.dispatcher: Optional[EventDispatcher] = None
        self.driver: Optional[OrderLifecycleDriver] = None
        self._abort: Optional[HarnessError] = None

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    def _effective_concurrency(self) -> int:
        requested = self.config.concurrency
        if requested > 1 and not self.venue.supports_concurrent_orders:
            log.warning(dumps({
                "event": "concurrency_clamped",
                "venue": self.venue.name,
                "requested": requested,
                "effective": 1,
                "reason": "venue does not declare supports_concurrent_orders",
            }))
            return 1
        return max(1, requested)

    def _on_fill(self, record: OrderStateRecord, quantity: Decimal, price: Decimal) -> None:
        self.checker.record_fill(record.order_id, record.spec.instrument, record.spec.side, quantity, price)

    # ------------------------------------------------------------------
    # Suite
    # ------------------------------------------------------------------

    async def run(self, catalog: ScenarioCatalog) -> SuiteReport:
        report = SuiteReport(venue=self.venue.name, profile=self.profile.name)
        self._abort = None
        self._log_event(
            "suite_started",
            venue=self.venue.name,
            profile=self.profile.name,
            scenarios=len(catalog),
            concurrency=self.concurrency,
        )

        try:
            connection = await self.venue.connect(self.credentials)
        except Exception as exc:
            error = exc if isinstance(exc, VenueConnectionError) else VenueConnectionError(
                f"connect failed: {exc}",
                command="connect",
                venue=self.venue.name,
                error_type=type(exc).__name__,
            )
            self._abort_run(report, error)
            for entry in catalog:
                report.add(self._aborted_result(entry))
            report.finish()
            return report

        self.dispatcher = EventDispatcher(self.venue.order_events())
        self.dispatcher.start()
        self.driver = OrderLifecycleDriver(
            self.gateway,
            self.dispatcher,
            metrics=self.metrics,
            config=DriverConfig(
                cancel_confirm_timeout_sec=self.config.cancel_confirm_timeout_sec,
                check_cancel_idempotence=self.config.check_cancel_idempotence,
                idempotence_settle_sec=self.config.idempotence_settle_sec,
            ),
            on_fill=self._on_fill,
        )

        try:
            await self._run_catalog(catalog, report)
        finally:
            await self._shutdown(connection)
            report.finish()

        self._log_event(
            "suite_finished",
            venue=self.venue.name,
            passed=report.count(PASS),
            failed=report.count(FAIL),
            aborted=report.count(ABORTED),
            ok=report.ok,
        )
        return report

    async def _run_catalog(self, catalog: ScenarioCatalog, report: SuiteReport) -> None:
        entries = list(catalog)
        results: Dict[str, ScenarioResult] = {}

        # Misconfigured entries fail here, before anything reaches the venue
        runnable: List[ScenarioEntry] = []
        for entry in entries:
            problem = self._check_entry(entry)
            if problem is None:
                runnable.append(entry)
            else:
                results[entry.label] = self._failed_result(entry, problem)

        try:
            report.holdings_check = await self._holdings_check(self.profile.instrument)
            if self.concurrency > 1:
                for instrument in {e.instrument for e in runnable}:
                    await self.checker.snapshot_baseline(instrument)
        except VenueConnectionError as exc:
            self._abort_run(report, exc)
            for entry in runnable:
                results[entry.label] = self._aborted_result(entry)
            runnable = []
        except HarnessError as exc:
            # Without a baseline no scenario can be reconciled
            for entry in runnable:
                results[entry.label] = self._failed_result(entry, exc)
            runnable = []

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(entry: ScenarioEntry) -> None:
            async with semaphore:
                if self._abort is not None:
                    results[entry.label] = self._aborted_result(entry)
                    return
                try:
                    results[entry.label] = await self.run_scenario(entry)
                except _ScenarioAborted as stop:
                    results[entry.label] = stop.result
                    if self._abort is None:
                        self._abort_run(report, stop.error, scenario=entry.label)

        await asyncio.gather(*(run_one(e) for e in runnable))
        for entry in entries:
            report.add(results[entry.label])

    def _check_entry(self, entry: ScenarioEntry) -> Optional[HarnessError]:
        try:
            self.builder.resolve_policy(entry.price_policy, entry.order_type)
        except OrderBuildError as exc:
            exc.details.setdefault("phase", "catalog")
            return exc
        return None

    async def _holdings_check(self, instrument: Instrument) -> Dict[str, Any]:
        try:
            return await self.verify_holdings_query(instrument)
        except VenueConnectionError:
            raise
        except HarnessError as exc:
            log.warning(dumps({"event": "holdings_query_failed", **exc.to_dict()}))
            return {
                "ok": False,
                "symbol": instrument.symbol,
                "quantity": None,
                "positions": None,
                "problems": [exc.message],
            }

    async def _shutdown(self, connection: Connection) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.stop()
        try:
            await self.venue.disconnect(connection)
        except Exception as exc:
            log.error(dumps({"event": "venue_disconnect_failed", "error": str(exc)}))

    def _abort_run(self, report: SuiteReport, error: HarnessError, scenario: Optional[str] = None) -> None:
        self._abort = error
        report.aborted_reason = error.to_dict()
        log.error(dumps({"event": "suite_aborted", "scenario": scenario, **error.to_dict()}))

    def _aborted_result(self, entry: ScenarioEntry) -> ScenarioResult:
        self.metrics.scenarios_total.labels(venue=self.venue.name, verdict=ABORTED).inc()
        return ScenarioResult(
            label=entry.label,
            verdict=ABORTED,
            expected_outcome=entry.expected_outcome.name,
            failure_kind="connection",
            error=self._abort.to_dict() if self._abort else None,
        )

    def _failed_result(self, entry: ScenarioEntry, error: HarnessError) -> ScenarioResult:
        """Result for a scenario that failed without being run."""
        result = ScenarioResult(label=entry.label, verdict=FAIL, expected_outcome=entry.expected_outcome.name)
        self._record_failure(result, error)
        self.metrics.scenarios_total.labels(venue=self.venue.name, verdict=FAIL).inc()
        return result

    async def verify_holdings_query(self, instrument: Instrument) -> Dict[str, Any]:
        """
        Query holdings once and check the snapshot is well formed.

        Raises:
            VenueConnectionError / CommandTimeout: the query itself failed
        """
        snapshot = await self.gateway.holdings(instrument)
        problems: List[str] = []
        if not isinstance(snapshot.positions, Mapping):
            problems.append(f"positions is {type(snapshot.positions).__name__}, not a mapping")
            quantity = None
        else:
            for symbol, qty in snapshot.positions.items():
                if not isinstance(qty, Decimal) or not qty.is_finite():
                    problems.append(f"{symbol}: quantity {qty!r} is not a finite Decimal")
            quantity = snapshot.positions.get(instrument.symbol, Decimal("0"))
        result = {
            "ok": not problems,
            "symbol": instrument.symbol,
            "quantity": quantity,
            "positions": len(snapshot.positions) if isinstance(snapshot.positions, Mapping) else None,
            "problems": problems,
        }
        if problems:
            log.warning(dumps({"event": "holdings_query_malformed", **result}))
        else:
            self._log_event("holdings_query_ok", symbol=instrument.symbol, quantity=quantity)
        return result

    # ------------------------------------------------------------------
    # Scenario
    # ------------------------------------------------------------------

    async def run_scenario(self, entry: ScenarioEntry) -> ScenarioResult:
        """
        Run one scenario and return its result.

        Any exception other than a lost connection is recorded on the
        result; non-harness exceptions are recorded with kind ``internal``.

        Raises:
            _ScenarioAborted: the venue connection was lost
        """
        venue = self.venue.name
        result = ScenarioResult(label=entry.label, verdict=FAIL, expected_outcome=entry.expected_outcome.name)
        started = time.monotonic()
        self.metrics.in_flight_scenarios.labels(venue=venue).inc()
        self._log_event("scenario_started", **entry.describe())

        try:
            if self.concurrency == 1:
                await self.checker.snapshot_baseline(entry.instrument)
            if entry.setup_position is not None:
                await self._run_setup_leg(entry, result)
            await self._run_scenario_order(entry, result)
        except VenueConnectionError as exc:
            self._record_failure(result, exc)
            raise _ScenarioAborted(result, exc) from exc
        except HarnessError as exc:
            self._record_failure(result, exc)
        except Exception as exc:
            log.exception(dumps({"event": "scenario_crashed", "label": entry.label}))
            self._record_failure(result, ScenarioCrashed(exc, label=entry.label))
        finally:
            result.duration_sec = time.monotonic() - started
            self.metrics.in_flight_scenarios.labels(venue=venue).dec()
            self.metrics.scenarios_total.labels(venue=venue, verdict=result.verdict).inc()
            self.metrics.scenario_duration_sec.labels(venue=venue).observe(result.duration_sec)
            self._log_event(
                "scenario_finished",
                label=entry.label,
                verdict=result.verdict,
                failure_kind=result.failure_kind,
                duration_sec=round(result.duration_sec, 3),
            )
        return result

    async def _run_scenario_order(self, entry: ScenarioEntry, result: ScenarioResult) -> None:
        try:
            built = await self.builder.build(
                entry.instrument,
                entry.order_type,
                entry.price_policy,
                entry.side,
                entry.quantity,
            )
            result.built = built.to_dict()
            verdict = await self.driver.execute(built.spec, entry.expected_outcome, entry.deadline_sec)
        except (OrderBuildError, SubmissionError) as exc:
            if not expected_error(entry, exc):
                raise
            result.verdict = PASS
            result.error = exc.to_dict()
            self._log_event("scenario_expected_error", label=entry.label, error=type(exc).__name__)
            return
        except HarnessError as exc:
            if exc.verdict is not None:
                result.order = exc.verdict.to_dict()
                if not isinstance(exc, VenueConnectionError):
                    result.reconciliation = await self._reconcile_failed_order(exc.verdict, entry.instrument)
            raise

        result.order = verdict.to_dict()
        reconcile = await self.checker.check(verdict.order_id, instrument=entry.instrument)
        result.reconciliation = reconcile.to_dict()
        check_verdict(entry, verdict, built.quote, self.profile.fill_price_tolerance)
        if not reconcile.matched:
            raise reconcile.to_error()
        result.verdict = PASS

    async def _reconcile_failed_order(self, verdict: Verdict, instrument: Instrument) -> Optional[Dict[str, Any]]:
        """
        Reconcile holdings for an order whose lifecycle failed. The lifecycle
        error stays the scenario's failure; a divergence is only reported.
        """
        try:
            reconcile = await self.checker.check(verdict.order_id, instrument=instrument)
        except VenueConnectionError:
            raise
        except HarnessError as exc:
            log.warning(dumps({"event": "reconcile_skipped", "order_id": verdict.order_id, **exc.to_dict()}))
            return None
        return reconcile.to_dict()

    async def _run_setup_leg(self, entry: ScenarioEntry, result: ScenarioResult) -> None:
        """Market order moving the account by ``entry.setup_position``; trace goes to ``result.setup``."""
        setup = replace(
            entry,
            label=f"{entry.label}/setup",
            order_type=OrderType.MARKET,
            price_policy="market",
            side=setup_order_side(entry.setup_position),
            quantity=abs(entry.setup_position),
            expected_outcome=ExpectedOutcome.FILLED,
            deadline_sec=self.config.setup_deadline_sec,
            setup_position=None,
        )
        try:
            built = await self.builder.build(setup.instrument, setup.order_type, setup.price_policy, setup.side, setup.quantity)
            verdict = await self.driver.execute(built.spec, setup.expected_outcome, setup.deadline_sec)
            result.setup = verdict.to_dict()
            check_verdict(setup, verdict, built.quote, self.profile.fill_price_tolerance)
            reconcile = await self.checker.check(verdict.order_id, instrument=setup.instrument)
            if not reconcile.matched:
                raise reconcile.to_error()
        except HarnessError as exc:
            exc.details.setdefault("phase", "setup")
            if exc.verdict is not None:
                result.setup = exc.verdict.to_dict()
            raise
        self._log_event("setup_leg_done", label=entry.label, order_id=verdict.order_id, position=entry.setup_position)

    def _record_failure(self, result: ScenarioResult, exc: HarnessError) -> None:
        result.verdict = FAIL
        result.failure_kind = exc.kind
        result.error = exc.to_dict()
        self.metrics.scenario_failures.labels(venue=self.venue.name, kind=exc.kind).inc()
        log.warning(dumps({"event": "scenario_failed", "label": result.label, **exc.to_dict()}))


class _ScenarioAborted(Exception):
    """Carries the partial result of the scenario that lost the connection."""

    def __init__(self, result: ScenarioResult, error: HarnessError) -> None:
        super().__init__(error.message)
        self.result = result
        self.error = error
