"""
Reconciliation: compare locally derived holdings with what the venue reports.

LocalLedger holds the expected position per symbol, built only from
  - a baseline taken from the venue before scenarios run
  - fill events actually observed for orders under test
Nothing is inferred from requests: an order that was submitted but never
reported a fill leaves the ledger unchanged.

ReconciliationChecker queries the venue after each scenario and polls until
venue holdings agree with the ledger or the settle deadline passes, since
venues commonly update holdings some time after the fill event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from conformance.core.json_utils import dumps
from conformance.core.utils import now_ms
from conformance.errors import Divergence
from conformance.execution.venue_gateway import VenueGateway
from conformance.models import Instrument, Side
from conformance.monitoring.metrics import HarnessMetrics

log = logging.getLogger("conformance")

_ZERO = Decimal("0")


@dataclass(frozen=True)
class LedgerFill:
    """One observed fill."""
    order_id: str
    symbol: str
    signed_qty: Decimal
    price: Decimal
    timestamp_ms: int


class LocalLedger:
    """
    Expected holdings derived from observed fills.

    Position per symbol = baseline + sum of signed fill quantities.
    """

    def __init__(self) -> None:
        self._baseline: Dict[str, Decimal] = {}
        self._positions: Dict[str, Decimal] = {}
        self._fills: List[LedgerFill] = []
        self._order_instruments: Dict[str, Instrument] = {}

    def seed(self, symbol: str, quantity: Decimal) -> None:
        """Set the baseline for ``symbol``, discarding fill-derived changes."""
        self._baseline[symbol] = quantity
        self._positions[symbol] = quantity

    def is_seeded(self, symbol: str) -> bool:
        return symbol in self._baseline

    def apply_fill(self, order_id: str, instrument: Instrument, side: Side, quantity: Decimal, price: Decimal) -> LedgerFill:
        fill = LedgerFill(
            order_id=order_id,
            symbol=instrument.symbol,
            signed_qty=quantity * side.sign,
            price=price,
            timestamp_ms=now_ms(),
        )
        self._fills.append(fill)
        self._order_instruments[order_id] = instrument
        self._positions[fill.symbol] = self._positions.get(fill.symbol, _ZERO) + fill.signed_qty
        return fill

    def expected(self, symbol: str) -> Decimal:
        return self._positions.get(symbol, _ZERO)

    def baseline(self, symbol: str) -> Decimal:
        return self._baseline.get(symbol, _ZERO)

    def fills_for(self, order_id: str) -> List[LedgerFill]:
        return [f for f in self._fills if f.order_id == order_id]

    def order_delta(self, order_id: str) -> Decimal:
        return sum((f.signed_qty for f in self.fills_for(order_id)), _ZERO)

    def instrument_for(self, order_id: str) -> Optional[Instrument]:
        return self._order_instruments.get(order_id)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "baseline": dict(self._baseline),
            "positions": dict(self._positions),
            "fills": len(self._fills),
        }


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation: Match (matched=True) or Divergence."""
    order_id: str
    symbol: str
    matched: bool
    expected: Decimal
    observed: Decimal
    baseline: Decimal
    order_delta: Decimal
    polls: int = 1
    elapsed_sec: float = 0.0
    timestamp_ms: int = field(default_factory=now_ms)

    @property
    def difference(self) -> Decimal:
        return self.observed - self.expected

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "symbol": self.symbol,
            "result": "match" if self.matched else "divergence",
            "expected": self.expected,
            "observed": self.observed,
            "baseline": self.baseline,
            "order_delta": self.order_delta,
            "difference": self.difference,
            "polls": self.polls,
            "elapsed_sec": round(self.elapsed_sec, 3),
        }

    def to_error(self) -> Divergence:
        return Divergence(
            f"{self.symbol}: venue reports {self.observed}, ledger expects {self.expected}",
            expected=self.expected,
            observed=self.observed,
            order_id=self.order_id,
            symbol=self.symbol,
            polls=self.polls,
        )


@dataclass
class ReconciliationConfig:
    """Configuration for ReconciliationChecker."""
    settle_timeout_sec: float = 10.0
    poll_interval_sec: float = 0.5
    # Largest difference still considered equal
    quantity_precision: Decimal = _ZERO
    log_event_callback: Optional[Callable[..., None]] = None


class ReconciliationChecker:
    """
    Ledger vs venue holdings reconciliation.

    Usage:
        checker = ReconciliationChecker(gateway, metrics=metrics)
        await checker.snapshot_baseline(instrument)
        ...  # driver feeds checker.record_fill for every observed fill
        result = await checker.check(order_id, instrument=instrument)
        if not result.matched:
            raise result.to_error()
    """

    def __init__(
        self,
        gateway: VenueGateway,
        metrics: Optional[HarnessMetrics] = None,
        config: Optional[ReconciliationConfig] = None,
        ledger: Optional[LocalLedger] = None,
    ) -> None:
        self.gateway = gateway
        self.metrics = metrics
        self.config = config or ReconciliationConfig()
        self.ledger = ledger or LocalLedger()
        self._log_event = self.config.log_event_callback or self._default_log
        self._stats = {
            "checks": 0,
            "matches": 0,
            "divergences": 0,
            "fills_recorded": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    async def snapshot_baseline(self, instrument: Instrument) -> Decimal:
        """Record the venue's current holdings as the ledger baseline."""
        snapshot = await self.gateway.holdings(instrument)
        quantity = snapshot.quantity(instrument)
        previous = self.ledger.expected(instrument.symbol) if self.ledger.is_seeded(instrument.symbol) else None
        self.ledger.seed(instrument.symbol, quantity)
        self._log_event(
            "ledger_baseline",
            symbol=instrument.symbol,
            quantity=quantity,
            previous_expected=previous,
        )
        return quantity

    def record_fill(self, order_id: str, instrument: Instrument, side: Side, quantity: Decimal, price: Decimal) -> None:
        """Only mutation path into the ledger: one observed fill event."""
        fill = self.ledger.apply_fill(order_id, instrument, side, quantity, price)
        self._stats["fills_recorded"] += 1
        log.debug(dumps({
            "event": "ledger_fill",
            "order_id": order_id,
            "symbol": instrument.symbol,
            "signed_qty": fill.signed_qty,
            "price": price,
            "expected": self.ledger.expected(instrument.symbol),
        }))

    async def check(
        self,
        order_id: str,
        local_ledger: Optional[LocalLedger] = None,
        instrument: Optional[Instrument] = None,
    ) -> ReconcileResult:
        """
        Compare the ledger with venue holdings after ``order_id``.

        Re-polls venue holdings every ``poll_interval_sec`` until they agree
        with the ledger or ``settle_timeout_sec`` elapses.

        Raises:
            CommandTimeout / VenueConnectionError: holdings query failed
        """
        ledger = local_ledger or self.ledger
        if instrument is None:
            instrument = ledger.instrument_for(order_id)
            if instrument is None:
                raise ValueError(f"no fills recorded for {order_id}; pass the instrument")

        self._stats["checks"] += 1
        symbol = instrument.symbol
        expected = ledger.expected(symbol)
        started = time.monotonic()
        deadline = started + self.config.settle_timeout_sec
        polls = 0

        while True:
            snapshot = await self.gateway.holdings(instrument)
            polls += 1
            observed = snapshot.quantity(instrument)
            matched = abs(observed - expected) <= self.config.quantity_precision
            if matched or time.monotonic() >= deadline:
                break
            self._log_event(
                "holdings_poll_retry",
                order_id=order_id,
                symbol=symbol,
                expected=expected,
                observed=observed,
                poll=polls,
            )
            await asyncio.sleep(min(self.config.poll_interval_sec, max(0.0, deadline - time.monotonic())))

        result = ReconcileResult(
            order_id=order_id,
            symbol=symbol,
            matched=matched,
            expected=expected,
            observed=observed,
            baseline=ledger.baseline(symbol),
            order_delta=ledger.order_delta(order_id),
            polls=polls,
            elapsed_sec=time.monotonic() - started,
        )
        if matched:
            self._stats["matches"] += 1
            self._log_event("reconcile_match", **result.to_dict())
        else:
            self._stats["divergences"] += 1
            if self.metrics:
                self.metrics.divergences.labels(venue=self.gateway.venue.name).inc()
            log.warning(dumps({"event": "reconcile_divergence", **result.to_dict()}))
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, **self.ledger.snapshot()}
