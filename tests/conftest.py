"""
Pytest configuration and fixtures.
Adds the repo root to the Python path so tests can import the conformance package.
"""

import sys
from decimal import Decimal
from pathlib import Path

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from conformance.config.venue_profile import profile_from_dict  # noqa: E402
from conformance.models import AssetClass, ExpectedOutcome, Instrument, OrderSpec, OrderType, Side  # noqa: E402
from conformance.scenarios.catalog import ScenarioEntry  # noqa: E402
from conformance.venue.simulated import SimulatedVenue, SimulatedVenueConfig  # noqa: E402

EURUSD = Instrument(symbol="EURUSD", asset_class=AssetClass.FOREX)


@pytest.fixture
def instrument():
    return EURUSD


@pytest.fixture
def profile():
    return profile_from_dict("test", {
        "symbol": "EURUSD",
        "asset_class": "FOREX",
        "high_price": "1.5",
        "low_price": "0.7",
        "lot_size": 1000,
        "pip_size": "0.0001",
        "max_distance_pips": 5600,
        "safe_margin_pips": 500,
        "default_quantity": 1000,
        "fill_price_tolerance": "0.0002",
        "quote_max_age_sec": 5,
    })


@pytest.fixture
def sim_config():
    return SimulatedVenueConfig(
        lot_size=Decimal("1000"),
        pip_size=Decimal("0.0001"),
        max_distance_pips=Decimal("5600"),
    )


@pytest.fixture
def venue(sim_config):
    v = SimulatedVenue(config=sim_config)
    v.set_quote("EURUSD", "1.1000", "1.1002")
    return v


def make_spec(
    side=Side.BUY,
    quantity="1000",
    order_type=OrderType.MARKET,
    limit_price=None,
    stop_price=None,
):
    return OrderSpec(
        instrument=EURUSD,
        side=side,
        quantity=Decimal(quantity),
        order_type=order_type,
        limit_price=Decimal(limit_price) if limit_price is not None else None,
        stop_price=Decimal(stop_price) if stop_price is not None else None,
    )


def make_entry(label, **kw):
    kw.setdefault("instrument", EURUSD)
    kw.setdefault("order_type", OrderType.MARKET)
    kw.setdefault("price_policy", "market")
    kw.setdefault("side", Side.BUY)
    kw.setdefault("quantity", Decimal("1000"))
    kw.setdefault("expected_outcome", ExpectedOutcome.FILLED)
    kw.setdefault("deadline_sec", 5)
    return ScenarioEntry(label=label, **kw)
