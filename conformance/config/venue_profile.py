"""Load per-venue calibration profiles from YAML.

Optional file path via env `CT_VENUE_PROFILES`, default `configs/venues.yaml`.
The file maps profile name -> dict of settings, e.g.:

    fxcm:
      symbol: EURUSD
      asset_class: FOREX
      high_price: "1.5"    # a limit sell here will not fill
      low_price: "0.7"     # a limit buy here will not fill
      lot_size: 1000
      pip_size: "0.0001"
      max_distance_pips: 5600

Prices are quoted strings so YAML never turns them into floats.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from conformance.core.utils import to_decimal
from conformance.models import AssetClass, Instrument

DEFAULT_PROFILE_PATH = "configs/venues.yaml"

_DECIMAL_FIELDS = {
    "high_price",
    "low_price",
    "lot_size",
    "min_quantity",
    "pip_size",
    "max_distance_pips",
    "safe_margin_pips",
    "aggressive_margin_pips",
    "default_quantity",
    "fill_price_tolerance",
    "quantity_precision",
}


@dataclass(frozen=True)
class VenueProfile:
    """Venue-specific calibration injected into the harness as data."""
    name: str
    symbol: str
    asset_class: AssetClass
    high_price: Decimal
    low_price: Decimal
    lot_size: Decimal = Decimal("1")
    min_quantity: Optional[Decimal] = None
    lot_mode: str = "reject"
    pip_size: Decimal = Decimal("0.0001")
    max_distance_pips: Optional[Decimal] = None
    safe_margin_pips: Decimal = Decimal("500")
    aggressive_margin_pips: Decimal = Decimal("10")
    default_quantity: Decimal = Decimal("1")
    fill_price_tolerance: Decimal = Decimal("0")
    quantity_precision: Decimal = Decimal("0")
    quote_max_age_sec: float = 30.0

    @property
    def instrument(self) -> Instrument:
        return Instrument(symbol=self.symbol, asset_class=self.asset_class)

    @property
    def max_distance(self) -> Optional[Decimal]:
        """Maximum price distance from market the venue accepts, in price units."""
        if self.max_distance_pips is None:
            return None
        return self.max_distance_pips * self.pip_size

    def with_overrides(self, **overrides: Any) -> "VenueProfile":
        return replace(self, **_coerce(overrides))

    def validate(self) -> None:
        if self.low_price <= 0 or self.high_price <= 0:
            raise ValueError(f"profile {self.name}: high/low prices must be > 0")
        if self.low_price >= self.high_price:
            raise ValueError(f"profile {self.name}: low_price must be < high_price")
        if self.lot_size <= 0:
            raise ValueError(f"profile {self.name}: lot_size must be > 0")
        if self.lot_mode not in ("reject", "round_down", "round_up"):
            raise ValueError(f"profile {self.name}: unknown lot_mode {self.lot_mode!r}")
        if self.pip_size <= 0:
            raise ValueError(f"profile {self.name}: pip_size must be > 0")
        if self.max_distance_pips is not None and self.safe_margin_pips >= self.max_distance_pips:
            raise ValueError(
                f"profile {self.name}: safe_margin_pips ({self.safe_margin_pips}) must be "
                f"below max_distance_pips ({self.max_distance_pips})"
            )
        if self.default_quantity <= 0:
            raise ValueError(f"profile {self.name}: default_quantity must be > 0")


def _coerce(raw: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(VenueProfile)}
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            raise ValueError(f"unknown venue profile field {key!r}")
        if value is None:
            out[key] = None
        elif key in _DECIMAL_FIELDS:
            try:
                out[key] = to_decimal(value)
            except InvalidOperation as exc:
                raise ValueError(f"field {key!r}: not a number: {value!r}") from exc
        elif key == "asset_class":
            out[key] = value if isinstance(value, AssetClass) else AssetClass[str(value).upper()]
        elif key == "quote_max_age_sec":
            out[key] = float(value)
        else:
            out[key] = value
    return out


def profile_from_dict(name: str, raw: Dict[str, Any]) -> VenueProfile:
    data = _coerce(raw)
    data.setdefault("name", name)
    profile = VenueProfile(**data)
    profile.validate()
    return profile


def load_venue_profiles(path: str | None = None) -> Dict[str, VenueProfile]:
    if path is None:
        path = os.getenv("CT_VENUE_PROFILES", DEFAULT_PROFILE_PATH)
    p = Path(path)
    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping of profile name -> settings")
    return {
        name: profile_from_dict(name, raw)
        for name, raw in data.items()
        if isinstance(raw, dict)
    }


def load_venue_profile(name: str, path: str | None = None) -> VenueProfile:
    profiles = load_venue_profiles(path)
    if name not in profiles:
        raise KeyError(f"venue profile {name!r} not found (available: {sorted(profiles)})")
    return profiles[name]
