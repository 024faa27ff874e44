"""
Price oracle: validated bid/ask for order construction.

A zero or stale price would otherwise masquerade as a valid, always-filling
order price, so every quote handed to the order builder is checked for:

- positive bid and ask
- bid <= ask (no crossed book)
- age within ``max_age_sec``
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from conformance.core.json_utils import dumps
from conformance.errors import HarnessError, PriceUnavailable, VenueConnectionError
from conformance.models import Instrument, Quote
from conformance.venue.adapter import VenueAdapter

log = logging.getLogger("conformance")


class CachedQuote:
    """
    Quote with a TTL, so back-to-back builds for one scenario reuse a single
    venue round trip.
    """
    __slots__ = ("_value", "_fetched_at", "_ttl_sec", "_lock")

    def __init__(self, ttl_sec: float = 0.5) -> None:
        self._value: Optional[Quote] = None
        self._fetched_at: float = 0.0
        self._ttl_sec = ttl_sec
        self._lock = threading.Lock()

    def get(self) -> Optional[Quote]:
        """Return cached quote if within TTL, else None."""
        with self._lock:
            if self._value is not None and (time.time() - self._fetched_at) < self._ttl_sec:
                return self._value
            return None

    def set(self, value: Quote) -> None:
        with self._lock:
            self._value = value
            self._fetched_at = time.time()

    def clear(self) -> None:
        with self._lock:
            self._value = None
            self._fetched_at = 0.0


@dataclass
class PriceOracleConfig:
    """Configuration for PriceOracle."""
    max_age_sec: float = 30.0
    cache_ttl_sec: float = 0.5
    query_timeout_sec: float = 5.0
    log_event_callback: Optional[Callable[..., None]] = None


class PriceOracle:
    """
    Validated market prices per instrument.

    Usage:
        oracle = PriceOracle(venue, PriceOracleConfig(max_age_sec=10))
        quote = await oracle.quote(instrument)   # raises PriceUnavailable
    """

    def __init__(self, venue: VenueAdapter, config: Optional[PriceOracleConfig] = None) -> None:
        self.venue = venue
        self.config = config or PriceOracleConfig()
        self._cache: Dict[str, CachedQuote] = {}
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(dumps({"event": event, **kwargs}))

    async def quote(self, instrument: Instrument, fresh: bool = False) -> Quote:
        """
        Current validated quote for ``instrument``.

        Args:
            instrument: Instrument to price
            fresh: Bypass the TTL cache

        Raises:
            PriceUnavailable: venue gave no usable price
            VenueConnectionError: the quote request failed in the transport
        """
        cached = self._cache.setdefault(instrument.symbol, CachedQuote(self.config.cache_ttl_sec))
        if not fresh:
            hit = cached.get()
            if hit is not None:
                return hit

        try:
            quote = await asyncio.wait_for(
                self.venue.get_quote(instrument),
                timeout=self.config.query_timeout_sec,
            )
        except HarnessError:
            raise
        except asyncio.TimeoutError as exc:
            raise PriceUnavailable(
                f"quote for {instrument.symbol} timed out after {self.config.query_timeout_sec}s",
                symbol=instrument.symbol,
            ) from exc
        except Exception as exc:
            raise VenueConnectionError(
                f"get_quote failed: {exc}",
                command="get_quote",
                venue=self.venue.name,
                error_type=type(exc).__name__,
            ) from exc

        self.validate(instrument, quote)
        cached.set(quote)
        self._log_event(
            "quote",
            symbol=instrument.symbol,
            bid=quote.bid,
            ask=quote.ask,
            last=quote.last,
        )
        return quote

    def validate(self, instrument: Instrument, quote: Quote) -> None:
        """Raise PriceUnavailable unless ``quote`` is safe to build prices from."""
        if quote.bid <= 0 or quote.ask <= 0:
            raise PriceUnavailable(
                f"non-positive quote for {instrument.symbol}",
                symbol=instrument.symbol,
                bid=quote.bid,
                ask=quote.ask,
            )
        if quote.bid > quote.ask:
            raise PriceUnavailable(
                f"crossed quote for {instrument.symbol}",
                symbol=instrument.symbol,
                bid=quote.bid,
                ask=quote.ask,
            )
        age = quote.age_sec()
        if age > self.config.max_age_sec:
            raise PriceUnavailable(
                f"stale quote for {instrument.symbol} ({age:.1f}s old)",
                symbol=instrument.symbol,
                age_sec=round(age, 3),
                max_age_sec=self.config.max_age_sec,
            )

    def invalidate(self, instrument: Optional[Instrument] = None) -> None:
        if instrument is None:
            for cached in self._cache.values():
                cached.clear()
        elif instrument.symbol in self._cache:
            self._cache[instrument.symbol].clear()
