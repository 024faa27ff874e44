"""
Market data package: validated quotes for order construction.
"""

from conformance.market.price_oracle import CachedQuote, PriceOracle, PriceOracleConfig

__all__ = [
    "CachedQuote",
    "PriceOracle",
    "PriceOracleConfig",
]
