"""
Brokerage conformance harness.

Validates an order-execution venue against a battery of order-lifecycle
scenarios through the VenueAdapter interface.
"""

__version__ = "0.1.0"
