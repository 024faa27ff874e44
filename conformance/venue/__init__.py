"""
Venue layer: the adapter interface the harness consumes, a thread-pool
wrapper for blocking SDKs, and an in-memory simulated venue.
"""

from conformance.venue.adapter import VenueAdapter
from conformance.venue.simulated import SimulatedVenue, SimulatedVenueConfig, create_simulated_venue
from conformance.venue.threaded import BlockingVenueClient, ThreadedVenueAdapter

__all__ = [
    "VenueAdapter",
    "SimulatedVenue",
    "SimulatedVenueConfig",
    "create_simulated_venue",
    "BlockingVenueClient",
    "ThreadedVenueAdapter",
]
