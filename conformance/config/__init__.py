"""
Configuration package.

Environment settings for a run and per-venue calibration profiles.
"""

from conformance.config.config import Settings, env_bool
from conformance.config.venue_profile import (
    VenueProfile,
    load_venue_profile,
    load_venue_profiles,
    profile_from_dict,
)

__all__ = [
    "Settings",
    "env_bool",
    "VenueProfile",
    "load_venue_profile",
    "load_venue_profiles",
    "profile_from_dict",
]
