"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv

from conformance.core.json_utils import dumps

load_dotenv()

CREDENTIAL_PREFIX = "CT_CREDENTIAL_"


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _list_env(key: str) -> List[str]:
    raw = os.getenv(key) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    venue_adapter: str
    venue_profile: str
    venue_profiles_path: str
    scenarios: List[str]
    concurrency: int
    market_deadline_sec: float
    resting_deadline_sec: float
    cancel_confirm_timeout_sec: float
    command_timeout_sec: float
    holdings_settle_timeout_sec: float
    holdings_poll_interval_sec: float
    check_cancel_idempotence: bool
    report_path: Optional[str]
    metrics_textfile: Optional[str]
    log_level: str
    log_file: Optional[str]
    credentials: Dict[str, str] = field(repr=False, default_factory=dict)

    def dump(self) -> dict:
        """Return a dict of settings for logging, without credentials."""
        data = self.__dict__.copy()
        data["credentials"] = sorted(self.credentials)
        return data

    @staticmethod
    def _credentials() -> Dict[str, str]:
        return {
            key[len(CREDENTIAL_PREFIX):].lower(): value
            for key, value in os.environ.items()
            if key.startswith(CREDENTIAL_PREFIX)
        }

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            venue_adapter=os.getenv("CT_VENUE_ADAPTER", "conformance.venue.simulated:create_simulated_venue"),
            venue_profile=os.getenv("CT_VENUE_PROFILE", "simulated"),
            venue_profiles_path=os.getenv("CT_VENUE_PROFILES", "configs/venues.yaml"),
            scenarios=_list_env("CT_SCENARIOS"),
            concurrency=_int_env("CT_CONCURRENCY", 1),
            market_deadline_sec=_float_env("CT_MARKET_DEADLINE_SEC", 15.0),
            resting_deadline_sec=_float_env("CT_RESTING_DEADLINE_SEC", 20.0),
            cancel_confirm_timeout_sec=_float_env("CT_CANCEL_CONFIRM_TIMEOUT_SEC", 10.0),
            command_timeout_sec=_float_env("CT_COMMAND_TIMEOUT_SEC", 10.0),
            holdings_settle_timeout_sec=_float_env("CT_HOLDINGS_SETTLE_TIMEOUT_SEC", 10.0),
            holdings_poll_interval_sec=_float_env("CT_HOLDINGS_POLL_INTERVAL_SEC", 0.5),
            check_cancel_idempotence=env_bool("CT_CHECK_CANCEL_IDEMPOTENCE", True),
            report_path=os.getenv("CT_REPORT_PATH") or None,
            metrics_textfile=os.getenv("CT_METRICS_TEXTFILE") or None,
            log_level=os.getenv("CT_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("CT_LOG_FILE") or None,
            credentials=cls._credentials(),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def _validate(self) -> None:
        if ":" not in self.venue_adapter:
            raise ValueError("CT_VENUE_ADAPTER must look like 'package.module:factory'")
        if self.concurrency < 1:
            raise ValueError("CT_CONCURRENCY must be >= 1")
        if self.market_deadline_sec <= 0 or self.resting_deadline_sec <= 0:
            raise ValueError("Scenario deadlines must be > 0")
        if self.cancel_confirm_timeout_sec <= 0:
            raise ValueError("CT_CANCEL_CONFIRM_TIMEOUT_SEC must be > 0")
        if self.command_timeout_sec <= 0:
            raise ValueError("CT_COMMAND_TIMEOUT_SEC must be > 0")
        if self.holdings_settle_timeout_sec < 0 or self.holdings_poll_interval_sec <= 0:
            raise ValueError("Holdings settle timeout must be >= 0 and poll interval > 0")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"CT_LOG_LEVEL={self.log_level} is not a logging level")

        if self.market_deadline_sec > self.resting_deadline_sec:
            logging.getLogger("conformance").warning(dumps({
                "event": "config_deadline_order",
                "market_deadline_sec": self.market_deadline_sec,
                "resting_deadline_sec": self.resting_deadline_sec,
                "message": "market deadline exceeds resting deadline",
            }))
        if self.cancel_confirm_timeout_sec > self.resting_deadline_sec:
            logging.getLogger("conformance").warning(dumps({
                "event": "config_cancel_timeout_long",
                "cancel_confirm_timeout_sec": self.cancel_confirm_timeout_sec,
                "resting_deadline_sec": self.resting_deadline_sec,
                "message": "cancel confirmation timeout is longer than the resting deadline",
            }))


def _sanity_check(cfg: Settings) -> None:
    """
    Log the effective settings once at startup so overrides are obvious.
    """
    logger = logging.getLogger("conformance")
    payload = {
        "event": "config_loaded",
        "venue_adapter": cfg.venue_adapter,
        "venue_profile": cfg.venue_profile,
        "concurrency": cfg.concurrency,
        "market_deadline_sec": cfg.market_deadline_sec,
        "resting_deadline_sec": cfg.resting_deadline_sec,
        "scenarios": cfg.scenarios,
        "credentials": sorted(cfg.credentials),
    }
    logger.info(dumps(payload))
