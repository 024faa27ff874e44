"""
Entry point: run the default scenario battery against the configured venue.

    CT_VENUE_ADAPTER=my_broker.adapter:create_adapter \
    CT_VENUE_PROFILE=fxcm \
    CT_CREDENTIAL_ACCOUNT_ID=... CT_CREDENTIAL_TOKEN=... \
    python -m conformance.main

The adapter factory is called with the VenueProfile and must return a
VenueAdapter (or an awaitable resolving to one). Exit status is 0 only if
every scenario passed.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import signal
import sys
from typing import Callable, Tuple

from conformance.config.config import Settings
from conformance.config.venue_profile import VenueProfile, load_venue_profile
from conformance.infra.logging_cfg import build_logger, log_event
from conformance.monitoring.metrics import HarnessMetrics
from conformance.report import SuiteReport
from conformance.runner import ConformanceHarness, HarnessConfig
from conformance.scenarios.catalog import default_catalog
from conformance.venue.adapter import VenueAdapter

log = logging.getLogger("conformance")


def resolve_adapter_factory(path: str) -> Callable[[VenueProfile], VenueAdapter]:
    """Import ``package.module:callable``."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"adapter factory must look like 'package.module:factory', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"{module_name} has no attribute {attr!r}") from None
    if not callable(factory):
        raise ValueError(f"{path} is not callable")
    return factory


async def run(cfg: Settings) -> Tuple[SuiteReport, HarnessMetrics]:
    profile = load_venue_profile(cfg.venue_profile, cfg.venue_profiles_path)
    factory = resolve_adapter_factory(cfg.venue_adapter)
    venue = factory(profile)
    if inspect.isawaitable(venue):
        venue = await venue

    catalog = default_catalog(profile, cfg.market_deadline_sec, cfg.resting_deadline_sec)
    if cfg.scenarios:
        catalog = catalog.filter(cfg.scenarios)

    metrics = HarnessMetrics()
    harness = ConformanceHarness(
        venue,
        profile,
        config=HarnessConfig.from_settings(cfg),
        metrics=metrics,
        credentials=cfg.credentials,
    )
    report = await harness.run(catalog)
    return report, metrics


async def main() -> int:
    cfg = Settings.load()
    build_logger(level=logging.getLevelName(cfg.log_level), file_path=cfg.log_file)
    log_event(log, "startup", **cfg.dump())

    loop = asyncio.get_running_loop()
    run_task = asyncio.create_task(run(cfg))

    def stop() -> None:
        if not run_task.done():
            run_task.cancel()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop)
        except NotImplementedError:
            pass

    try:
        report, metrics = await run_task
    except asyncio.CancelledError:
        log.warning("Shutdown signal received, run cancelled")
        return 130

    report.render()
    if cfg.report_path:
        report.write(cfg.report_path)
        log_event(log, "report_written", path=cfg.report_path)
    if cfg.metrics_textfile:
        metrics.write_textfile(cfg.metrics_textfile)
    return report.exit_code


def cli() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        print("\nConformance run stopped by user")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    cli()
