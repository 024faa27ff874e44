"""
Structured logging setup for the conformance harness.

- Rich console output for people watching a run
- JSON file output (one object per line) for CI log ingestion
- File writes go through a background queue so slow disks never stall
  the event loop while a scenario is waiting on a deadline
- Throttling for events that can repeat on every poll
"""

from __future__ import annotations

import atexit
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Set

from rich.logging import RichHandler

from conformance.core.json_utils import dumps, loads

LOGGER_NAME = "conformance"

CRITICAL_SAFETY = logging.CRITICAL  # Venue state divergence, aborted runs
ERROR = logging.ERROR               # Scenario failures
WARNING = logging.WARNING           # Retries, late events, degraded settings
INFO = logging.INFO                 # Lifecycle transitions, verdicts
DEBUG = logging.DEBUG               # Quotes, raw events, poll attempts


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        ts = record.created
        payload = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return dumps(payload)


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler that queues log records for a writer thread.

    Records are dropped (and counted) rather than blocking when the queue
    is full.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="ct-log-writer")
        self._thread.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.emit(record)
            except Exception:
                self._target.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Suppress repeats of noisy events for ``cooldown_sec``.

    Only JSON messages whose ``event`` is in ``throttled_events`` are
    considered; everything else passes.
    """

    DEFAULT_EVENTS = frozenset({
        "holdings_poll_retry",
        "venue_read_retry",
        "dispatcher_event_buffered",
    })

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = throttled_events or set(self.DEFAULT_EVENTS)

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        if not msg.startswith("{"):
            return True
        try:
            data = loads(msg)
        except ValueError:
            return True
        event = data.get("event", "") if isinstance(data, dict) else ""
        if event not in self._throttled_events:
            return True

        now = time.time()
        key = f"{event}:{data.get('order_id', '')}"
        if now - self._last_seen.get(key, 0.0) < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def build_logger(
    name: str = LOGGER_NAME,
    level: int = logging.INFO,
    file_path: Optional[str] = None,
    async_file: bool = True,
    throttle: bool = True,
) -> logging.Logger:
    """
    Build the harness logger.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: Path to JSON log file (None disables file logging)
        async_file: Write the file through a background queue
        throttle: Apply ThrottledFilter to the console handler

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Idempotent handler setup
    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    console = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s"))
    if throttle:
        console.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(console)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.setLevel(level)
        if async_file:
            handler: logging.Handler = AsyncQueueHandler(file_handler)
            handler.setLevel(level)
            logger.addHandler(handler)
        else:
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **data,
) -> None:
    """
    Log a structured event with proper level.

    Usage:
        log_event(log, "scenario_passed", level=INFO, label="MarketOrder")
    """
    logger.log(level, dumps({"event": event, **data}))
