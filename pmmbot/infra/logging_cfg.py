"""
Structured logging setup for the market maker.

Every component logs one JSON object per event ({"event": ..., "symbol": ...}).
Two sinks:
- console via Rich, with repeat-every-cycle warnings throttled
- optional JSON-lines file, written from a background thread so the event
  loop never blocks on disk
"""

from __future__ import annotations

import atexit
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, Iterable, Optional

from rich.logging import RichHandler

from pmmbot.core.json_utils import dumps, loads

ERROR = logging.ERROR               # Unquoted sides, crashed cycles
WARNING = logging.WARNING           # Risk rejections, skipped cycles
INFO = logging.INFO                 # Placements, cancels, fills, breaker edges
DEBUG = logging.DEBUG               # Per-cycle decisions

# Events that fire on every cycle while a condition persists
REPEATING_EVENTS = frozenset({"snapshot_failed", "breaker_holding", "risk_rejected"})


def _event_of(record: logging.LogRecord) -> Optional[dict]:
    try:
        data = loads(record.getMessage())
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class JsonFormatter(logging.Formatter):
    """One JSON object per line; the structured message is kept as a string."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": record.created,
            "ts_iso": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return dumps(payload)


class BackgroundFileHandler(logging.Handler):
    """
    JSON-lines file sink drained by a writer thread.

    emit() only enqueues. When the queue is full the record is dropped and
    counted; the count is reported on close.
    """

    def __init__(self, path: str, max_queue_size: int = 10000) -> None:
        super().__init__()
        self._file = logging.FileHandler(path)
        self._file.setFormatter(JsonFormatter())
        self._queue: "queue.Queue[logging.LogRecord]" = queue.Queue(maxsize=max_queue_size)
        self._closing = threading.Event()
        self.dropped = 0
        self._writer = threading.Thread(target=self._drain, daemon=True, name="pmm-log-writer")
        self._writer.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._closing.is_set():
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1

    def _drain(self) -> None:
        while not (self._closing.is_set() and self._queue.empty()):
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._file.emit(record)
            except Exception:
                self._file.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if not self._closing.is_set():
            self._closing.set()
            self._writer.join(timeout=2.0)
            if self.dropped:
                sys.stderr.write(f"[pmmbot] log writer dropped {self.dropped} records (queue full)\n")
            self._file.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Pass the first of a burst of identical repeating events, then mute that
    (event, symbol, side) key for cooldown_sec. Anything that is not a
    structured repeating event passes untouched.
    """

    def __init__(self, cooldown_sec: float = 30.0, events: Optional[Iterable[str]] = None) -> None:
        super().__init__()
        self.cooldown_sec = cooldown_sec
        self.events = frozenset(events) if events is not None else REPEATING_EVENTS
        self._last_seen: Dict[tuple, float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        data = _event_of(record)
        if data is None or data.get("event") not in self.events:
            return True

        key = (data["event"], data.get("symbol"), data.get("side"))
        now = time.monotonic()
        last = self._last_seen.get(key)
        if last is not None and now - last < self.cooldown_sec:
            return False
        self._last_seen[key] = now
        return True


def _console_handler(level: int, throttle: bool) -> logging.Handler:
    handler = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(level)
    if throttle:
        handler.addFilter(ThrottledFilter())
    return handler


def _file_handler(path: str, level: int, background: bool) -> logging.Handler:
    handler: logging.Handler
    if background:
        handler = BackgroundFileHandler(path)
    else:
        handler = logging.FileHandler(path)
        handler.setFormatter(JsonFormatter())
    handler.setLevel(level)
    return handler


def build_logger(
    name: str = "pmmbot",
    level: int = logging.INFO,
    file_path: Optional[str] = "pmmbot.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Configure the application logger once; later calls only adjust levels.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: JSON-lines log file, None for console only
        async_file: Write the file from a background thread
        throttle_warnings: Mute repeats of per-cycle warnings on the console
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    logger.addHandler(_console_handler(level, throttle_warnings))
    if file_path:
        logger.addHandler(_file_handler(file_path, level, async_file))
    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = INFO, **data) -> None:
    """
    Usage:
        log_event(log, "startup", symbol="MXUSDT", mode="paper")
    """
    logger.log(level, dumps({"event": event, **data}))
