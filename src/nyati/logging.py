"""Logging utilities for nyati.

This module provides:
- Standard log formats and a TRACE level below DEBUG
- Verbosity flag to level mapping
- Console and file handler configuration
- A performance timing context manager
- EventSink, the operator-facing event stream of a run

Diagnostics go through the standard logging tree. Run events (task started,
succeeded, failed, command output) go through an EventSink that is created by
the caller, opened before a run and closed after it, and passed explicitly to
the runner and sessions.
"""

import logging
import queue
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generator

DEFAULT_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
TRACE_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"

# Custom TRACE level (more detailed than DEBUG)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

VERBOSITY_LEVELS = {
    0: logging.WARNING,   # Default: warnings and errors only
    1: logging.INFO,      # -v: Info level
    2: logging.DEBUG,     # -vv: Debug level
    3: TRACE,             # -vvv: Trace level (includes remote commands)
}

EVENTS_LOGGER = "nyati.events"
DEFAULT_SINK_SIZE = 100


def get_level_from_verbosity(verbosity: int) -> int:
    """Convert verbosity count to logging level.

    Args:
        verbosity: Number of -v flags (0-3+)

    Returns:
        Logging level constant
    """
    return VERBOSITY_LEVELS.get(min(verbosity, 3), TRACE)


def configure_logging(
    level: int = logging.WARNING,
    format_string: str | None = None,
    debug: bool = False,
    log_file: str | Path | None = None,
    file_level: int | None = None,
) -> None:
    """Configure logging for nyati.

    Args:
        level: Logging level for console
        format_string: Custom format string (uses default if None)
        debug: If True, use debug format with timestamps and line numbers
        log_file: Optional path to write logs to file
        file_level: Optional separate level for file logging (defaults to level)

    Example:
        >>> configure_logging(level=logging.INFO)
        >>> configure_logging(level=logging.WARNING, log_file="/tmp/nyati.log",
        ...                   file_level=logging.INFO)
    """
    if format_string is None:
        if level <= TRACE:
            format_string = TRACE_FORMAT
        elif debug or level <= logging.DEBUG:
            format_string = DEBUG_FORMAT
        else:
            format_string = DEFAULT_FORMAT

    root_logger = logging.getLogger()
    root_logger.setLevel(min(level, file_level or level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(file_level or level)
        # Always use detailed format for file logging
        file_handler.setFormatter(logging.Formatter(DEBUG_FORMAT))
        root_logger.addHandler(file_handler)


@contextmanager
def log_performance(
    logger: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    threshold: float | None = None,
    **context: Any,
) -> Generator[None, None, None]:
    """Time an operation and log the duration.

    Args:
        logger: Logger instance to use
        operation: Description of the operation being timed
        level: Log level to use
        threshold: Only log if duration exceeds this threshold (seconds)
        **context: Additional context to include in logs
    """
    start_time = time.perf_counter()
    context_str = ", ".join(f"{k}={v}" for k, v in context.items())

    try:
        yield
    finally:
        duration = time.perf_counter() - start_time

        if threshold is None or duration >= threshold:
            full_message = f"{operation} completed in {duration:.3f}s"
            if context:
                full_message += f" ({context_str})"
            logger.log(level, full_message)


EventSubscriber = Callable[[str], None]


class EventSink:
    """Non-blocking, thread-safe stream of run events.

    emit() never blocks: lines go into a bounded queue and are dropped (and
    counted in ``dropped``) when the queue is full. A background thread
    drains the queue, logs each line on the ``nyati.events`` logger and hands
    it to every subscriber, in emit order.

    Lines emitted before open() or after close() are dropped.

    Example:
        >>> sink = EventSink()
        >>> sink.subscribe(print)
        >>> with sink:
        ...     sink.emit("migrate@web01: Succeeded")
        migrate@web01: Succeeded
    """

    _STOP = object()

    def __init__(self, maxsize: int = DEFAULT_SINK_SIZE, logger_name: str = EVENTS_LOGGER) -> None:
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=maxsize)
        self._subscribers: list[EventSubscriber] = []
        self._logger = logging.getLogger(logger_name)
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._open = False
        self.dropped = 0

    @property
    def is_open(self) -> bool:
        return self._open

    def subscribe(self, subscriber: EventSubscriber) -> None:
        """Register a callable that receives every drained line."""
        with self._lock:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: EventSubscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def open(self) -> "EventSink":
        """Start the drain thread. Opening an open sink is a no-op."""
        with self._lock:
            if self._open:
                return self
            self._open = True
            self._thread = threading.Thread(
                target=self._drain, name="nyati-event-sink", daemon=True
            )
            self._thread.start()
        return self

    def close(self) -> None:
        """Deliver every queued line, then stop the drain thread."""
        with self._lock:
            if not self._open:
                return
            self._open = False
            thread = self._thread
            self._thread = None
        # The drain thread keeps consuming, so this put cannot block forever.
        self._queue.put(self._STOP)
        if thread is not None:
            thread.join()

    def emit(self, line: str) -> bool:
        """Queue a line without blocking.

        Returns:
            True if the line was queued, False if it was dropped
        """
        if not self._open:
            self.dropped += 1
            return False
        try:
            self._queue.put_nowait(line)
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def flush(self) -> None:
        """Block until every line queued so far has reached the subscribers.

        Must not be called from a subscriber.
        """
        if self._open:
            self._queue.join()

    def _drain(self) -> None:
        while True:
            line = self._queue.get()
            try:
                if line is self._STOP:
                    return
                self._deliver(line)
            finally:
                self._queue.task_done()

    def _deliver(self, line: str) -> None:
        self._logger.info(line)
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(line)
            except Exception:
                self._logger.exception("Event subscriber failed")

    def __enter__(self) -> "EventSink":
        return self.open()

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
