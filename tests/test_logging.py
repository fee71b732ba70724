"""Tests for logging utilities and the event sink."""

import logging
import threading
import time

import pytest

from nyati.logging import (
    TRACE,
    EventSink,
    configure_logging,
    get_level_from_verbosity,
    log_performance,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestVerbosity:
    """Tests for verbosity flag mapping."""

    def test_levels(self):
        assert get_level_from_verbosity(0) == logging.WARNING
        assert get_level_from_verbosity(1) == logging.INFO
        assert get_level_from_verbosity(2) == logging.DEBUG
        assert get_level_from_verbosity(3) == TRACE

    def test_more_flags_stay_at_trace(self):
        assert get_level_from_verbosity(7) == TRACE

    def test_trace_level_name(self):
        assert logging.getLevelName(TRACE) == "TRACE"


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_default(self, restore_root_logger):
        configure_logging()
        assert restore_root_logger.level == logging.WARNING
        assert len(restore_root_logger.handlers) == 1

    def test_configure_level(self, restore_root_logger):
        configure_logging(level=logging.DEBUG)
        assert restore_root_logger.level == logging.DEBUG

    def test_reconfigure_replaces_handlers(self, restore_root_logger):
        configure_logging()
        configure_logging(level=logging.INFO)
        assert len(restore_root_logger.handlers) == 1

    def test_log_file(self, restore_root_logger, tmp_path):
        log_file = tmp_path / "logs" / "nyati.log"
        configure_logging(level=logging.WARNING, log_file=log_file, file_level=logging.INFO)

        assert restore_root_logger.level == logging.INFO
        logging.getLogger("nyati.test").info("written to file")
        for handler in restore_root_logger.handlers:
            handler.flush()

        assert "written to file" in log_file.read_text()


class TestLogPerformance:
    """Tests for log_performance context manager."""

    def test_duration_logged(self, caplog):
        logger = logging.getLogger("test.perf")
        caplog.set_level(logging.INFO, logger="test.perf")

        with log_performance(logger, "Run", hosts=5):
            time.sleep(0.01)

        assert "Run completed in 0." in caplog.text
        assert "hosts=5" in caplog.text

    def test_threshold(self, caplog):
        logger = logging.getLogger("test.perf.threshold")
        caplog.set_level(logging.INFO, logger="test.perf.threshold")

        with log_performance(logger, "Fast run", threshold=1.0):
            pass
        with log_performance(logger, "Slow run", threshold=0.001):
            time.sleep(0.01)

        assert "Fast run" not in caplog.text
        assert "Slow run completed" in caplog.text


class TestEventSink:
    """Tests for the run event stream."""

    def test_delivers_in_emit_order(self):
        lines = []
        sink = EventSink()
        sink.subscribe(lines.append)

        with sink:
            for i in range(50):
                assert sink.emit(f"line {i}")

        assert lines == [f"line {i}" for i in range(50)]
        assert sink.dropped == 0

    def test_every_subscriber_receives_lines(self):
        first, second = [], []
        sink = EventSink()
        sink.subscribe(first.append)
        sink.subscribe(second.append)

        with sink:
            sink.emit("deploy@web01: Running")

        assert first == second == ["deploy@web01: Running"]

    def test_unsubscribe(self):
        lines = []
        sink = EventSink()
        sink.subscribe(lines.append)
        sink.unsubscribe(lines.append)
        sink.unsubscribe(lines.append)

        with sink:
            sink.emit("ignored")

        assert lines == []

    def test_emit_before_open_is_dropped(self):
        sink = EventSink()
        assert not sink.emit("too early")
        assert sink.dropped == 1

    def test_emit_after_close_is_dropped(self):
        lines = []
        sink = EventSink()
        sink.subscribe(lines.append)
        with sink:
            sink.emit("inside")

        assert not sink.is_open
        assert not sink.emit("too late")
        assert lines == ["inside"]
        assert sink.dropped == 1

    def test_full_queue_drops_without_blocking(self):
        started = threading.Event()
        release = threading.Event()
        lines = []

        def slow(line):
            started.set()
            release.wait(timeout=5)
            lines.append(line)

        sink = EventSink(maxsize=2)
        sink.subscribe(slow)
        sink.open()
        try:
            sink.emit("first")
            assert started.wait(timeout=5)
            # The drain thread is stuck in the subscriber holding "first".
            assert sink.emit("second")
            assert sink.emit("third")
            assert not sink.emit("fourth")
            assert sink.dropped == 1
        finally:
            release.set()
            sink.close()

        assert lines == ["first", "second", "third"]

    def test_failing_subscriber_does_not_stop_delivery(self):
        lines = []

        def broken(line):
            raise RuntimeError("subscriber bug")

        sink = EventSink()
        sink.subscribe(broken)
        sink.subscribe(lines.append)
        with sink:
            sink.emit("one")
            sink.emit("two")

        assert lines == ["one", "two"]

    def test_lines_are_logged(self, caplog):
        caplog.set_level(logging.INFO, logger="nyati.events")

        with EventSink() as sink:
            sink.emit("migrate@web01: Succeeded")

        assert "migrate@web01: Succeeded" in caplog.text

    def test_flush_waits_for_pending_lines(self):
        lines = []

        def slow(line):
            time.sleep(0.02)
            lines.append(line)

        sink = EventSink()
        sink.subscribe(slow)
        with sink:
            for i in range(5):
                sink.emit(f"line {i}")
            sink.flush()
            assert lines == [f"line {i}" for i in range(5)]

    def test_flush_on_closed_sink_returns(self):
        EventSink().flush()

    def test_open_and_close_are_idempotent(self):
        sink = EventSink()
        sink.close()
        assert sink.open() is sink
        assert sink.open() is sink
        assert sink.is_open
        sink.close()
        sink.close()
        assert not sink.is_open
