"""Tests for logging setup, metrics and operation tracing."""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from kol_noter_store.observability import (
    LOG_FILE_NAME,
    PACKAGE_LOGGER,
    MetricsCollector,
    configure_logging,
    metrics,
    timed_operation,
    traced,
)


@pytest.fixture
def clean_package_logger():
    """Detach whatever handlers a test adds to the package logger."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    before = list(package_logger.handlers)
    level = package_logger.level
    yield package_logger
    for handler in package_logger.handlers:
        if handler not in before:
            package_logger.removeHandler(handler)
            handler.close()
    package_logger.setLevel(level)


class TestConfigureLogging:
    def test_file_handler_created(self, clean_package_logger, temp_vault_dir):
        log_file = configure_logging("debug", log_dir=temp_vault_dir, console=False)
        assert log_file == temp_vault_dir / LOG_FILE_NAME
        assert clean_package_logger.level == logging.DEBUG
        logging.getLogger("kol_noter_store.test").info("hello file")
        for handler in clean_package_logger.handlers:
            handler.flush()
        assert "hello file" in log_file.read_text()

    def test_repeated_calls_do_not_stack_handlers(self, clean_package_logger, temp_vault_dir):
        configure_logging(log_dir=temp_vault_dir, console=False)
        configure_logging(log_dir=temp_vault_dir, console=False)
        file_handlers = [h for h in clean_package_logger.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1

    def test_console_only(self, clean_package_logger):
        assert configure_logging(logging.WARNING, console=True) is None
        assert clean_package_logger.level == logging.WARNING

    def test_unknown_level_name_defaults_to_info(self, clean_package_logger):
        configure_logging("chatty", console=False)
        assert clean_package_logger.level == logging.INFO


class TestMetricsCollector:
    def test_record_and_summarize(self):
        collector = MetricsCollector()
        collector.record_operation("search", 10.0, True)
        collector.record_operation("search", 30.0, False, error="boom")
        search = collector.get_metrics()["search"]
        assert search["count"] == 2
        assert search["success_rate"] == 0.5
        assert search["avg_duration_ms"] == 20.0
        assert search["min_duration_ms"] == 10.0
        assert search["last_error"] == "boom"

        summary = collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_errors"] == 1
        assert summary["operations_tracked"] == ["search"]

    def test_empty_summary(self):
        assert MetricsCollector().get_summary()["overall_success_rate"] == 1.0


class TestTimedOperation:
    def setup_method(self):
        metrics.reset()

    def test_success_recorded(self):
        with timed_operation("unit_op", query="x") as op:
            op["result_count"] = 3
        assert metrics.get_metrics()["unit_op"]["success_count"] == 1

    def test_failure_recorded_and_reraised(self):
        with pytest.raises(ValueError):
            with timed_operation("unit_fail"):
                raise ValueError("nope")
        recorded = metrics.get_metrics()["unit_fail"]
        assert recorded["error_count"] == 1
        assert recorded["last_error"] == "nope"

    def test_traced_decorator(self):
        @traced("traced_op")
        def produce():
            return [1, 2]

        assert produce() == [1, 2]
        assert produce.__name__ == "produce"
        assert metrics.get_metrics()["traced_op"]["count"] == 1
