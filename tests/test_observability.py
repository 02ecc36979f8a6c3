"""Tests for the observability module.

Tests for metrics collection, logging configuration and tracing.
"""
import json
import logging
from logging.handlers import RotatingFileHandler

import pytest

from notevault.observability import (
    MetricsCollector,
    configure_logging,
    metrics,
    timed_operation,
    traced,
)


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_record_success_and_failure(self):
        collector = MetricsCollector()
        collector.record_operation("save_note", 10.0, success=True)
        collector.record_operation("save_note", 30.0, success=False, error="disk full")

        recorded = collector.get_metrics()["save_note"]
        assert recorded["count"] == 2
        assert recorded["success_count"] == 1
        assert recorded["error_count"] == 1
        assert recorded["avg_duration_ms"] == 20.0
        assert recorded["min_duration_ms"] == 10.0
        assert recorded["max_duration_ms"] == 30.0
        assert recorded["last_error"] == "disk full"
        assert recorded["last_error_time"] is not None

    def test_summary(self):
        collector = MetricsCollector()
        collector.record_operation("search", 1.0, success=True)
        collector.record_operation("create_note", 1.0, success=False, error="x")
        summary = collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_errors"] == 1
        assert summary["operations_tracked"] == ["create_note", "search"]
        assert summary["uptime_seconds"] >= 0

    def test_reset(self):
        collector = MetricsCollector()
        collector.record_operation("search", 1.0, success=True)
        collector.reset()
        assert collector.get_metrics() == {}

    def test_save_metrics(self, temp_dir):
        collector = MetricsCollector()
        collector.record_operation("search", 2.5, success=True)
        path = collector.save_metrics(temp_dir / "out" / "metrics.json")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["operations"]["search"]["count"] == 1
        assert data["summary"]["total_operations"] == 1
        assert not (temp_dir / "out" / "metrics.tmp").exists()


class TestTimedOperation:
    def test_records_success(self):
        with timed_operation("export_snapshot") as op:
            op["result_count"] = 3
        assert metrics.get_metrics()["export_snapshot"]["success_count"] == 1

    def test_records_and_reraises_error(self):
        with pytest.raises(RuntimeError):
            with timed_operation("export_snapshot"):
                raise RuntimeError("boom")
        recorded = metrics.get_metrics()["export_snapshot"]
        assert recorded["error_count"] == 1
        assert recorded["last_error"] == "boom"


class TestTraced:
    def test_uses_function_name_by_default(self):
        @traced()
        def count_things():
            return [1, 2]

        assert count_things() == [1, 2]
        assert metrics.get_metrics()["count_things"]["count"] == 1

    def test_explicit_name_and_error(self):
        class Service:
            @traced("rename_note")
            def rename(self, note_id, title):
                raise ValueError(f"cannot rename {note_id}")

        with pytest.raises(ValueError):
            Service().rename("0:1", "New")
        recorded = metrics.get_metrics()["rename_note"]
        assert recorded["error_count"] == 1
        assert "0:1" in recorded["last_error"]

    def test_preserves_metadata(self):
        @traced("documented")
        def documented():
            """Docstring survives."""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docstring survives."


class TestConfigureLogging:
    def test_creates_log_file(self, temp_dir, clean_logger):
        log_dir = configure_logging(temp_dir / "logs", level=logging.INFO, console=False)
        assert log_dir == temp_dir / "logs"

        logging.getLogger("notevault.test").info("hello from the test")
        for handler in clean_logger.handlers:
            handler.flush()
        text = (log_dir / "notevault.log").read_text(encoding="utf-8")
        assert "hello from the test" in text

    def test_is_idempotent(self, temp_dir, clean_logger):
        configure_logging(temp_dir, console=False)
        configure_logging(temp_dir, console=False)
        file_handlers = [
            h for h in clean_logger.handlers if isinstance(h, RotatingFileHandler)
        ]
        assert len(file_handlers) == 1
