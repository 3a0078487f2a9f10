"""
Tests for the logging module.

Tests verify:
- stdlib records with ``extra=`` render as structured key/value pairs
- The Valgrind marker survives either renderer verbatim
- Bound context shows up on structlog events
"""

import io
import json
import logging

import pytest
import structlog

from cdc_testcluster.cluster import VALGRIND_MARKER
from cdc_testcluster.logging import bind_context, clear_context, configure_logging, get_logger


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    clear_context()
    structlog.reset_defaults()


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


class TestConfigureLogging:
    """Test stdlib integration."""

    def test_json_extras(self):
        stream = io.StringIO()
        configure_logging(json_format=True, stream=stream)

        logging.getLogger("cdc_testcluster.cluster").info(
            "cluster.docker_host_detected", extra={"docker_host_ip": "172.17.0.1"}
        )

        (event,) = _lines(stream)
        assert event["event"] == "cluster.docker_host_detected"
        assert event["docker_host_ip"] == "172.17.0.1"
        assert event["level"] == "info"
        assert event["logger"] == "cdc_testcluster.cluster"
        assert event["service"] == "cdc-testcluster"

    def test_debug_suppressed_at_info(self):
        stream = io.StringIO()
        configure_logging(level="INFO", json_format=True, stream=stream)
        logging.getLogger("cdc_testcluster.retry").debug("readiness.not_ready")
        assert stream.getvalue() == ""

    def test_debug_level(self):
        stream = io.StringIO()
        configure_logging(level="DEBUG", json_format=True, stream=stream)
        logging.getLogger("cdc_testcluster.retry").debug("readiness.not_ready")
        assert _lines(stream)[0]["event"] == "readiness.not_ready"

    @pytest.mark.parametrize("json_format", [True, False])
    def test_valgrind_marker_verbatim(self, json_format):
        stream = io.StringIO()
        configure_logging(json_format=json_format, stream=stream)
        logging.getLogger("cdc_testcluster.cluster").error(VALGRIND_MARKER)
        assert VALGRIND_MARKER in stream.getvalue()

    def test_custom_service_name(self):
        stream = io.StringIO()
        configure_logging(json_format=True, service="bw-ci", stream=stream)
        logging.getLogger("cdc_testcluster").warning("cluster.kept")
        assert _lines(stream)[0]["service"] == "bw-ci"


class TestContext:
    def test_bound_context_on_structlog_events(self):
        stream = io.StringIO()
        configure_logging(json_format=True, stream=stream)
        bind_context(run="nightly")
        get_logger("tests").info("fixtures_loaded", tables=3)

        (event,) = _lines(stream)
        assert event["run"] == "nightly"
        assert event["tables"] == 3

    def test_clear_context(self):
        stream = io.StringIO()
        configure_logging(json_format=True, stream=stream)
        bind_context(run="nightly")
        clear_context()
        get_logger("tests").info("fixtures_loaded")
        assert "run" not in _lines(stream)[0]
