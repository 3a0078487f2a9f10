"""Tests for the ``cdc-testcluster`` CLI."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import yaml
from typer.testing import CliRunner

from cdc_testcluster.cli import app
from cdc_testcluster.config import HarnessSettings
from cdc_testcluster.errors import ReadinessTimeoutError

runner = CliRunner()


@pytest.fixture(autouse=True)
def _no_logging_setup():
    with patch("cdc_testcluster.cli.configure_logging"):
        yield


@pytest.fixture
def controller():
    with patch("cdc_testcluster.cli.ClusterController") as cls:
        cluster = cls.return_value
        cluster.settings = HarnessSettings()
        cluster.docker_host_ip = "172.17.0.1"
        cluster.started_without = frozenset()
        cluster.postgres_hostport = "localhost:32768"
        cluster.zookeeper_hostport = "localhost:32769"
        cluster.kafka_hostport = "localhost:32770"
        cluster.schema_registry_url = "http://localhost:32771"
        cluster.schema_registry_needed.return_value = False
        yield cls


class TestServices:
    def test_lists_services(self):
        result = runner.invoke(app, ["services"])
        assert result.exit_code == 0
        assert "zookeeper" in result.output
        assert "kafka" in result.output


class TestCompose:
    def test_writes_file(self, tmp_path):
        output = tmp_path / "docker-compose.yml"
        result = runner.invoke(app, ["compose", "-o", str(output), "--project-name", "ci"])
        assert result.exit_code == 0
        data = yaml.safe_load(output.read_text())
        assert data["name"] == "ci"
        assert "bottledwater-avro" in data["services"]


class TestUp:
    def test_starts_with_options(self, controller):
        result = runner.invoke(app, ["up", "--format", "avro", "--valgrind", "-w", "kafka", "-w", "zookeeper"])
        assert result.exit_code == 0, result.output

        config, settings = controller.call_args.args
        assert config.bottledwater_format == "avro"
        assert config.valgrind is True
        controller.return_value.start.assert_called_once()
        assert list(controller.return_value.start.call_args.kwargs["without"]) == ["kafka", "zookeeper"]
        assert "localhost:32768" in result.output

    def test_start_failure_exits_nonzero(self, controller):
        controller.return_value.start.side_effect = ReadinessTimeoutError("postgres", 10)
        result = runner.invoke(app, ["up"])
        assert result.exit_code == 1
        controller.return_value.stop.assert_called_once_with(reset=False)

    def test_invalid_option_exits_nonzero(self, controller):
        result = runner.invoke(app, ["up", "--postgres-version", "8.4"])
        assert result.exit_code == 1
        controller.assert_not_called()

    def test_compose_file_option(self, controller, tmp_path):
        compose_file = tmp_path / "custom.yml"
        runner.invoke(app, ["up", "--file", str(compose_file)])
        _, settings = controller.call_args.args
        assert settings.compose_file == compose_file


class TestDown:
    def test_stops_with_dump(self, controller):
        result = runner.invoke(app, ["down"])
        assert result.exit_code == 0
        controller.return_value.stop.assert_called_once_with(dump_logs=True)

    def test_no_dump_logs(self, controller):
        result = runner.invoke(app, ["down", "--no-dump-logs"])
        assert result.exit_code == 0
        controller.return_value.stop.assert_called_once_with(dump_logs=False)
