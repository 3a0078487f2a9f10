"""
Shared pytest fixtures for cdc-testcluster tests.

Every collaborator of ``ClusterController`` is replaced with a
``MagicMock``: no Docker, Postgres, ZooKeeper or schema registry is
needed, and ``sleep`` is a mock so waits return immediately.

Published ports handed out by the fake compose runner::

    postgres / postgres-94  32768
    zookeeper               32769
    kafka                   32770
    schema-registry         32771
"""

from __future__ import annotations

import io
import sys
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

# Ensure the package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cdc_testcluster.clients import PostgresClient
from cdc_testcluster.cluster import ClusterController
from cdc_testcluster.config import ClusterConfig, HarnessSettings
from cdc_testcluster.container import ContainerLogs, ContainerRecord

MAPPED_PORTS = {
    "postgres": 32768,
    "postgres-94": 32768,
    "zookeeper": 32769,
    "kafka": 32770,
    "schema-registry": 32771,
}

IP_ROUTE_OUTPUT = (
    "default via 172.17.0.1 dev eth0 \n"
    "172.17.0.0/16 dev eth0 proto kernel scope link src 172.17.0.2 \n"
)


@pytest.fixture
def containers() -> dict[str, ContainerRecord]:
    """Containers the fake docker CLI knows, keyed by id and by name."""
    return {}


def add_container(
    containers: dict[str, ContainerRecord],
    service: str,
    running: bool = True,
    exit_code: int = 0,
) -> ContainerRecord:
    record = ContainerRecord(
        id=f"id-{service}",
        name=f"cdc-testcluster-{service}-1",
        running=running,
        exit_code=exit_code,
        status="running" if running else "exited",
    )
    containers[record.id] = record
    containers[record.name] = record
    return record


@pytest.fixture
def compose(containers: dict[str, ContainerRecord]) -> MagicMock:
    runner = MagicMock(name="compose")
    runner.port.side_effect = lambda service, port: f"0.0.0.0:{MAPPED_PORTS[service]}"
    runner.container_id.side_effect = lambda service: f"id-{service}"
    runner.container_names.side_effect = lambda: sorted({c.name for c in containers.values()})
    return runner


@pytest.fixture
def docker(containers: dict[str, ContainerRecord]) -> MagicMock:
    cli = MagicMock(name="docker")
    cli.run.return_value = IP_ROUTE_OUTPUT

    def inspect(id_or_name: str) -> ContainerRecord:
        if id_or_name not in containers:
            service = id_or_name.removeprefix("id-")
            add_container(containers, service)
        return containers[id_or_name]

    cli.inspect.side_effect = inspect
    cli.logs.return_value = ContainerLogs(stdout="hello from stdout\n", stderr="oops on stderr\n")
    return cli


@pytest.fixture
def postgres_client() -> MagicMock:
    client = MagicMock(spec=PostgresClient)
    client.ping.return_value = True
    client.connect.return_value = MagicMock(name="pg_connection")
    return client


@pytest.fixture
def zookeeper_factory() -> MagicMock:
    return MagicMock(name="zookeeper_factory")


@pytest.fixture
def schema_registry_factory() -> MagicMock:
    return MagicMock(name="schema_registry_factory")


@pytest.fixture
def tcp_probe() -> MagicMock:
    return MagicMock(name="tcp_probe", return_value=True)


@pytest.fixture
def sleep() -> MagicMock:
    return MagicMock(name="sleep")


@pytest.fixture
def progress() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def settings(tmp_path: Path) -> HarnessSettings:
    return HarnessSettings(compose_file=tmp_path / "docker-compose.yml", work_dir=tmp_path)


@pytest.fixture
def make_cluster(
    settings: HarnessSettings,
    compose: MagicMock,
    docker: MagicMock,
    postgres_client: MagicMock,
    zookeeper_factory: MagicMock,
    schema_registry_factory: MagicMock,
    tcp_probe: MagicMock,
    sleep: MagicMock,
    progress: io.StringIO,
):
    """Factory building a controller wired to the fakes above."""

    def _make(config: ClusterConfig | None = None, **kwargs: Any) -> ClusterController:
        return ClusterController(
            config,
            kwargs.pop("settings", settings),
            compose=compose,
            docker=docker,
            postgres_client=postgres_client,
            zookeeper_factory=zookeeper_factory,
            schema_registry_factory=schema_registry_factory,
            tcp_probe=tcp_probe,
            sleep=sleep,
            progress=progress,
            **kwargs,
        )

    return _make


@pytest.fixture
def cluster(make_cluster) -> ClusterController:
    return make_cluster()
