"""pytest plugin providing a session-wide test cluster.

Installed through the ``pytest11`` entry point. Tests ask for the
``test_cluster`` fixture; the cluster is created (not started) once per
session and always torn down at the end, unless ``--testcluster-keep`` is
given. Suites start it themselves so they can pick options and hooks::

    @pytest.fixture(scope="module")
    def cluster(test_cluster):
        test_cluster.config.bottledwater_format = "avro"
        test_cluster.start(without=["schema-registry"])
        yield test_cluster
        test_cluster.stop()
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from cdc_testcluster.cluster import ClusterController
from cdc_testcluster.config import ClusterConfig, HarnessSettings

logger = logging.getLogger(__name__)


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("cdc-testcluster")
    group.addoption(
        "--testcluster-keep",
        action="store_true",
        default=False,
        help="Leave the test cluster running after the session.",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "integration: needs a running Docker daemon")


@pytest.fixture(scope="session")
def test_cluster(request: pytest.FixtureRequest) -> Iterator[ClusterController]:
    """Session-wide cluster controller, stopped when the session ends."""
    cluster = ClusterController(ClusterConfig.from_env(), HarnessSettings.from_env())
    yield cluster
    if request.config.getoption("--testcluster-keep"):
        logger.info("cluster.kept", extra={"state": cluster.state.value})
        return
    cluster.stop()
