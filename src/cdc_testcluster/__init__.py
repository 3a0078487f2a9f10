"""cdc-testcluster: Docker Compose test cluster for Postgres change data capture.

Boots ZooKeeper, Kafka, Postgres with the bottledwater logical decoding
plugin, an optional Confluent schema registry and the Bottled Water
client, waits for each to become ready, hands out live connections and
tears it all down afterwards, dumping logs of containers that failed.

Key Concepts:
    ClusterController: Sequences startup, readiness polling and teardown;
        exposes ``postgres``, ``zookeeper``, ``kafka_hostport`` and
        ``schema_registry_url`` handles.
    ClusterConfig: Pydantic model of the per-run container options
        (Kafka policies, Postgres version, Bottled Water format and flags,
        Valgrind).
    HarnessSettings: Pydantic model of how the harness reaches Docker.
    ServiceSpec: Frozen dataclass for each compose service.
    poll_until / RetryingProxy: Readiness polling and command retries.

Architecture Decisions:
    - subprocess, not docker-py: ``docker`` and ``docker compose`` CLIs
      are driven through subprocess and work with any compatible runtime.
    - Explicit config: options are rendered into the environment of each
      compose command instead of mutating ``os.environ``.
    - Injectable collaborators: compose runner, docker CLI, database and
      registry clients and the sleep function can all be swapped, so the
      controller is unit-testable without Docker.

Related Modules:
    - :mod:`cdc_testcluster.cluster`: Lifecycle controller
    - :mod:`cdc_testcluster.config`: Configuration models
    - :mod:`cdc_testcluster.services`: Service registry
    - :mod:`cdc_testcluster.compose`: Compose generation and runner
    - :mod:`cdc_testcluster.container`: Docker CLI wrapper
    - :mod:`cdc_testcluster.clients`: Postgres, ZooKeeper, schema registry
    - :mod:`cdc_testcluster.retry`: Retry and polling helpers
    - :mod:`cdc_testcluster.pytest_plugin`: ``test_cluster`` fixture
    - :mod:`cdc_testcluster.cli`: ``cdc-testcluster`` command

Example:
    >>> from cdc_testcluster import ClusterConfig
    >>> ClusterConfig().bottledwater_service
    'bottledwater-json'
"""

from __future__ import annotations

from cdc_testcluster.cluster import BeforeHook, ClusterController, ClusterState, VALGRIND_MARKER
from cdc_testcluster.config import VALGRIND_ERROR_EXITCODE, ClusterConfig, HarnessSettings
from cdc_testcluster.errors import (
    ClusterError,
    ClusterStateError,
    CommandError,
    DockerNotFoundError,
    HostDetectionError,
    ReadinessTimeoutError,
    ServiceExcludedError,
)
from cdc_testcluster.retry import RetryingProxy, poll_until
from cdc_testcluster.services import SERVICES, ServiceSpec, get_service

__all__ = [
    "BeforeHook",
    "ClusterConfig",
    "ClusterController",
    "ClusterError",
    "ClusterState",
    "ClusterStateError",
    "CommandError",
    "DockerNotFoundError",
    "HarnessSettings",
    "HostDetectionError",
    "ReadinessTimeoutError",
    "RetryingProxy",
    "SERVICES",
    "ServiceExcludedError",
    "ServiceSpec",
    "VALGRIND_ERROR_EXITCODE",
    "VALGRIND_MARKER",
    "get_service",
    "poll_until",
]
