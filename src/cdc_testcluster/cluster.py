"""Cluster controller: start, poll, expose, tear down.

``ClusterController`` boots the compose project in dependency order,
blocks until each dependency answers, exposes live handles and tears
everything down again, dumping logs of containers that died.

Lifecycle::

    uninitialized ──start()──▶ starting ──(all ready)──▶ started
                                  ▲                         │
                                  └──────start()───── stopped ◀─stop()

Startup order:
    1. discover the Docker host address (``ip route`` in a probe container)
    2. ``up --no-deps`` zookeeper, kafka and the selected Postgres
    3. ping Postgres, connect, create the bottledwater + hstore extensions
    4. unless kafka is excluded: TCP-wait zookeeper, connect kazoo,
       TCP-wait kafka
    5. avro only: start the schema registry and poll ``/subjects``
    6. start Bottled Water and wait for its container to run
    7. settle for a few seconds

Everything is synchronous and single-threaded. Each wait sleeps a fixed
second between probes; the only way out of a wait besides success is
exhausting its attempts, which raises ``ReadinessTimeoutError``.

Example::

    cluster = ClusterController(ClusterConfig(bottledwater_format="avro"))
    cluster.before_service("postgres", "Loading fixtures", load_fixtures)
    cluster.start()
    try:
        cur = cluster.postgres.cursor()
        ...
    finally:
        cluster.stop()
"""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, TextIO

from cdc_testcluster.clients import (
    PostgresClient,
    SchemaRegistryClient,
    close_zookeeper,
    connect_zookeeper,
    tcp_port_open,
)
from cdc_testcluster.compose import ComposeRunner, generate_cluster_compose, write_compose_file
from cdc_testcluster.config import VALGRIND_ERROR_EXITCODE, ClusterConfig, HarnessSettings
from cdc_testcluster.container import ContainerRecord, DockerCLI, parse_default_gateway
from cdc_testcluster.errors import (
    ClusterError,
    ClusterStateError,
    HostDetectionError,
    ServiceExcludedError,
)
from cdc_testcluster.retry import RetryingProxy, poll_until
from cdc_testcluster.services import (
    KAFKA,
    POSTGRES_EXTENSIONS,
    SCHEMA_REGISTRY,
    ZOOKEEPER,
    get_service,
)

logger = logging.getLogger(__name__)

VALGRIND_MARKER = "VALGRIND_ERROR: Bottled Water had Valgrind errors!"
"""Logged on teardown when Valgrind reported errors; CI greps for it."""

_RULE = "-" * 80


class ClusterState(str, Enum):
    """Lifecycle state of a cluster."""

    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    STARTED = "started"
    STOPPED = "stopped"


@dataclass(frozen=True)
class BeforeHook:
    """Callback run right before a service is started."""

    description: str
    callback: Callable[[ClusterController], Any]


class ClusterController:
    """Starts, exposes and stops the change-data-capture test cluster.

    Parameters
    ----------
    config
        Per-run container options. Replaced by defaults on ``reset()``.
    settings
        Harness settings (compose file, host, retries, settle time).
    compose
        Compose runner. Built from ``settings`` if omitted.
    docker
        Docker CLI wrapper. Built if omitted.
    postgres_client
        Opens and pings Postgres connections.
    zookeeper_factory
        ``"host:port" -> client`` for the coordination service.
    schema_registry_factory
        ``base_url -> client`` with a ``subjects()`` method.
    tcp_probe
        ``(host, port) -> bool``; raises while nothing listens.
    sleep
        Sleep function used by every wait.
    progress
        Stream for waiting/settling progress (stderr if omitted).
    """

    def __init__(
        self,
        config: ClusterConfig | None = None,
        settings: HarnessSettings | None = None,
        *,
        compose: Any = None,
        docker: Any = None,
        postgres_client: PostgresClient | None = None,
        zookeeper_factory: Callable[[str], Any] = connect_zookeeper,
        schema_registry_factory: Callable[[str], Any] = SchemaRegistryClient,
        tcp_probe: Callable[[str, int], bool] = tcp_port_open,
        sleep: Callable[[float], None] = time.sleep,
        progress: TextIO | None = None,
    ) -> None:
        self.config = config if config is not None else ClusterConfig()
        self.settings = settings or HarnessSettings()
        self.host = self.settings.host

        self._compose_runner = compose or ComposeRunner(
            self.compose_file,
            project_name=self.settings.project_name,
        )
        self._compose = RetryingProxy(self._compose_runner, retries=self.settings.command_retries, sleep=sleep)
        self._docker = RetryingProxy(docker or DockerCLI(), retries=self.settings.command_retries, sleep=sleep)

        self._postgres_client = postgres_client or PostgresClient()
        self._zookeeper_factory = zookeeper_factory
        self._schema_registry_factory = schema_registry_factory
        self._tcp_probe = tcp_probe
        self._sleep = sleep
        self._progress = progress

        self.state = ClusterState.UNINITIALIZED
        self.docker_host_ip: str | None = None
        self._run_config: ClusterConfig | None = None
        self._started_without: frozenset[str] = frozenset()
        self._before_hooks: dict[str, list[BeforeHook]] = {}
        self._clear_handles()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def compose_file(self) -> Path:
        if self.settings.compose_file is not None:
            return self.settings.compose_file
        return self.settings.work_dir / "docker-compose.yml"

    @property
    def started_without(self) -> frozenset[str]:
        return self._started_without

    @property
    def active_config(self) -> ClusterConfig:
        """Config of the current run, or the pending config before a start."""
        return self._run_config if self._run_config is not None else self.config

    def reset(self) -> None:
        """Restore default options and drop every before-hook."""
        self.config = ClusterConfig.defaults()
        self._before_hooks = {}

    def before_service(
        self,
        service: str,
        description: str,
        callback: Callable[[ClusterController], Any] | None = None,
    ) -> None:
        """Run ``callback(self)`` right before ``service`` is started."""
        if callback is None:
            raise ValueError("before_service requires a callback")
        self._before_hooks.setdefault(service, []).append(BeforeHook(description, callback))

    def before(self, service: str, description: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of :meth:`before_service`."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.before_service(service, description, func)
            return func

        return decorator

    def hooks_for(self, service: str) -> list[BeforeHook]:
        return list(self._before_hooks.get(service, ()))

    def schema_registry_needed(self) -> bool:
        return self.active_config.schema_registry_required and SCHEMA_REGISTRY not in self._started_without

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self.state == ClusterState.STARTED

    @property
    def stopped(self) -> bool:
        return self.state == ClusterState.STOPPED

    def start(self, without: Iterable[str] = ()) -> None:
        """Boot the cluster, skipping the services named in ``without``.

        Raises
        ------
        ClusterStateError
            If the cluster is already started.
        ReadinessTimeoutError
            If a service never became ready.
        HostDetectionError
            If the Docker host address could not be determined.
        """
        if self.state == ClusterState.STARTED:
            raise ClusterStateError(f"cluster already {self.state.value}!", self.state.value)

        without = frozenset(without)
        for service in without:
            get_service(service)

        # Handles left open by an earlier failed start.
        self._close_handles()
        self.state = ClusterState.STARTING
        self._started_without = without
        self._run_config = self.config.model_copy()
        cfg = self._run_config
        logger.info(
            "cluster.starting",
            extra={"without": sorted(without), "postgres": cfg.postgres_service, "bottledwater": cfg.bottledwater_service},
        )

        self._ensure_compose_file()
        self.docker_host_ip = self._detect_docker_host_ip()
        self._compose_runner.environment = cfg.to_environment(self.docker_host_ip)

        self._start_services(ZOOKEEPER, KAFKA, cfg.postgres_service)

        pg_port = self._wait_for_port(
            cfg.postgres_service,
            get_service(cfg.postgres_service).port,
            lambda port: self._postgres_client.ping(self.host, port),
            max_tries=10,
        )
        self._postgres_port = pg_port
        self._postgres = self._postgres_client.connect(self.host, pg_port)
        self._postgres_client.ensure_extensions(self._postgres, POSTGRES_EXTENSIONS)

        if KAFKA not in without:
            self._zookeeper_port = self._wait_for_tcp_port(ZOOKEEPER, get_service(ZOOKEEPER).port)
            self._zookeeper = self._zookeeper_factory(f"{self.host}:{self._zookeeper_port}")
            self._kafka_port = self._wait_for_tcp_port(KAFKA, get_service(KAFKA).port)

        if self.schema_registry_needed():
            self._start_services(SCHEMA_REGISTRY)
            self._schema_registry_port = self._wait_for_port(
                SCHEMA_REGISTRY,
                get_service(SCHEMA_REGISTRY).port,
                self._probe_schema_registry,
                max_tries=10,
            )

        self._start_services(cfg.bottledwater_service)
        self._wait_for_container(cfg.bottledwater_service)

        self._settle()
        self.state = ClusterState.STARTED
        logger.info("cluster.started", extra={"docker_host_ip": self.docker_host_ip})

    def stop(self, reset: bool = True, dump_logs: bool = True) -> None:
        """Tear the cluster down. Never raises for cleanup failures.

        Parameters
        ----------
        reset
            Restore default options and clear before-hooks afterwards.
        dump_logs
            Log stdout/stderr of every container that exited non-zero.
        """
        if self.state == ClusterState.STOPPED:
            return

        self._close_handles()

        valgrind = self.active_config.valgrind
        marker_emitted = False

        if dump_logs:
            valgrind_failure = self._valgrind_failed_container() if valgrind else None
            for container in self._failed_containers():
                if valgrind_failure is not None and container.id == valgrind_failure.id:
                    logger.error(VALGRIND_MARKER)
                    marker_emitted = True
                self._dump_container_logs(container)

        self._best_effort("compose.stop_failed", self._compose.stop)

        if valgrind and not marker_emitted:
            self._check_valgrind_errors()

        self._best_effort("compose.rm_failed", self._compose.rm, force=True, volumes=True)

        if reset:
            self.reset()

        self._run_config = None
        self.state = ClusterState.STOPPED
        logger.info("cluster.stopped")

    def restart(self, without: Iterable[str] | None = None, dump_logs: bool = True) -> None:
        """``stop(reset=False)`` then ``start()``; options and hooks survive.

        ``without`` defaults to the services left out of the previous run.
        """
        if without is None:
            without = self._started_without
        self.stop(reset=False, dump_logs=dump_logs)
        self.start(without=without)

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    @property
    def postgres(self) -> Any:
        self._check_started()
        return self._require("postgres", self._postgres)

    @property
    def postgres_hostport(self) -> str:
        self._check_started()
        return f"{self.host}:{self._require('postgres', self._postgres_port)}"

    @property
    def zookeeper(self) -> Any:
        self._check_started()
        return self._require("zookeeper", self._zookeeper)

    @property
    def zookeeper_hostport(self) -> str:
        self._check_started()
        return f"{self.host}:{self._require('zookeeper', self._zookeeper_port)}"

    @property
    def kafka_host(self) -> str:
        self._check_started()
        return self.host

    @property
    def kafka_port(self) -> int:
        self._check_started()
        return self._require("kafka", self._kafka_port)

    @property
    def kafka_hostport(self) -> str:
        return f"{self.kafka_host}:{self.kafka_port}"

    @property
    def schema_registry(self) -> Any:
        self._check_started()
        return self._require("schema-registry", self._schema_registry)

    @property
    def schema_registry_url(self) -> str:
        self._check_started()
        return f"http://{self.host}:{self._require('schema-registry', self._schema_registry_port)}"

    def healthy(self) -> bool:
        return self.postgres_running() and self.bottledwater_running()

    def postgres_running(self) -> bool:
        return self._service_running(self.active_config.postgres_service)

    def bottledwater_running(self) -> bool:
        return self._service_running(self.active_config.bottledwater_service)

    # ------------------------------------------------------------------
    # Startup helpers
    # ------------------------------------------------------------------

    def _ensure_compose_file(self) -> None:
        if self.settings.compose_file is None:
            write_compose_file(
                generate_cluster_compose(project_name=self.settings.project_name),
                self.compose_file,
            )

    def _detect_docker_host_ip(self) -> str:
        output = self._docker.run("run", "--rm", self.settings.probe_image, "ip", "route")
        host_ip = parse_default_gateway(output)
        if host_ip is None:
            raise HostDetectionError(f"Unexpected output from `ip route`: {output.splitlines()!r}")
        logger.info("cluster.docker_host_detected", extra={"docker_host_ip": host_ip})
        return host_ip

    def _start_services(self, *services: str) -> None:
        to_start = [s for s in services if s not in self._started_without]
        if not to_start:
            return
        for service in to_start:
            self._run_before_hooks(service)
        self._compose.up(to_start, detached=True, no_deps=True)
        logger.info("cluster.services_started", extra={"services": to_start})

    def _run_before_hooks(self, service: str) -> None:
        for hook in self._before_hooks.get(service, ()):
            self._write(f"{hook.description} before starting {service}... ")
            hook.callback(self)
            self._write("OK\n")

    def _check_not_excluded(self, service: str) -> None:
        if self.state == ClusterState.STARTING and service in self._started_without:
            raise ServiceExcludedError(service)

    def _wait_for_port(
        self,
        service: str,
        container_port: int,
        probe: Callable[[int], Any],
        max_tries: int = 5,
    ) -> int:
        self._check_not_excluded(service)

        hostport = self._compose.port(service, container_port)
        mapped_port = int(hostport.rpartition(":")[2])

        return poll_until(
            lambda: mapped_port if probe(mapped_port) else None,
            service=service,
            message=f"{service} on port {mapped_port}",
            max_tries=max_tries,
            sleep=self._sleep,
            progress=self._stream,
        )

    def _wait_for_tcp_port(self, service: str, container_port: int, max_tries: int = 5) -> int:
        return self._wait_for_port(
            service,
            container_port,
            lambda port: self._tcp_probe(self.host, port),
            max_tries=max_tries,
        )

    def _wait_for_container(self, service: str, max_tries: int = 5) -> ContainerRecord:
        self._check_not_excluded(service)

        def probe() -> ContainerRecord | None:
            container = self._container_for_service(service)
            if container is not None and container.running:
                return container
            return None

        return poll_until(
            probe,
            service=service,
            max_tries=max_tries,
            sleep=self._sleep,
            progress=self._stream,
        )

    def _probe_schema_registry(self, port: int) -> bool:
        client = self._schema_registry_factory(f"http://{self.host}:{port}")
        try:
            client.subjects()
        except Exception:
            client.close()
            raise
        if self._schema_registry is not None:
            self._schema_registry.close()
        self._schema_registry = client
        return True

    def _settle(self) -> None:
        self._write("Letting things settle")
        for _ in range(self.settings.settle_seconds):
            self._write(".")
            self._sleep(1)
        self._write(" OK\n")

    # ------------------------------------------------------------------
    # Teardown helpers
    # ------------------------------------------------------------------

    def _close_handles(self) -> None:
        if self._zookeeper is not None:
            self._best_effort("teardown.zookeeper_close_failed", close_zookeeper, self._zookeeper, level=logging.DEBUG)
        if self._postgres is not None:
            self._best_effort("teardown.postgres_close_failed", self._postgres.close, level=logging.DEBUG)
        if self._schema_registry is not None:
            self._best_effort("teardown.schema_registry_close_failed", self._schema_registry.close, level=logging.DEBUG)
        self._clear_handles()

    def _failed_containers(self) -> list[ContainerRecord]:
        try:
            names = self._compose.container_names()
        except (ClusterError, OSError) as exc:
            logger.warning("teardown.list_containers_failed", extra={"error": str(exc)})
            return []

        failed = []
        for name in names:
            try:
                container = self._docker.inspect(name)
            except (ClusterError, OSError) as exc:
                logger.warning("teardown.inspect_failed", extra={"container": name, "error": str(exc)})
                continue
            if container.exit_code != 0:
                failed.append(container)
        return failed

    def _valgrind_failed_container(self) -> ContainerRecord | None:
        try:
            container = self._container_for_service(self.active_config.bottledwater_service)
        except (ClusterError, OSError) as exc:
            logger.warning("teardown.inspect_failed", extra={"container": "bottledwater", "error": str(exc)})
            return None
        if container is not None and container.exit_code == VALGRIND_ERROR_EXITCODE:
            return container
        return None

    def _check_valgrind_errors(self) -> None:
        # Teardown usually runs in a session-scoped fixture finaliser where
        # a raised error cannot fail a test, so CI greps for the marker.
        container = self._valgrind_failed_container()
        if container is not None:
            logger.error(VALGRIND_MARKER)
            self._dump_container_logs(container)

    def _dump_container_logs(self, container: ContainerRecord) -> None:
        try:
            logs = self._docker.logs(container.id)
        except (ClusterError, OSError) as exc:
            logs = None
            logger.debug("teardown.logs_failed", extra={"container": container.name, "error": str(exc)})
        if logs is None or not logs.ok:
            logger.warning(
                "Failed to capture logs for container %s (exit code %d)",
                container.name,
                container.exit_code,
            )
            return
        for label, text in (("Stdout", logs.stdout), ("Stderr", logs.stderr)):
            if text.strip():
                logger.warning(
                    "%s from container %s (exit code %d)\n%s\n%s\n%s",
                    label,
                    container.name,
                    container.exit_code,
                    _RULE,
                    text.rstrip("\n"),
                    _RULE,
                )

    def _best_effort(self, event: str, func: Callable[..., Any], *args: Any, level: int = logging.WARNING, **kwargs: Any) -> None:
        try:
            func(*args, **kwargs)
        except Exception as exc:
            logger.log(level, event, extra={"error": f"{type(exc).__name__}: {exc}"})

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _clear_handles(self) -> None:
        self._postgres: Any = None
        self._postgres_port: int | None = None
        self._zookeeper: Any = None
        self._schema_registry: Any = None
        self._zookeeper_port: int | None = None
        self._kafka_port: int | None = None
        self._schema_registry_port: int | None = None

    def _container_for_service(self, service: str) -> ContainerRecord | None:
        container_id = self._compose.container_id(service)
        if not container_id:
            return None
        return self._docker.inspect(container_id)

    def _service_running(self, service: str) -> bool:
        self._check_started()
        container = self._container_for_service(service)
        return container is not None and container.running

    def _check_started(self) -> None:
        if self.state in (ClusterState.STARTED, ClusterState.STARTING):
            return
        if self.state == ClusterState.UNINITIALIZED:
            raise ClusterStateError("cluster not started", self.state.value)
        raise ClusterStateError(f"cluster {self.state.value}", self.state.value)

    def _require(self, name: str, value: Any) -> Any:
        if value is None:
            excluded = ", ".join(sorted(self._started_without)) or "nothing"
            raise ClusterStateError(
                f"{name} is not available in this run (started without: {excluded})",
                self.state.value,
            )
        return value

    @property
    def _stream(self) -> TextIO:
        return self._progress if self._progress is not None else sys.stderr

    def _write(self, text: str) -> None:
        self._stream.write(text)
        self._stream.flush()
