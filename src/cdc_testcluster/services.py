"""Service registry for the test cluster.

Each service the compose project can launch is described by a frozen
``ServiceSpec``. The registry is the single source of truth for service
names, published container ports and the compose definition generated by
:mod:`cdc_testcluster.compose`.

Services::

    zookeeper          coordination service           2181
    kafka              message broker                 9092
    postgres           Postgres 9.5 + bottledwater    5432
    postgres-94        Postgres 9.4 + bottledwater    5432
    schema-registry    Confluent schema registry      8081
    bottledwater-json  capture client, JSON output    -
    bottledwater-avro  capture client, Avro output    -

Variant services (``postgres`` vs ``postgres-94``, ``bottledwater-json``
vs ``bottledwater-avro``) are picked from :class:`ClusterConfig` fields via
:func:`postgres_service_name` and :func:`bottledwater_service_name`.
"""

from __future__ import annotations

from dataclasses import dataclass, field

ZOOKEEPER = "zookeeper"
KAFKA = "kafka"
SCHEMA_REGISTRY = "schema-registry"

POSTGRES_EXTENSIONS: tuple[str, ...] = ("bottledwater", "hstore")
"""Extensions created in the test database once Postgres answers pings."""

POSTGRES_USER = "postgres"


@dataclass(frozen=True)
class ServiceSpec:
    """Specification of one compose-managed service."""

    name: str
    """Compose service name."""

    image: str
    """Docker image with tag."""

    category: str
    """One of coordination, broker, database, registry, capture."""

    port: int = 0
    """Container port that gets published to a random host port (0 = none)."""

    env: dict[str, str] = field(default_factory=dict)
    """Container environment. ``${VAR}`` values are filled in by compose."""

    command: tuple[str, ...] = ()
    """Extra command arguments."""

    links: tuple[str, ...] = ()
    """Services this one talks to by hostname."""

    description: str = ""


# ---------------------------------------------------------------------------
# Pre-defined services
# ---------------------------------------------------------------------------

# The capture client always reaches the database as `postgres`, whichever
# version the run selected.
_POSTGRES_LINK = "${POSTGRES_SERVICE:-postgres}:postgres"

_CAPTURE_ENV = {
    "BOTTLED_WATER_ON_ERROR": "${BOTTLED_WATER_ON_ERROR}",
    "BOTTLED_WATER_SKIP_SNAPSHOT": "${BOTTLED_WATER_SKIP_SNAPSHOT}",
    "BOTTLED_WATER_TOPIC_PREFIX": "${BOTTLED_WATER_TOPIC_PREFIX}",
    "VALGRIND_ENABLED": "${VALGRIND_ENABLED}",
    "VALGRIND_OPTS": "${VALGRIND_OPTS}",
}

ZOOKEEPER_SPEC = ServiceSpec(
    name=ZOOKEEPER,
    image="confluent/zookeeper:3.4.6-cp1",
    category="coordination",
    port=2181,
    description="ZooKeeper ensemble of one, used by Kafka and the schema registry",
)

KAFKA_SPEC = ServiceSpec(
    name=KAFKA,
    image="confluent/kafka:0.9.0.0-cp1",
    category="broker",
    port=9092,
    env={
        "KAFKA_ADVERTISED_HOST_NAME": "${KAFKA_ADVERTISED_HOST_NAME}",
        "KAFKA_LOG_CLEANUP_POLICY": "${KAFKA_LOG_CLEANUP_POLICY}",
        "KAFKA_AUTO_CREATE_TOPICS_ENABLE": "${KAFKA_AUTO_CREATE_TOPICS_ENABLE}",
    },
    links=(ZOOKEEPER,),
    description="Kafka broker receiving change events",
)

POSTGRES_SPEC = ServiceSpec(
    name="postgres",
    image="confluent/postgres-bw:0.1",
    category="database",
    port=5432,
    description="Postgres 9.5 with the bottledwater logical decoding plugin",
)

POSTGRES_94_SPEC = ServiceSpec(
    name="postgres-94",
    image="confluent/postgres-bw:0.1-9.4",
    category="database",
    port=5432,
    description="Postgres 9.4 with the bottledwater logical decoding plugin",
)

SCHEMA_REGISTRY_SPEC = ServiceSpec(
    name=SCHEMA_REGISTRY,
    image="confluent/schema-registry:2.0.1",
    category="registry",
    port=8081,
    links=(ZOOKEEPER, KAFKA),
    description="Schema registry for Avro-formatted change events",
)

BOTTLEDWATER_JSON_SPEC = ServiceSpec(
    name="bottledwater-json",
    image="confluent/bottledwater:0.1",
    category="capture",
    env=dict(_CAPTURE_ENV),
    command=("--output-format=json", "--allow-unkeyed"),
    links=(KAFKA, _POSTGRES_LINK),
    description="Bottled Water client publishing JSON",
)

BOTTLEDWATER_AVRO_SPEC = ServiceSpec(
    name="bottledwater-avro",
    image="confluent/bottledwater:0.1",
    category="capture",
    env=dict(_CAPTURE_ENV),
    command=("--output-format=avro", "--allow-unkeyed"),
    links=(KAFKA, _POSTGRES_LINK, SCHEMA_REGISTRY),
    description="Bottled Water client publishing Avro via the schema registry",
)

SERVICES: dict[str, ServiceSpec] = {
    s.name: s
    for s in [
        ZOOKEEPER_SPEC,
        KAFKA_SPEC,
        POSTGRES_SPEC,
        POSTGRES_94_SPEC,
        SCHEMA_REGISTRY_SPEC,
        BOTTLEDWATER_JSON_SPEC,
        BOTTLEDWATER_AVRO_SPEC,
    ]
}

POSTGRES_VERSIONS: dict[str, str] = {
    "9.5": POSTGRES_SPEC.name,
    "9.4": POSTGRES_94_SPEC.name,
}

BOTTLEDWATER_FORMATS: dict[str, str] = {
    "json": BOTTLEDWATER_JSON_SPEC.name,
    "avro": BOTTLEDWATER_AVRO_SPEC.name,
}


# ---------------------------------------------------------------------------
# Lookup helpers
# ---------------------------------------------------------------------------


def get_service(name: str) -> ServiceSpec:
    """Look up a service by name.

    Raises
    ------
    ValueError
        If the service name is not registered.
    """
    spec = SERVICES.get(name)
    if spec is None:
        available = ", ".join(sorted(SERVICES))
        raise ValueError(f"Unknown service {name!r}. Available: {available}")
    return spec


def postgres_service_name(version: str) -> str:
    """Compose service running the given Postgres version."""
    try:
        return POSTGRES_VERSIONS[version]
    except KeyError:
        raise ValueError(f"Unknown postgres_version {version}") from None


def bottledwater_service_name(output_format: str) -> str:
    """Compose service running Bottled Water with the given output format."""
    try:
        return BOTTLEDWATER_FORMATS[output_format]
    except KeyError:
        raise ValueError(f"Unknown bottledwater_format {output_format}") from None
