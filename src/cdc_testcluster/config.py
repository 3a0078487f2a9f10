"""Configuration models for the test cluster.

Two pydantic v2 models drive a cluster run:

ClusterConfig
    The per-run options consumed by the containers: Kafka log cleanup
    policy, topic auto-creation, Postgres version, Bottled Water output
    format and error policy, snapshot skipping, topic prefix and the
    Valgrind memory checker. Rendered into the compose environment by
    :meth:`ClusterConfig.to_environment` every time the cluster starts,
    so changes made after ``start()`` only apply to the next start.
    ``ClusterController.reset()`` replaces it with a fresh default
    instance.

HarnessSettings
    Where and how the harness talks to Docker: compose file, project
    name, host address, probe image, command retry count and settle time.
    These survive ``reset()``.

Both expose ``from_env()`` reading ``TESTCLUSTER_*`` variables, with the
precedence kwargs > env vars > field defaults.

Example::

    config = ClusterConfig(bottledwater_format="avro", valgrind=True)
    config.bottledwater_service     # 'bottledwater-avro'
    config.to_environment("172.17.0.1")["VALGRIND_OPTS"]
    # '--leak-check=yes --error-exitcode=123'
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from cdc_testcluster.services import bottledwater_service_name, postgres_service_name

VALGRIND_ERROR_EXITCODE = 123
"""Exit code Valgrind is told to use when it finds errors."""

_TRUE_VALUES = ("true", "1", "yes")


def _env_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


class ClusterConfig(BaseModel):
    """Per-run options for the containers in the test cluster.

    Example::

        config = ClusterConfig(
            kafka_log_cleanup_policy="delete",
            bottledwater_skip_snapshot=True,
        )
    """

    model_config = ConfigDict(validate_assignment=True)

    # Kafka
    kafka_log_cleanup_policy: Literal["compact", "delete"] = Field(
        default="compact",
        description="Broker log.cleanup.policy",
    )
    kafka_auto_create_topics_enable: bool = Field(
        default=True,
        description="Broker auto.create.topics.enable",
    )

    # Postgres
    postgres_version: Literal["9.5", "9.4"] = Field(
        default="9.5",
        description="Postgres major version (selects the compose service)",
    )

    # Bottled Water
    bottledwater_format: Literal["json", "avro"] = Field(
        default="json",
        description="Output format; avro also starts the schema registry",
    )
    bottledwater_on_error: Literal["exit", "log"] = Field(
        default="exit",
        description="What Bottled Water does on a publish error",
    )
    bottledwater_skip_snapshot: bool = Field(
        default=False,
        description="Skip the initial consistent snapshot",
    )
    bottledwater_topic_prefix: str = Field(
        default="",
        description="Prefix prepended to every Kafka topic name",
    )

    # Diagnostics
    valgrind: bool = Field(
        default=False,
        description="Run Bottled Water under Valgrind",
    )

    @property
    def postgres_service(self) -> str:
        return postgres_service_name(self.postgres_version)

    @property
    def bottledwater_service(self) -> str:
        return bottledwater_service_name(self.bottledwater_format)

    @property
    def schema_registry_required(self) -> bool:
        return self.bottledwater_format == "avro"

    @property
    def valgrind_opts(self) -> str:
        if not self.valgrind:
            return ""
        return " ".join(["--leak-check=yes", f"--error-exitcode={VALGRIND_ERROR_EXITCODE}"])

    def to_environment(self, advertised_host: str | None = None) -> dict[str, str]:
        """Render the variables the compose file interpolates."""
        env = {
            "KAFKA_LOG_CLEANUP_POLICY": self.kafka_log_cleanup_policy,
            "KAFKA_AUTO_CREATE_TOPICS_ENABLE": "true" if self.kafka_auto_create_topics_enable else "false",
            "BOTTLED_WATER_ON_ERROR": self.bottledwater_on_error,
            "BOTTLED_WATER_SKIP_SNAPSHOT": "true" if self.bottledwater_skip_snapshot else "",
            "BOTTLED_WATER_TOPIC_PREFIX": self.bottledwater_topic_prefix,
            "VALGRIND_ENABLED": "true" if self.valgrind else "",
            "VALGRIND_OPTS": self.valgrind_opts,
            "POSTGRES_SERVICE": self.postgres_service,
        }
        if advertised_host is not None:
            env["KAFKA_ADVERTISED_HOST_NAME"] = advertised_host
        return env

    @classmethod
    def defaults(cls) -> ClusterConfig:
        """A fresh instance with every option at its default."""
        return cls()

    @classmethod
    def from_env(cls, **overrides: Any) -> ClusterConfig:
        """Create config from TESTCLUSTER_* environment variables."""
        env_map = {
            "kafka_log_cleanup_policy": "TESTCLUSTER_KAFKA_LOG_CLEANUP_POLICY",
            "kafka_auto_create_topics_enable": "TESTCLUSTER_KAFKA_AUTO_CREATE_TOPICS_ENABLE",
            "postgres_version": "TESTCLUSTER_POSTGRES_VERSION",
            "bottledwater_format": "TESTCLUSTER_BOTTLEDWATER_FORMAT",
            "bottledwater_on_error": "TESTCLUSTER_BOTTLEDWATER_ON_ERROR",
            "bottledwater_skip_snapshot": "TESTCLUSTER_BOTTLEDWATER_SKIP_SNAPSHOT",
            "bottledwater_topic_prefix": "TESTCLUSTER_BOTTLEDWATER_TOPIC_PREFIX",
            "valgrind": "TESTCLUSTER_VALGRIND",
        }
        bool_fields = ("kafka_auto_create_topics_enable", "bottledwater_skip_snapshot", "valgrind")
        values: dict[str, Any] = {}
        for field_name, env_var in env_map.items():
            env_val = os.environ.get(env_var)
            if env_val is not None:
                if field_name in bool_fields:
                    values[field_name] = _env_bool(env_val)
                else:
                    values[field_name] = env_val
        values.update(overrides)
        return cls(**values)


class HarnessSettings(BaseModel):
    """How the harness reaches Docker and the published ports."""

    compose_file: Path | None = Field(
        default=None,
        description="Compose file to use (generated into the work dir if unset)",
    )
    project_name: str = Field(
        default="cdc-testcluster",
        description="Docker Compose project name (--project-name)",
    )
    work_dir: Path = Field(
        default=Path(".testcluster"),
        description="Directory for the generated compose file",
    )
    host: str = Field(
        default="localhost",
        description="Address the published container ports are reachable on",
    )
    probe_image: str = Field(
        default="debian:latest",
        description="Image used to discover the Docker host address",
    )
    command_retries: int = Field(
        default=4,
        ge=1,
        description="Attempts for each docker / docker compose command",
    )
    settle_seconds: int = Field(
        default=5,
        ge=0,
        description="One-second ticks to wait once every service is up",
    )

    @classmethod
    def from_env(cls, **overrides: Any) -> HarnessSettings:
        """Create settings from TESTCLUSTER_* environment variables."""
        env_map = {
            "compose_file": "TESTCLUSTER_COMPOSE_FILE",
            "project_name": "TESTCLUSTER_PROJECT_NAME",
            "work_dir": "TESTCLUSTER_WORK_DIR",
            "host": "TESTCLUSTER_HOST",
            "probe_image": "TESTCLUSTER_PROBE_IMAGE",
            "command_retries": "TESTCLUSTER_COMMAND_RETRIES",
            "settle_seconds": "TESTCLUSTER_SETTLE_SECONDS",
        }
        values: dict[str, Any] = {}
        for field_name, env_var in env_map.items():
            env_val = os.environ.get(env_var)
            if env_val is not None:
                if field_name in ("command_retries", "settle_seconds"):
                    values[field_name] = int(env_val)
                elif field_name in ("compose_file", "work_dir"):
                    values[field_name] = Path(env_val)
                else:
                    values[field_name] = env_val
        values.update(overrides)
        return cls(**values)
