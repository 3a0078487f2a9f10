"""Docker Compose integration for the test cluster.

Generates the compose definition for every registered service and drives
``docker compose`` through subprocess.

Key Concepts:
    generate_cluster_compose: Renders the compose YAML from the service
        registry. Option values are left as ``${VAR}`` placeholders that
        compose fills from the environment of each command.
    write_compose_file: Writes the YAML to disk.
    ComposeRunner: ``up``, ``stop``, ``run``, ``port``, ``rm``,
        ``container_id``, ``container_names``. Each command receives the
        environment rendered from :class:`ClusterConfig`, not the ambient
        process environment alone.

Example::

    path = write_compose_file(generate_cluster_compose(), ".testcluster/docker-compose.yml")
    compose = ComposeRunner(path, project_name="cdc-testcluster")
    compose.environment = ClusterConfig().to_environment("172.17.0.1")
    compose.up(["zookeeper", "kafka"], detached=True, no_deps=True)
    compose.port("kafka", 9092)   # '0.0.0.0:32771'
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Any

import yaml

from cdc_testcluster.errors import CommandError, DockerNotFoundError
from cdc_testcluster.services import SERVICES, ServiceSpec

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Compose generation
# ---------------------------------------------------------------------------


def _service_definition(spec: ServiceSpec) -> dict[str, Any]:
    service: dict[str, Any] = {"image": spec.image}
    if spec.port:
        # Publish on a random host port; look it up with `compose port`.
        service["ports"] = [str(spec.port)]
    if spec.env:
        service["environment"] = dict(spec.env)
    if spec.command:
        service["command"] = list(spec.command)
    if spec.links:
        service["links"] = list(spec.links)
    service["labels"] = [
        f"cdc_testcluster.service={spec.name}",
        f"cdc_testcluster.category={spec.category}",
    ]
    return service


def generate_cluster_compose(
    services: list[ServiceSpec] | None = None,
    project_name: str = "cdc-testcluster",
) -> str:
    """Generate the docker-compose YAML for the test cluster.

    Parameters
    ----------
    services
        Services to include. Defaults to every registered service.
    project_name
        Compose project name written into the file.

    Returns
    -------
    str
        YAML string ready to write to a file.
    """
    specs = services if services is not None else list(SERVICES.values())
    compose: dict[str, Any] = {
        "name": project_name,
        "services": {spec.name: _service_definition(spec) for spec in specs},
    }
    header = (
        f"# Generated by cdc-testcluster for project {project_name}\n"
        f"# Services: {', '.join(s.name for s in specs)}\n\n"
    )
    return header + yaml.safe_dump(compose, default_flow_style=False, sort_keys=False)


def write_compose_file(content: str, output_path: str | Path) -> Path:
    """Write compose YAML to ``output_path`` and return the path."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    logger.info("compose.written", extra={"path": str(path)})
    return path


# ---------------------------------------------------------------------------
# Compose runner
# ---------------------------------------------------------------------------


class ComposeRunner:
    """Runs ``docker compose`` commands against one compose file.

    Parameters
    ----------
    compose_file
        Path to the compose file.
    project_name
        Compose project name (``--project-name``).
    docker_cmd
        Path to the docker binary (looked up on PATH if omitted).
    timeout
        Seconds before a single command is abandoned.
    """

    def __init__(
        self,
        compose_file: str | Path,
        project_name: str | None = None,
        docker_cmd: str | None = None,
        timeout: int = 300,
    ) -> None:
        self.compose_file = Path(compose_file)
        self.project_name = project_name
        self.timeout = timeout
        self.environment: dict[str, str] = {}
        self._docker_cmd = docker_cmd or shutil.which("docker")
        if self._docker_cmd is None:
            raise DockerNotFoundError()

    def up(self, services: list[str], detached: bool = True, no_deps: bool = False) -> None:
        """``docker compose up`` for the given services."""
        args = ["up"]
        if detached:
            args.append("-d")
        if no_deps:
            args.append("--no-deps")
        self.run(*args, *services)

    def stop(self) -> None:
        """``docker compose stop`` for the whole project."""
        self.run("stop")

    def rm(self, force: bool = True, volumes: bool = True) -> None:
        """Remove stopped containers (and their anonymous volumes)."""
        args = ["rm"]
        if force:
            args.append("-f")
        if volumes:
            args.append("-v")
        self.run(*args)

    def port(self, service: str, container_port: int) -> str:
        """Return the ``host:port`` a container port is published on."""
        output = self.run("port", service, str(container_port)).strip()
        if not output:
            raise CommandError(["port", service, str(container_port)], 0, "port is not published")
        return output.splitlines()[0]

    def container_id(self, service: str) -> str | None:
        """Id of the container running ``service``, or None if there is none."""
        output = self.run("ps", "--all", "-q", service).strip()
        return output.splitlines()[0] if output else None

    def container_names(self) -> list[str]:
        """Names of every container in the project, stopped ones included."""
        output = self.run("ps", "--all", "--format", "{{.Name}}")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def run(self, subcommand: str, *args: str) -> str:
        """Run ``docker compose <subcommand> <args>`` and return stdout."""
        cmd = [self._docker_cmd, "compose", "-f", str(self.compose_file)]
        if self.project_name:
            cmd.extend(["--project-name", self.project_name])
        cmd.extend([subcommand, *args])

        logger.debug("compose.exec", extra={"cmd": " ".join(cmd)})
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env={**os.environ, **self.environment},
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError([subcommand, *args], -1, f"timed out after {self.timeout}s") from exc
        if proc.returncode != 0:
            raise CommandError([subcommand, *args], proc.returncode, proc.stderr)
        return proc.stdout
