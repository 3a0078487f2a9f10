"""Container inspection via the ``docker`` CLI.

Wraps ``docker inspect``, ``docker logs`` and one-shot ``docker run``
through subprocess. No ``docker-py`` dependency: any runtime exposing a
``docker`` CLI (Docker Desktop, Colima, Podman's shim, CI runners) works.

Key Concepts:
    DockerCLI: ``inspect()``, ``logs()``, ``run()``.
    ContainerRecord: the slice of ``docker inspect`` the harness needs
        (id, name, running flag, exit code).
    ContainerLogs: captured stdout/stderr of ``docker logs``.
    parse_default_gateway: extracts the host address from ``ip route``.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any

from cdc_testcluster.errors import CommandError, DockerNotFoundError

logger = logging.getLogger(__name__)

_DEFAULT_ROUTE_RE = re.compile(r"^default via (\S+) dev ")


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContainerRecord:
    """State of one container as reported by ``docker inspect``."""

    id: str
    name: str
    running: bool
    exit_code: int
    status: str = ""

    @classmethod
    def from_inspect(cls, data: dict[str, Any]) -> ContainerRecord:
        state = data.get("State") or {}
        return cls(
            id=data.get("Id", ""),
            name=data.get("Name", "").lstrip("/"),
            running=bool(state.get("Running", False)),
            exit_code=int(state.get("ExitCode", 0)),
            status=state.get("Status", ""),
        )


@dataclass(frozen=True)
class ContainerLogs:
    """Captured output of ``docker logs``."""

    stdout: str
    stderr: str
    returncode: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def parse_default_gateway(ip_route_output: str) -> str | None:
    """Return the gateway of the ``default via ... dev ...`` line, if any."""
    for line in ip_route_output.splitlines():
        match = _DEFAULT_ROUTE_RE.match(line)
        if match:
            return match.group(1)
    return None


# ---------------------------------------------------------------------------
# Docker CLI
# ---------------------------------------------------------------------------


class DockerCLI:
    """Thin wrapper over the ``docker`` command line.

    Parameters
    ----------
    docker_cmd
        Path to the docker binary (looked up on PATH if omitted).
    timeout
        Seconds before a single command is abandoned.
    """

    def __init__(self, docker_cmd: str | None = None, timeout: int = 60) -> None:
        self.docker_cmd = docker_cmd or self._find_docker()
        self.timeout = timeout

    @staticmethod
    def _find_docker() -> str:
        docker = shutil.which("docker")
        if docker is None:
            raise DockerNotFoundError()
        return docker

    @staticmethod
    def is_docker_available() -> bool:
        """Check if Docker is installed and the daemon is running."""
        docker = shutil.which("docker")
        if docker is None:
            return False
        try:
            result = subprocess.run(
                [docker, "info"],
                capture_output=True,
                timeout=10,
            )
            return result.returncode == 0
        except (subprocess.TimeoutExpired, OSError):
            return False

    def run(self, *args: str) -> str:
        """Run ``docker <args>`` and return its stdout."""
        return self._run_docker(list(args)).stdout

    def inspect(self, id_or_name: str) -> ContainerRecord:
        """Inspect one container.

        Raises
        ------
        CommandError
            If docker cannot find the container.
        """
        result = self._run_docker(["inspect", "--type", "container", id_or_name])
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise CommandError(["inspect", id_or_name], 0, f"unparseable inspect output: {exc}") from exc
        if not data:
            raise CommandError(["inspect", id_or_name], 0, "no such container")
        return ContainerRecord.from_inspect(data[0])

    def logs(self, container_id: str) -> ContainerLogs:
        """Capture a container's stdout and stderr separately."""
        result = self._run_docker(["logs", container_id], check=False)
        return ContainerLogs(stdout=result.stdout, stderr=result.stderr, returncode=result.returncode)

    def _run_docker(
        self,
        args: list[str],
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self.docker_cmd, *args]
        logger.debug("docker.exec", extra={"cmd": " ".join(cmd)})
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError(args, -1, f"timed out after {self.timeout}s") from exc
        if check and result.returncode != 0:
            raise CommandError(args, result.returncode, result.stderr)
        return result
