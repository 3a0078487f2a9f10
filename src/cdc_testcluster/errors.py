"""Exception types raised by the test cluster.

Every failure the harness raises on purpose derives from ``ClusterError``
so test suites can catch one type around ``start()``. Failures that are
recovered locally (probe errors while polling, close errors during
teardown, missing container logs) never surface as exceptions.

Hierarchy::

    ClusterError (RuntimeError)
    ├── ClusterStateError       handle accessed / start called in the wrong state
    ├── ServiceExcludedError    waited on a service started ``without``
    ├── ReadinessTimeoutError   retry budget exhausted while polling
    ├── HostDetectionError      no default route in the probe container
    └── CommandError            docker / docker compose exited non-zero
        └── DockerNotFoundError docker CLI not on PATH
"""

from __future__ import annotations


class ClusterError(RuntimeError):
    """Base class for test cluster failures."""


class ClusterStateError(ClusterError):
    """Raised when an operation is not valid in the current cluster state."""

    def __init__(self, message: str, state: str | None = None) -> None:
        super().__init__(message)
        self.state = state


class ServiceExcludedError(ClusterError):
    """Raised when waiting on a service that was deliberately not started."""

    def __init__(self, service: str) -> None:
        super().__init__(f"Waiting for {service} when we deliberately started without it!")
        self.service = service


class ReadinessTimeoutError(ClusterError):
    """Raised when a readiness probe never succeeded within its retry budget."""

    def __init__(self, service: str, attempts: int, last_error: BaseException | None = None) -> None:
        message = f"{service} not ready after {attempts} attempts"
        if last_error is not None:
            message += f" (last error: {type(last_error).__name__}: {last_error})"
        super().__init__(message)
        self.service = service
        self.attempts = attempts
        self.last_error = last_error


class HostDetectionError(ClusterError):
    """Raised when the Docker host address cannot be parsed from ``ip route``."""


class CommandError(ClusterError):
    """Raised when a docker or docker compose command fails."""

    def __init__(self, args: list[str], returncode: int, stderr: str = "") -> None:
        message = f"Command failed (exit {returncode}): {' '.join(args)}"
        if stderr.strip():
            message += f"\n{stderr.strip()}"
        super().__init__(message)
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr


class DockerNotFoundError(CommandError):
    """Raised when the docker CLI is not available."""

    def __init__(self) -> None:
        ClusterError.__init__(
            self,
            "Docker CLI not found on PATH. Install Docker or add it to PATH.\n"
            "  - Linux:   https://docs.docker.com/engine/install/\n"
            "  - macOS:   https://docs.docker.com/desktop/install/mac-install/",
        )
        self.args_list = ["docker"]
        self.returncode = 127
        self.stderr = ""
