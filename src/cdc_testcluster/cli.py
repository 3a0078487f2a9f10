"""
The ``cdc-testcluster`` command: bring the test cluster up and down by hand.

Usage::

    cdc-testcluster services                         # List compose services
    cdc-testcluster compose -o docker-compose.yml    # Write the compose file
    cdc-testcluster up                               # Start everything
    cdc-testcluster up --format avro --valgrind      # Avro + schema registry
    cdc-testcluster up --without kafka --without zookeeper
    cdc-testcluster down                             # Stop, dump failed logs, remove

Options not given on the command line fall back to ``TESTCLUSTER_*``
environment variables.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from cdc_testcluster.cluster import ClusterController
from cdc_testcluster.compose import generate_cluster_compose, write_compose_file
from cdc_testcluster.config import ClusterConfig, HarnessSettings
from cdc_testcluster.errors import ClusterError
from cdc_testcluster.logging import configure_logging
from cdc_testcluster.services import SERVICES

app = typer.Typer(no_args_is_help=True, help="Change-data-capture test cluster.")
console = Console()
err_console = Console(stderr=True)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Log as JSON lines."),
) -> None:
    configure_logging(level="DEBUG" if verbose else "INFO", json_format=json_logs or None)


@app.command("services")
def list_services() -> None:
    """List the services the compose project defines."""
    table = Table(title="Test cluster services")
    table.add_column("Service", style="cyan")
    table.add_column("Category")
    table.add_column("Image")
    table.add_column("Port", justify="right")
    table.add_column("Description")
    for spec in SERVICES.values():
        table.add_row(spec.name, spec.category, spec.image, str(spec.port or "-"), spec.description)
    console.print(table)


@app.command("compose")
def write_compose(
    output: Path = typer.Option(Path("docker-compose.yml"), "--output", "-o", help="File to write."),
    project: str = typer.Option("cdc-testcluster", "--project-name", help="Compose project name."),
) -> None:
    """Write the generated docker-compose file."""
    path = write_compose_file(generate_cluster_compose(project_name=project), output)
    console.print(f"[green]✓[/] wrote {path}")


@app.command("up")
def up(
    without: list[str] = typer.Option([], "--without", "-w", help="Service to leave out. Repeatable."),
    output_format: str | None = typer.Option(None, "--format", "-f", help="Bottled Water output: json or avro."),
    postgres_version: str | None = typer.Option(None, "--postgres-version", help="9.5 or 9.4."),
    valgrind: bool | None = typer.Option(None, "--valgrind/--no-valgrind", help="Run Bottled Water under Valgrind."),
    compose_file: Path | None = typer.Option(None, "--file", help="Use this compose file instead of the generated one."),
) -> None:
    """Start the cluster and leave it running."""
    overrides: dict[str, object] = {}
    if output_format is not None:
        overrides["bottledwater_format"] = output_format
    if postgres_version is not None:
        overrides["postgres_version"] = postgres_version
    if valgrind is not None:
        overrides["valgrind"] = valgrind

    cluster = _controller(compose_file, **overrides)
    console.print(f"[bold green]▲ up[/] project {cluster.settings.project_name}")
    try:
        cluster.start(without=without)
    except (ClusterError, ValueError) as exc:
        err_console.print(f"[red]✗[/] {exc}")
        cluster.stop(reset=False)
        raise typer.Exit(code=1) from exc

    table = Table(title="Endpoints")
    table.add_column("Handle", style="cyan")
    table.add_column("Address")
    table.add_row("docker host", cluster.docker_host_ip or "-")
    table.add_row("postgres", cluster.postgres_hostport)
    if "kafka" not in cluster.started_without:
        table.add_row("zookeeper", cluster.zookeeper_hostport)
        table.add_row("kafka", cluster.kafka_hostport)
    if cluster.schema_registry_needed():
        table.add_row("schema registry", cluster.schema_registry_url)
    console.print(table)


@app.command("down")
def down(
    dump_logs: bool = typer.Option(True, "--dump-logs/--no-dump-logs", help="Log output of failed containers."),
    compose_file: Path | None = typer.Option(None, "--file", help="Compose file used for `up`."),
) -> None:
    """Stop and remove every container in the project."""
    cluster = _controller(compose_file)
    console.print(f"[bold red]▼ down[/] project {cluster.settings.project_name}")
    cluster.stop(dump_logs=dump_logs)
    console.print("[green]✓[/] stopped")


def _controller(compose_file: Path | None, **overrides: object) -> ClusterController:
    settings = HarnessSettings.from_env()
    if compose_file is not None:
        settings.compose_file = compose_file
    try:
        return ClusterController(ClusterConfig.from_env(**overrides), settings)
    except (ClusterError, ValueError) as exc:
        err_console.print(f"[red]✗[/] {exc}")
        raise typer.Exit(code=1) from exc
