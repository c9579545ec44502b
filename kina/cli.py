"""Main CLI entry point for kina."""

import threading
from enum import Enum
from pathlib import Path

import pydantic
import typer
import yaml
from rich.console import Console
from rich.table import Table

from kina.config import KinaConfig
from kina.exceptions import KinaError
from kina.logging_config import get_logger, setup_logging
from kina.models.cluster import ClusterHealth, ClusterSpec, ClusterStatus
from kina.models.node import NodeRole
from kina.orchestrator import ClusterOrchestrator
from kina.providers.base import API_SERVER_PORT

app = typer.Typer(
    name="kina",
    help="Local Kubernetes clusters in Apple container VMs",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

DEFAULT_CLUSTER_NAME = "kina"


def _build_orchestrator(config: KinaConfig) -> ClusterOrchestrator:
    from kina.providers.apple_container import AppleContainerProvider

    return ClusterOrchestrator(AppleContainerProvider(config), config)


def _fail(e: KinaError, label: str = "Error") -> None:
    logger.error(f"{label}: {e.message}")
    console.print(f"[red]{label}:[/red] {e.message}")
    if e.details:
        console.print(f"\n{e.details}")
    raise typer.Exit(code=1)


def _unexpected(e: Exception) -> None:
    logger.error(f"Unexpected error: {e}", exc_info=True)
    console.print(f"[red]Unexpected error:[/red] {e}")
    console.print("\nRun with --verbose --log-file debug.log for more details")
    raise typer.Exit(code=1)


# Global callback to set up logging
@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


@app.command()
def version() -> None:
    """Show version information."""
    from kina import __version__

    typer.echo(f"kina version {__version__}")


@app.command()
def create(
    name: str = typer.Argument(DEFAULT_CLUSTER_NAME, help="Cluster name"),
    image: str | None = typer.Option(None, "--image", help="Node image"),
    kubernetes_version: str | None = typer.Option(
        None, "--kubernetes-version", help="Kubernetes version, e.g. v1.31.0"
    ),
    control_planes: int = typer.Option(1, "--control-planes", help="Number of control-plane nodes"),
    workers: int = typer.Option(0, "--workers", help="Number of worker nodes"),
    pod_subnet: str = typer.Option("10.244.0.0/16", "--pod-subnet", help="Pod network CIDR"),
) -> None:
    """
    Create a cluster and wait until it is Ready.

    On failure every node created so far is deleted again.

    Examples:
        kina create
        kina create dev --kubernetes-version v1.31.0
    """
    cancel = threading.Event()
    try:
        config = KinaConfig.load()
        try:
            spec = ClusterSpec(
                name=name,
                control_planes=control_planes,
                workers=workers,
                kubernetes_version=kubernetes_version or config.kubernetes_version,
                pod_subnet=pod_subnet,
                image=image or config.default_image,
            )
        except pydantic.ValidationError as e:
            console.print("[red]Invalid cluster definition:[/red]")
            for err in e.errors():
                field = ".".join(str(x) for x in err["loc"])
                console.print(f"  {field}: {err['msg']}")
            raise typer.Exit(code=1)

        orchestrator = _build_orchestrator(config)
        with console.status(f"Creating cluster [cyan]{spec.name}[/cyan]..."):
            cluster = orchestrator.create(spec, cancel=cancel)

        console.print(f"[green]✓ Cluster '{cluster.name}' is Ready[/green]")
        console.print(f"[bold]API server:[/bold] {cluster.endpoint}")
        console.print(f"[bold]Kubeconfig:[/bold] {cluster.kubeconfig_path}")
        for warning in cluster.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")
        console.print(f"\nUse it with: kubectl --context {cluster.name} get nodes")

    except KeyboardInterrupt:
        cancel.set()
        console.print("\n[yellow]Cluster creation interrupted, created nodes were removed[/yellow]")
        raise typer.Exit(code=130)
    except KinaError as e:
        _fail(e)
    except typer.Exit:
        raise
    except Exception as e:
        _unexpected(e)


@app.command()
def delete(
    name: str = typer.Argument(DEFAULT_CLUSTER_NAME, help="Cluster name"),
    all_clusters: bool = typer.Option(False, "--all", help="Delete every kina cluster"),
) -> None:
    """
    Delete a cluster, its nodes and its kubeconfig.

    Deleting a cluster that does not exist succeeds.
    """
    try:
        config = KinaConfig.load()
        orchestrator = _build_orchestrator(config)
        names = orchestrator.list_clusters() if all_clusters else [name]
        if not names:
            console.print("[yellow]No kina clusters found[/yellow]")
            return

        failed = []
        for cluster_name in names:
            try:
                orchestrator.delete(cluster_name)
                console.print(f"[green]✓ Deleted cluster '{cluster_name}'[/green]")
            except KinaError as e:
                logger.error(f"Failed to delete cluster '{cluster_name}': {e.message}")
                console.print(f"[red]✗ Failed to delete cluster '{cluster_name}':[/red] {e.message}")
                if e.details:
                    console.print(f"\n{e.details}")
                failed.append(cluster_name)

        if failed:
            raise typer.Exit(code=1)

    except KeyboardInterrupt:
        console.print("\n[yellow]Deletion interrupted[/yellow]")
        raise typer.Exit(code=130)
    except KinaError as e:
        _fail(e)
    except typer.Exit:
        raise
    except Exception as e:
        _unexpected(e)


@app.command(name="list")
def list_clusters() -> None:
    """List kina clusters."""
    try:
        orchestrator = _build_orchestrator(KinaConfig.load())
        names = orchestrator.list_clusters()
        if not names:
            console.print("[yellow]No kina clusters found[/yellow]")
            return

        table = Table(title="kina clusters")
        table.add_column("Name", style="cyan")
        table.add_column("Nodes", style="magenta")
        table.add_column("Endpoint", style="green")
        for cluster_name in names:
            nodes = orchestrator.get_nodes(cluster_name)
            running_cp = next((n for n in nodes if n.role == NodeRole.CONTROL_PLANE and n.address), None)
            endpoint = f"https://{running_cp.address}:{API_SERVER_PORT}" if running_cp else "-"
            table.add_row(cluster_name, str(len(nodes)), endpoint)
        console.print(table)

    except KinaError as e:
        _fail(e)
    except Exception as e:
        _unexpected(e)


@app.command()
def get_nodes(name: str = typer.Argument(DEFAULT_CLUSTER_NAME, help="Cluster name")) -> None:
    """Show the nodes of a cluster as seen by the backend."""
    try:
        orchestrator = _build_orchestrator(KinaConfig.load())
        nodes = orchestrator.get_nodes(name)
        if not nodes:
            console.print(f"[yellow]No nodes found for cluster '{name}'[/yellow]")
            raise typer.Exit(code=1)

        table = Table(title=f"Nodes of {name}")
        table.add_column("Name", style="cyan")
        table.add_column("Role", style="magenta")
        table.add_column("Status", style="green")
        table.add_column("Address", style="yellow")
        table.add_column("Image")
        for node in nodes:
            status = "[green]✓ running[/green]" if node.running else f"[red]✗ {node.status}[/red]"
            table.add_row(node.name, node.role.value, status, node.address or "N/A", node.image or "N/A")
        console.print(table)

    except KinaError as e:
        _fail(e)
    except typer.Exit:
        raise
    except Exception as e:
        _unexpected(e)


@app.command()
def get_kubeconfig(name: str = typer.Argument(DEFAULT_CLUSTER_NAME, help="Cluster name")) -> None:
    """Print the kubeconfig of a cluster."""
    from kina.kubeconfig import KubeconfigManager

    try:
        config = KinaConfig.load()
        manager = KubeconfigManager(config.kubeconfig_dir)
        typer.echo(manager.dumps(manager.load(name)), nl=False)
    except KinaError as e:
        _fail(e)
    except Exception as e:
        _unexpected(e)


@app.command()
def approve_csr(
    name: str = typer.Argument(DEFAULT_CLUSTER_NAME, help="Cluster name"),
    timeout: float = typer.Option(60.0, "--timeout", "-t", help="Seconds to wait for requests"),
) -> None:
    """Approve pending kubelet serving certificate requests of a cluster."""
    try:
        config = KinaConfig.load()
        config = config.model_copy(
            update={"csr": config.csr.model_copy(update={"timeout": timeout})}
        )
        orchestrator = _build_orchestrator(config)
        report = orchestrator.approve_certificates(name)

        for node_name in report.approved:
            console.print(f"[green]✓ Approved serving certificate for {node_name}[/green]")
        if not report.complete:
            console.print(
                f"[yellow]Warning:[/yellow] no approved serving certificate for: {', '.join(report.missing)}"
            )
            raise typer.Exit(code=1)
        console.print("[green]All nodes have approved serving certificates[/green]")

    except KinaError as e:
        _fail(e)
    except typer.Exit:
        raise
    except Exception as e:
        _unexpected(e)


class OutputFormat(str, Enum):
    TABLE = "table"
    YAML = "yaml"
    JSON = "json"


HEALTH_STYLES = {
    ClusterHealth.RUNNING: "green",
    ClusterHealth.DEGRADED: "yellow",
    ClusterHealth.STOPPED: "red",
}


def _print_status(status: ClusterStatus) -> None:
    style = HEALTH_STYLES[status.health]
    console.print(f"[bold]Cluster:[/bold] {status.name}")
    console.print(f"[bold]Status:[/bold] [{style}]{status.health.value}[/{style}]")
    console.print(f"[bold]API server:[/bold] {status.endpoint or 'N/A'}")
    console.print(f"[bold]Kubeconfig:[/bold] {status.kubeconfig_path or 'N/A'}")

    table = Table(title="Nodes")
    table.add_column("Name", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Address", style="yellow")
    table.add_column("Image")
    for node in status.nodes:
        table.add_row(node.name, node.role.value, node.status, node.address or "N/A", node.image or "N/A")
    console.print(table)


@app.command()
def status(
    name: str | None = typer.Argument(None, help="Cluster name, optional when only one cluster exists"),
    output: OutputFormat = typer.Option(OutputFormat.TABLE, "--output", "-o", help="Output format"),
) -> None:
    """
    Show the status of a cluster and its nodes.

    Examples:
        kina status
        kina status dev -o json
    """
    try:
        orchestrator = _build_orchestrator(KinaConfig.load())
        if name is None:
            names = orchestrator.list_clusters()
            if not names:
                console.print("No clusters found.")
                console.print("\nTo create a new cluster, run: kina create [cluster-name]")
                return
            if len(names) > 1:
                console.print(
                    f"[red]Error:[/red] Multiple clusters found: {', '.join(names)}. "
                    "Please specify one with: kina status <cluster-name>"
                )
                raise typer.Exit(code=1)
            name = names[0]

        cluster_status = orchestrator.status(name)
        if output == OutputFormat.JSON:
            typer.echo(cluster_status.model_dump_json(indent=2))
        elif output == OutputFormat.YAML:
            typer.echo(yaml.safe_dump(cluster_status.model_dump(mode="json"), sort_keys=False), nl=False)
        else:
            _print_status(cluster_status)

    except KinaError as e:
        _fail(e)
    except typer.Exit:
        raise
    except Exception as e:
        _unexpected(e)


@app.command()
def load(
    image: str = typer.Argument(..., help="Image reference in the host image store"),
    cluster: str = typer.Option(DEFAULT_CLUSTER_NAME, "--cluster", "-c", help="Cluster name"),
    archive: Path | None = typer.Option(
        None, "--archive", help="Load this image tar instead of exporting IMAGE"
    ),
) -> None:
    """
    Load a local image into every node of a cluster.

    Examples:
        kina load my-app:dev
        kina load my-app:dev --cluster dev
    """
    try:
        orchestrator = _build_orchestrator(KinaConfig.load())
        with console.status(f"Loading [cyan]{image}[/cyan] into cluster [cyan]{cluster}[/cyan]..."):
            nodes = orchestrator.load_image(cluster, image, archive=archive)

        for node_name in nodes:
            console.print(f"[green]✓ Loaded into {node_name}[/green]")
        console.print(f"[green]Image '{image}' loaded into cluster '{cluster}'[/green]")

    except KeyboardInterrupt:
        console.print("\n[yellow]Image load interrupted[/yellow]")
        raise typer.Exit(code=130)
    except KinaError as e:
        _fail(e)
    except Exception as e:
        _unexpected(e)


if __name__ == "__main__":
    app()
