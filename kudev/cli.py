"""Command line interface.

Entry point: ``kudev`` (configured via pyproject.toml console_scripts).
"""

import asyncio
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .builder import DockerBuilder
from .cluster import ClusterConnection, current_context
from .config import CONFIG_FILE_NAME, DeploymentConfig, get_settings, load_config, save_config
from .debounce import Debouncer
from .deployer import KubernetesDeployer
from .errors import ConfigError, KudevError
from .hashing import HashCalculator, load_dockerignore
from .log import configure_logging
from .models import BuildOptions, DesiredWorkloadState, ObservedStatus, RebuildResult
from .orchestrator import Orchestrator
from .registry import Registry
from .render import Renderer
from .tagger import Tagger
from .watcher import FileWatcher

app = typer.Typer(
    name="kudev",
    help="Build, load and deploy a project to a local Kubernetes cluster, and keep it in sync.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

console = Console()

_STATUS_STYLES = {
    "Running": "green",
    "Pending": "yellow",
    "Degraded": "yellow",
    "Failed": "red",
    "Unknown": "dim",
}


@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Log level (defaults to KUDEV_LOG_LEVEL or INFO)."
    ),
) -> None:
    """kudev: local hot-reload for Kubernetes."""
    configure_logging(log_level or get_settings().log_level)


@contextmanager
def _errors() -> Iterator[None]:
    """Print kudev errors with their suggestion and exit with their code."""
    try:
        yield
    except KudevError as e:
        console.print(f"[red]Error:[/red] {e}")
        if e.suggestion:
            console.print(f"[dim]{e.suggestion}[/dim]")
        raise typer.Exit(code=e.exit_code)


def _load(config_path: Optional[Path]) -> DeploymentConfig:
    settings = get_settings()
    path = config_path or (Path(settings.config_file) if settings.config_file else None)
    return load_config(path)


def _exclusions(config: DeploymentConfig) -> list[str]:
    return config.spec.build_context_exclusions + load_dockerignore(config.project_root)


def _calculator(config: DeploymentConfig) -> HashCalculator:
    return HashCalculator(config.project_root, _exclusions(config))


def _kube_context(config: DeploymentConfig) -> str:
    return config.spec.kube_context or current_context()


def _deployer(cluster: ClusterConnection) -> KubernetesDeployer:
    return KubernetesDeployer(
        cluster, Renderer(), poll_interval=get_settings().poll_interval_seconds
    )


def _print_status(status: ObservedStatus) -> None:
    style = _STATUS_STYLES.get(status.status.value, "white")
    console.print(
        f"[bold]{status.deployment_name}[/bold] in {status.namespace}: "
        f"[{style}]{status.status.value}[/{style}] "
        f"({status.ready_replicas}/{status.desired_replicas} ready)"
    )
    console.print(f"  {status.message}")
    if status.image_digest:
        console.print(f"  Source hash: {status.image_digest}")

    if not status.pods:
        return

    table = Table(title="Pods")
    table.add_column("Name", style="cyan")
    table.add_column("Phase")
    table.add_column("Ready", justify="center")
    table.add_column("Restarts", justify="right")
    table.add_column("Message")
    for pod in status.pods:
        ready = "[green]Yes[/green]" if pod.ready else "[yellow]No[/yellow]"
        table.add_row(pod.name, pod.phase, ready, str(pod.restarts), pod.message)
    console.print(table)


def _print_result(result: RebuildResult) -> None:
    if result.skipped:
        console.print("[dim]No changes detected, skipping rebuild[/dim]")
    elif result.error is not None:
        console.print(f"[red]Rebuild failed during {result.stage.value}:[/red] {result.error}")
    else:
        console.print(
            f"[green]Rebuild complete in {result.elapsed_seconds:.1f}s[/green] "
            f"({result.image_ref})"
        )
        if result.status is not None:
            console.print(f"  {result.status.summary()}")
    console.print("[dim]Watching for changes...[/dim]")


async def _build_and_load(config: DeploymentConfig, kube_context: str) -> tuple[str, str]:
    """Build and load the current source; returns (image ref, digest)."""
    tagger = Tagger(_calculator(config))
    digest = await asyncio.to_thread(tagger.get_hash)
    tag = tagger.generate_tag()

    builder = DockerBuilder()
    image = await builder.build(
        BuildOptions(
            source_dir=str(config.project_root),
            dockerfile_path=str(config.dockerfile),
            image_name=config.image_name,
            image_tag=tag,
        )
    )
    await Registry(kube_context).load(image.full_ref)
    return image.full_ref, digest


def _print_config(config: DeploymentConfig) -> None:
    console.print(f"  Project:      {config.metadata.name}")
    console.print(f"  Image:        {config.image_name}")
    console.print(f"  Dockerfile:   {config.spec.dockerfile_path}")
    console.print(f"  Namespace:    {config.spec.namespace}")
    console.print(f"  Replicas:     {config.spec.replicas}")
    console.print(f"  Service Port: {config.spec.service_port}")
    console.print(f"  Local Port:   {config.spec.local_port}")
    if config.spec.kube_context:
        console.print(f"  Context:      {config.spec.kube_context}")
    if config.spec.env:
        console.print("  Environment:")
        for entry in config.spec.env:
            console.print(f"    {entry.name}={entry.value}")


@app.command(name="init", help="Create a .kudev.yaml for this project.")
def init_cmd(
    name: Optional[str] = typer.Argument(
        None, help="Application name (prompted for when omitted)."
    ),
    namespace: str = typer.Option("default", help="Kubernetes namespace."),
    dockerfile: str = typer.Option(
        "./Dockerfile", help="Dockerfile path, relative to the project."
    ),
    replicas: int = typer.Option(1, help="Number of replicas."),
    port: int = typer.Option(8080, help="Service and container port."),
    local_port: int = typer.Option(8080, help="Local port for port forwarding."),
    output: Path = typer.Option(
        Path(CONFIG_FILE_NAME), "--output", "-o", help="Where to write the config file."
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write a validated starter configuration."""
    with _errors():
        if name is None:
            name = typer.prompt("Application name", default=Path.cwd().name.lower())

        try:
            config = DeploymentConfig.model_validate(
                {
                    "metadata": {"name": name},
                    "spec": {
                        "imageName": name,
                        "dockerfilePath": dockerfile,
                        "namespace": namespace,
                        "replicas": replicas,
                        "servicePort": port,
                        "localPort": local_port,
                    },
                }
            )
        except ValidationError as e:
            raise ConfigError("invalid settings for a new configuration", cause=e) from e

        path = save_config(config, output, overwrite=force)
        console.print(f"[green]Created[/green] {path}")

        config.project_root = path.resolve().parent
        if not config.dockerfile.is_file():
            console.print(f"[yellow]Warning:[/yellow] no Dockerfile yet at {config.dockerfile}")

        console.print("Next steps:")
        console.print(f"  1. Review {path}")
        console.print("  2. Run 'kudev validate' to check it")
        console.print("  3. Run 'kudev up' to deploy")


@app.command(name="validate", help="Check the configuration and print a summary.")
def validate_cmd(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to .kudev.yaml (searched upwards by default)."
    ),
) -> None:
    """Load the config, including the Dockerfile check, without contacting the cluster."""
    with _errors():
        config = _load(config_path)
        console.print("[green]Configuration is valid[/green]")
        _print_config(config)


@app.command(name="up", help="Build, load and deploy the project once.")
def up_cmd(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to .kudev.yaml (searched upwards by default)."
    ),
    wait: bool = typer.Option(True, help="Wait for all replicas to become ready."),
    timeout: Optional[float] = typer.Option(
        None, help="Seconds to wait for readiness (defaults to KUDEV_READY_TIMEOUT_SECONDS)."
    ),
) -> None:
    """Build the image, load it into the cluster and apply the Deployment and Service."""
    with _errors():
        config = _load(config_path)
        kube_context = _kube_context(config)

        image_ref, digest = asyncio.run(_build_and_load(config, kube_context))
        console.print(f"Built and loaded [cyan]{image_ref}[/cyan]")

        with ClusterConnection(kube_context) as cluster:
            deployer = _deployer(cluster)
            status = deployer.upsert(DesiredWorkloadState.from_config(config, image_ref, digest))
            if wait and not status.is_ready:
                console.print("Waiting for pods to become ready...")
                status = deployer.wait_for_ready(
                    config.metadata.name,
                    config.spec.namespace,
                    timeout=timeout or get_settings().ready_timeout_seconds,
                )
            _print_status(status)


@app.command(name="down", help="Delete the project's Deployment and Service.")
def down_cmd(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to .kudev.yaml (searched upwards by default)."
    ),
    all_resources: bool = typer.Option(
        False, "--all", help="Delete every kudev-managed resource in the namespace."
    ),
    wait: bool = typer.Option(False, help="Wait until the Deployment is gone."),
) -> None:
    """Delete deployed resources. Missing resources are not an error."""
    with _errors():
        config = _load(config_path)
        namespace = config.spec.namespace

        with ClusterConnection(_kube_context(config)) as cluster:
            deployer = _deployer(cluster)
            if all_resources:
                deployer.delete_by_labels(namespace)
            else:
                deployer.delete(config.metadata.name, namespace)
            if wait:
                deployer.wait_for_deletion(
                    config.metadata.name,
                    namespace,
                    timeout=get_settings().ready_timeout_seconds,
                )
        console.print(f"[green]Deleted[/green] {config.metadata.name} from {namespace}")


@app.command(name="status", help="Show the deployment's current status.")
def status_cmd(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to .kudev.yaml (searched upwards by default)."
    ),
) -> None:
    """Show replica readiness and per-pod state."""
    with _errors():
        config = _load(config_path)
        with ClusterConnection(_kube_context(config)) as cluster:
            status = _deployer(cluster).status(
                config.metadata.name, config.spec.namespace
            )
        _print_status(status)


@app.command(name="tag", help="Print the image tag for the current source tree.")
def tag_cmd(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to .kudev.yaml (searched upwards by default)."
    ),
    timestamp: bool = typer.Option(False, help="Append a UTC timestamp."),
) -> None:
    """Compute the source digest and print the resulting tag."""
    with _errors():
        config = _load(config_path)
        console.print(Tagger(_calculator(config)).generate_tag(with_timestamp=timestamp))


@app.command(name="render", help="Print the Deployment and Service as YAML.")
def render_cmd(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to .kudev.yaml (searched upwards by default)."
    ),
) -> None:
    """Render manifests for the current source without touching the cluster."""
    with _errors():
        config = _load(config_path)
        tagger = Tagger(_calculator(config))
        image_ref = f"{config.image_name}:{tagger.generate_tag()}"
        desired = DesiredWorkloadState.from_config(config, image_ref, tagger.get_hash())
        typer.echo(Renderer().render_yaml(desired), nl=False)


@app.command(name="watch", help="Deploy, then rebuild and redeploy on every change.")
def watch_cmd(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to .kudev.yaml (searched upwards by default)."
    ),
) -> None:
    """Run the hot-reload loop until interrupted."""
    with _errors():
        config = _load(config_path)
        kube_context = _kube_context(config)

        with ClusterConnection(kube_context) as cluster:
            orchestrator = Orchestrator(
                config,
                builder=DockerBuilder(),
                loader=Registry(kube_context),
                deployer=_deployer(cluster),
                watcher=FileWatcher(_exclusions(config)),
                debouncer=Debouncer(get_settings().debounce_window_seconds),
                calculator=_calculator(config),
                reporter=_print_result,
            )
            asyncio.run(_watch(orchestrator))


async def _watch(orchestrator: Orchestrator) -> None:
    loop = asyncio.get_running_loop()
    signals = ()
    if threading.current_thread() is threading.main_thread():
        signals = (signal.SIGINT, signal.SIGTERM)
        for sig in signals:
            loop.add_signal_handler(sig, orchestrator.close)

    try:
        # Reported through the orchestrator; None means Ctrl+C during the first build
        if await orchestrator.rebuild_now() is None:
            return
        console.print("Press Ctrl+C to stop")
        await orchestrator.run()
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
