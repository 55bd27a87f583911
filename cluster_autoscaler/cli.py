"""
Command-line interface for the cluster autoscaler using Typer
"""
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from typing_extensions import Annotated

from .autoscaler import TickStatus, build_autoscaler
from .config import ConfigError, ConfigManager, create_default_config_file, load_config_with_env_override, parse_duration
from .errors import AutoscalerError
from .logger import get_logger
from .simulation import ClusterSimulation, FixtureError, load_fixture_file
from .static_provider import StaticCloudProvider
from .status import InMemoryStatusRecorder

app = typer.Typer(
    name="cluster-autoscaler",
    help="Grow and shrink node groups to fit pending pods",
    no_args_is_help=True,
)

# Create console for rich output
console = Console()


def _tick_row(table: Table, tick: int, now: datetime, status: Optional[TickStatus],
              provider: StaticCloudProvider, pending: int, error: Optional[str]) -> None:
    sizes = ", ".join(f"{group}={size}" for group, size in sorted(provider.sizes().items()))
    if status is None:
        table.add_row(str(tick), now.strftime("%H:%M:%S"), "-", "-", sizes, str(pending), error or "")
        return

    scale_up = status.scale_up.result.value
    if status.scale_up.scale_up_infos:
        scale_up += " " + ", ".join(f"{i.group_id}:{i.current_size}->{i.new_size}"
                                    for i in status.scale_up.scale_up_infos)
    scale_down = status.scale_down.result.value
    if status.scale_down.scaled_down_nodes:
        scale_down += " " + ", ".join(n.node.name for n in status.scale_down.scaled_down_nodes)
    table.add_row(str(tick), now.strftime("%H:%M:%S"), scale_up, scale_down, sizes, str(pending), error or "")


@app.command()
def simulate(
    fixture: Annotated[Path, typer.Argument(help="YAML file describing node groups, nodes and pods")],
    config: Annotated[Optional[Path], typer.Option("--config", "-c", help="Autoscaler configuration file")] = None,
    ticks: Annotated[int, typer.Option(help="Number of autoscaler ticks to run")] = 10,
    step: Annotated[str, typer.Option(help="Simulated time between ticks, e.g. 10s or 1m")] = "10s",
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show detailed information")] = False,
    debug: Annotated[bool, typer.Option("--debug", help="Enable debug logging")] = False,
):
    """Run the autoscaler against an in-memory cluster"""
    logger = get_logger(debug=debug, verbose=verbose)

    try:
        autoscaler_config = load_config_with_env_override(config)
        if not debug and not verbose:
            logger.set_level(autoscaler_config.monitoring.log_level)
        tick_length = parse_duration(step)

        start = datetime.now(timezone.utc)
        provider = StaticCloudProvider(autoscaler_config.node_groups,
                                       instance_cache_ttl=autoscaler_config.autoscaling.instance_cache_ttl)
        provider, client = load_fixture_file(fixture, start, provider)
        simulation = ClusterSimulation(provider, client)
        recorder = InMemoryStatusRecorder(autoscaler_config.monitoring.status_history_size)
        autoscaler = build_autoscaler(autoscaler_config, provider, client, recorder=recorder, start_time=start)
    except (ConfigError, FixtureError, ValueError) as e:
        logger.error(str(e))
        raise typer.Exit(1)

    logger.cluster_info(f"Simulating {ticks} tick(s) of {step} with {len(provider.node_groups())} node group(s)")

    table = Table(title="Autoscaler ticks")
    for column in ("Tick", "Time", "Scale-up", "Scale-down", "Target sizes", "Pending", "Error"):
        table.add_column(column)

    errors = 0
    try:
        for tick in range(1, ticks + 1):
            now = start + tick_length * tick
            simulation.step(now)
            status = None
            error = None
            try:
                status = autoscaler.run_once(now)
                for info in status.scale_up.scale_up_infos:
                    logger.scale_up_info(f"Tick {tick}: {info.group_id} {info.current_size} -> {info.new_size}")
                for removed in status.scale_down.scaled_down_nodes:
                    logger.scale_down_info(f"Tick {tick}: removed {removed.node.name} from {removed.group_id}")
            except AutoscalerError as e:
                errors += 1
                error = f"{e.error_type.value}: {e}"
                logger.warning(f"Tick {tick} failed: {error}")
            simulation.step(now)
            _tick_row(table, tick, now, status, provider, len(client.list_unschedulable_pods()), error)
    except KeyboardInterrupt:
        logger.error("Simulation interrupted by user")
        raise typer.Exit(1)
    finally:
        autoscaler.exit_clean_up()

    console.print(table)
    if verbose and recorder.last_cluster_status:
        console.print(recorder.last_cluster_status)

    summary = recorder.summary()
    logger.success(f"Simulation finished: {summary['scale_ups']} scale-up status(es), "
                   f"{len(client.evicted)} pod(s) evicted, {errors} failed tick(s)")


@app.command("init-config")
def init_config(
    path: Annotated[Path, typer.Argument(help="Where to write the configuration file")],
    force: Annotated[bool, typer.Option("--force", "-f", help="Overwrite an existing file")] = False,
):
    """Write a default configuration file"""
    logger = get_logger(verbose=True)

    if path.exists() and not force:
        logger.error(f"{path} already exists (use --force to overwrite)")
        raise typer.Exit(1)

    try:
        create_default_config_file(path)
    except ConfigError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    logger.success(f"Default configuration written to {path}")


@app.command("validate-config")
def validate_config(
    path: Annotated[Path, typer.Argument(help="Configuration file to check")],
):
    """Check a configuration file for errors"""
    logger = get_logger(verbose=True)
    manager = ConfigManager()

    try:
        loaded = manager.load_from_file(path)
    except ConfigError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    issues = manager.validate_config(loaded)
    if issues:
        for issue in issues:
            logger.warning(issue)
        raise typer.Exit(1)

    logger.success(f"{path} is valid ({len(loaded.node_groups)} node group(s))")


def main():
    """Main entry point for the CLI"""
    app()


if __name__ == "__main__":
    main()
