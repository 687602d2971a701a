#!/usr/bin/env python3
"""
Multi-Track Estimator - Command Line Interface
"""

import json
import logging
import sys
import os
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table
# Add parent directory to path for src imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from src.common.config import (
    EstimatorParams, SessionConfig, load_estimator_params, load_session_config
)
from src.common.errors import RecoverableConfigError
from src.utils.config_loader import CircularIncludeError

app = typer.Typer(
    name="multi-track",
    help="Multi-track incremental pose-graph estimator CLI",
    add_completion=False,
)
console = Console()


def _setup_logging(level: str, log_file: Optional[Path] = None) -> None:
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def _params_table(title: str, params: dict) -> Table:
    table = Table(title=title)
    table.add_column("Parameter", style="cyan")
    table.add_column("Value", style="green")
    for name, value in params.items():
        table.add_row(name, str(value))
    return table


@app.command()
def run(
    config: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to session config YAML file"
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers", "-n",
        help="Number of mapping workers (overrides config)"
    ),
    poses: Optional[int] = typer.Option(
        None,
        "--poses", "-p",
        help="Poses recorded by each worker (overrides config)"
    ),
    seed: Optional[int] = typer.Option(
        None,
        "--seed", "-s",
        help="Random seed for reproducibility"
    ),
    icp: bool = typer.Option(
        False,
        "--icp",
        help="Refine loop closures by aligning local sub-maps"
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output", "-o",
        help="Write the final trajectories to this JSON file"
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level", "-l",
        help="Logging level: DEBUG, INFO, WARNING, ERROR"
    ),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        help="Also write log messages to this file"
    ),
):
    """Run a synthetic multi-worker session through the estimator."""
    _setup_logging(log_level, log_file)
    from src.simulation.multi_worker import MultiWorkerSession

    try:
        session_config = load_session_config(config) if config else SessionConfig()
        overrides = {}
        if workers is not None:
            overrides["n_workers"] = workers
        if poses is not None:
            overrides["poses_per_worker"] = poses
        if seed is not None:
            overrides["seed"] = seed
        if icp:
            overrides["estimator"] = session_config.estimator.model_copy(
                update={"do_icp_step_on_loop_closures": True}
            )
        if overrides:
            session_config = SessionConfig(**{**session_config.model_dump(), **overrides})
    except (OSError, UnicodeDecodeError, yaml.YAMLError, ValidationError, CircularIncludeError) as e:
        console.print(f"[red]Invalid session configuration: {e}[/red]")
        raise typer.Exit(1)

    console.print("[bold green]Running multi-worker session[/bold green]")
    console.print(f"  Workers: [cyan]{session_config.n_workers}[/cyan]")
    console.print(f"  Poses per worker: [cyan]{session_config.poses_per_worker}[/cyan]")
    console.print(f"  ICP refinement: [cyan]{session_config.estimator.do_icp_step_on_loop_closures}[/cyan]")
    if session_config.seed is not None:
        console.print(f"  Seed: [cyan]{session_config.seed}[/cyan]")

    session = MultiWorkerSession(session_config)
    result = session.run()

    table = Table(title="Session Summary")
    table.add_column("Worker", style="cyan")
    table.add_column("Poses", style="magenta")
    table.add_column("Odometry RMSE [m]", style="yellow")
    table.add_column("Estimate RMSE [m]", style="green")
    for worker_id, trajectory in result.trajectories.items():
        table.add_row(
            str(worker_id),
            str(len(trajectory)),
            f"{result.odometry_rmse[worker_id]:.4f}",
            f"{result.estimate_rmse[worker_id]:.4f}"
        )
    console.print(table)

    console.print(f"  Loop closures: [cyan]{len(result.loop_closures)}[/cyan]")
    console.print(f"  Factors: [cyan]{result.num_factors}[/cyan]")
    console.print(f"  Replaceable prior: [cyan]{result.replaceable_prior_index}[/cyan]")
    console.print(f"  Duration: [cyan]{result.duration_s:.2f}s[/cyan]")

    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, 'w') as f:
            json.dump(result.to_dict(), f, indent=2)
        console.print(f"[green]Trajectories saved to {output}[/green]")


@app.command("check-config")
def check_config(
    config: Path = typer.Argument(
        ...,
        help="Path to estimator config YAML file"
    ),
):
    """Validate an estimator configuration file and print it."""
    try:
        params = load_estimator_params(config)
    except (OSError, UnicodeDecodeError, yaml.YAMLError, ValidationError, CircularIncludeError) as e:
        console.print(f"[red]Invalid estimator configuration {config}:[/red]\n{e}")
        raise typer.Exit(1)

    data = params.model_dump(exclude={"laser_track"})
    console.print(_params_table("Estimator Parameters", data))
    console.print(_params_table("Laser Track", params.laser_track.model_dump()))
    console.print("[green]Configuration is valid[/green]")


@app.command()
def icp(
    config: Path = typer.Argument(
        ...,
        help="Path to ICP config YAML file"
    ),
):
    """Check whether an ICP configuration file loads."""
    from src.estimation.scan_matcher import IcpScanMatcher

    matcher = IcpScanMatcher()
    try:
        matcher.configure(config)
    except RecoverableConfigError as e:
        console.print(f"[yellow]{e}[/yellow]")
        console.print("[yellow]The estimator would fall back to the default ICP configuration.[/yellow]")
        console.print(_params_table("Default ICP Parameters", matcher.config.model_dump()))
        raise typer.Exit(1)

    console.print(_params_table("ICP Parameters", matcher.config.model_dump()))
    console.print("[green]ICP configuration loaded[/green]")


@app.command()
def defaults(
    output: Path = typer.Option(
        Path("config/estimator.yaml"),
        "--output", "-o",
        help="Where to write the default estimator configuration"
    ),
):
    """Write the default estimator configuration to a YAML file."""
    from src.common.config import save_config

    save_config(EstimatorParams(), output)
    console.print(f"[green]Default configuration written to {output}[/green]")


def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
