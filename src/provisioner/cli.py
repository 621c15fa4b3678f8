"""Provisioner CLI.

Usage:
    provisioner plan cluster.yaml             # Show the changeset
    provisioner apply cluster.yaml            # Reconcile once
    provisioner apply cluster.yaml --dry-run  # Plan through the apply path
    provisioner state                         # Print recorded state
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from .config import Config, ConfigurationError
from .diff import IgnoreRulesError
from .main import setup_logging
from .models import SpecValidationError
from .reconciler import Reconciler
from .spec_loader import load_spec
from .state_store import StateStoreError


def load_config(**overrides: Any) -> Config:
    """Config from the environment with command-line overrides applied.

    Raises:
        click.ClickException: If the resulting configuration is invalid.
    """
    try:
        config = Config.from_env()
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(config, **changes) if changes else config
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def build_reconciler(config: Config) -> Reconciler:
    try:
        return Reconciler(config)
    except (IgnoreRulesError, StateStoreError) as e:
        raise click.ClickException(str(e)) from e


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="provisioner")
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level")
def cli(verbose: bool) -> None:
    """Provision managed Kubernetes clusters (AKS, EKS, GKE) from a ClusterSpec.

    \b
    Quick Start:
        provisioner plan cluster.yaml
        provisioner apply cluster.yaml
    """
    setup_logging(logging.DEBUG if verbose else logging.WARNING, stream=sys.stderr)


@cli.command()
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--state-dir", type=click.Path(file_okay=False, path_type=Path), help="State store directory")
def plan(spec_file: Path, state_dir: Path | None) -> None:
    """Show the changes an apply would make."""
    config = load_config(state_dir=state_dir)
    reconciler = build_reconciler(config)

    try:
        result = reconciler.plan(load_spec(spec_file))
    except (SpecValidationError, StateStoreError) as e:
        raise click.ClickException(str(e)) from e

    echo_json(
        {
            "summary": result.summary,
            "changes": [c.to_dict() for c in result.mutations],
        }
    )


@cli.command()
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--state-dir", type=click.Path(file_okay=False, path_type=Path), help="State store directory")
@click.option("--workers", "-w", "max_workers", type=int, help="Concurrent provider operations")
@click.option("--dry-run", is_flag=True, help="Plan only, never call the provider")
def apply(
    spec_file: Path,
    state_dir: Path | None,
    max_workers: int | None,
    dry_run: bool,
) -> None:
    """Reconcile the cluster once and print the result."""
    config = load_config(state_dir=state_dir, max_workers=max_workers, dry_run=dry_run or None)
    reconciler = build_reconciler(config)

    try:
        spec = load_spec(spec_file)
    except SpecValidationError as e:
        raise click.ClickException(str(e)) from e

    result = asyncio.run(reconciler.reconcile(spec))
    echo_json(result.to_dict())

    if result.error is not None:
        raise click.ClickException(str(result.error))
    if not result.success:
        sys.exit(1)


@cli.command()
@click.option("--state-dir", type=click.Path(file_okay=False, path_type=Path), help="State store directory")
@click.option("--outputs", "outputs_only", is_flag=True, help="Print projected outputs only")
def state(state_dir: Path | None, outputs_only: bool) -> None:
    """Print the recorded state."""
    config = load_config(state_dir=state_dir)
    reconciler = build_reconciler(config)

    try:
        if outputs_only:
            echo_json(reconciler.outputs())
        else:
            echo_json(
                {node_id: s.to_dict() for node_id, s in reconciler.store.snapshot().items()}
            )
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e


if __name__ == "__main__":
    cli()
