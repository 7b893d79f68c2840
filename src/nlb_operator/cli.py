"""NLB Operator CLI (nlbo).

Usage:
    nlbo run                    # Run the operator (same as nlb-operator)
    nlbo validate nlb.yaml      # Validate a manifest
    nlbo render nlb.yaml        # Print the provider request parameters
    nlbo info                   # Show version, kind and finalizer
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click

from .audit import OPERATOR_VERSION
from .config import Config, ConfigurationError
from .manifest import ManifestLoadError, load_manifest
from .models import NLB_FINALIZER, NLB_KIND, register_kinds
from .provider import NLB_API_VERSION


@click.group()
@click.version_option(version="0.1.0", prog_name="nlbo")
def cli() -> None:
    """NLB Operator CLI (nlbo).

    Runs the operator and checks NLB manifests offline.

    \b
    Quick Start:
        nlbo validate nlb.yaml   # Check a manifest before applying it
        nlbo render nlb.yaml     # See what will be sent to the provider
        nlbo run                 # Run the operator against the current cluster
    """
    pass


# =============================================================================
# Run Command
# =============================================================================


@cli.command()
@click.option("--region-id", help="Provider region (overrides REGION_ID)")
@click.option("--endpoint", help="API host (overrides NLB_ENDPOINT)")
@click.option("--namespace", help="Namespace to watch (overrides WATCH_NAMESPACE)")
@click.option(
    "--max-concurrent-reconciles",
    type=int,
    help="Parallel reconciliations (overrides MAX_CONCURRENT_RECONCILES)",
)
def run(
    region_id: str | None,
    endpoint: str | None,
    namespace: str | None,
    max_concurrent_reconciles: int | None,
) -> None:
    """Run the operator until SIGTERM/SIGINT."""
    from .main import main as operator_main

    config = build_config(
        region_id=region_id,
        endpoint=endpoint,
        namespace=namespace,
        max_concurrent_reconciles=max_concurrent_reconciles,
    )
    sys.exit(asyncio.run(operator_main(config)))


def build_config(**overrides: Any) -> Config:
    """Config from the environment with non-None overrides applied.

    Raises:
        click.ClickException: If the resulting configuration is invalid.
    """
    changes = {k: v for k, v in overrides.items() if v is not None}
    try:
        return Config.from_env(**changes)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# Manifest Commands
# =============================================================================


@cli.command()
@click.argument("manifest", type=click.Path(path_type=Path))
def validate(manifest: Path) -> None:
    """Validate an NLB manifest."""
    kinds = register_kinds(NLB_KIND)
    try:
        spec = load_manifest(manifest, kinds)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e

    click.secho(f"✓ {manifest} is valid", fg="green")
    click.echo(f"  VPC:       {spec.vpc_id}")
    click.echo(f"  Address:   {spec.address_type} / {spec.address_ip_version}")
    click.echo(f"  Zones:     {', '.join(zm.zone_id for zm in spec.zone_mappings)}")
    ports = ", ".join(
        f"{listener.listener_protocol}:{listener.listener_port}" for listener in spec.listeners
    )
    click.echo(f"  Listeners: {ports or 'none'}")


@cli.command()
@click.argument("manifest", type=click.Path(path_type=Path))
@click.option(
    "--load-balancer-id",
    default="<load-balancer-id>",
    show_default=True,
    help="Id used in CreateListener parameters",
)
def render(manifest: Path, load_balancer_id: str) -> None:
    """Print the provider request parameters for a manifest as JSON."""
    kinds = register_kinds(NLB_KIND)
    try:
        spec = load_manifest(manifest, kinds)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e

    requests = {
        "CreateLoadBalancer": spec.to_create_params(),
        "CreateListener": [
            listener.to_create_params(load_balancer_id) for listener in spec.listeners
        ],
    }
    click.echo(json.dumps(requests, indent=2))


# =============================================================================
# Info Command
# =============================================================================


@cli.command()
def info() -> None:
    """Show operator and resource information."""
    click.echo("NLB Operator (nlbo)")
    click.echo("=" * 40)
    click.echo(f"Version:      {OPERATOR_VERSION}")
    click.echo(f"Resource:     {NLB_KIND.kind} ({NLB_KIND.api_version}, plural {NLB_KIND.plural})")
    click.echo(f"Finalizer:    {NLB_FINALIZER}")
    click.echo(f"Provider API: NLB {NLB_API_VERSION}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
