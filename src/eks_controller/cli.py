"""EKS identity provider operator CLI (eks-idp).

Usage:
    eks-idp plan my-cluster          # Show procedures a pass would run
    eks-idp reconcile my-cluster     # Run one pass
    eks-idp run                      # Run the operator loop
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .main import main as operator_main
from .main import setup_logging
from .reconciler import Reconciler, ReconcileResult


def load_config(
    region: str | None, specs_dir: Path | None, dry_run: bool | None = None
) -> Config:
    """Load configuration from the environment with command-line overrides.

    Raises:
        click.ClickException: If the resulting configuration is invalid.
    """
    try:
        return Config.from_env(region=region, specs_dir=specs_dir, dry_run=dry_run)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _result_payload(result: ReconcileResult) -> dict[str, object]:
    return {
        "cluster": result.cluster_name,
        "procedures": result.procedures,
        "executed": result.executed,
        "status": result.status,
        "arn": result.arn,
        "deferred": result.deferred,
        "requeue_after_seconds": result.requeue_after_seconds,
        "error": str(result.error) if result.error is not None else None,
        "requeue": result.requeue,
    }


@click.group()
@click.option("--region", envvar="AWS_REGION", help="AWS region of the clusters.")
@click.option(
    "--specs-dir",
    envvar="SPECS_DIR",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory of cluster YAML specs.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, region: str | None, specs_dir: Path | None, verbose: bool) -> None:
    """Reconcile EKS OIDC identity provider associations."""
    ctx.ensure_object(dict)
    ctx.obj["region"] = region
    ctx.obj["specs_dir"] = specs_dir
    ctx.obj["verbose"] = verbose


def _run_pass(ctx: click.Context, cluster: str, dry_run: bool | None) -> ReconcileResult:
    setup_logging(logging.DEBUG if ctx.obj["verbose"] else logging.WARNING)
    config = load_config(ctx.obj["region"], ctx.obj["specs_dir"], dry_run=dry_run)
    reconciler = Reconciler(config)
    return asyncio.run(reconciler.reconcile(cluster))


@cli.command()
@click.argument("cluster")
@click.pass_context
def plan(ctx: click.Context, cluster: str) -> None:
    """Show the procedures a pass would run for CLUSTER, without mutating anything."""
    result = _run_pass(ctx, cluster, dry_run=True)
    click.echo(json.dumps(_result_payload(result), indent=2))
    if result.error is not None:
        sys.exit(1)


@cli.command()
@click.argument("cluster")
@click.pass_context
def reconcile(ctx: click.Context, cluster: str) -> None:
    """Run one reconciliation pass for CLUSTER."""
    result = _run_pass(ctx, cluster, dry_run=None)
    click.echo(json.dumps(_result_payload(result), indent=2))
    if result.error is not None:
        sys.exit(1)


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run the operator loop until SIGTERM or SIGINT."""
    config = load_config(ctx.obj["region"], ctx.obj["specs_dir"])
    level = logging.DEBUG if ctx.obj["verbose"] else logging.INFO
    sys.exit(asyncio.run(operator_main(config, log_level=level)))


if __name__ == "__main__":
    cli()
