"""
Main CLI interface for the multi-cloud cost dashboard.

Provides commands to run the API server, print the unified month-to-date
total, refresh stored provider data and inspect the billing window.
"""

import asyncio
import json
import logging
import sys

import click

from .config.settings import get_config, load_config_file
from .utils.window import resolve_window

# Set up logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, quiet: bool = True):
    """Configure logging based on verbosity settings."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    elif quiet:
        logging.getLogger().setLevel(logging.ERROR)
    else:
        logging.getLogger().setLevel(logging.INFO)

    # Configure cloud provider loggers to reduce noise
    cloud_loggers = [
        "azure.core.pipeline.policies.http_logging_policy",
        "azure.identity",
        "boto3",
        "botocore",
        "urllib3",
        "httpx",
        "httpcore",
        "google.auth",
        "google.cloud",
    ]
    for logger_name in cloud_loggers:
        logging.getLogger(logger_name).setLevel(logging.INFO if verbose else logging.ERROR)


def _month_window(month):
    try:
        return resolve_window(month)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--month") from e


async def _with_state(config, action):
    """Build the services, run ``action(state)`` and release resources."""
    from .api.data_service import build_state

    state = build_state(config)
    await state.storage.initialize()
    try:
        await state.credentials.seed_from_config()
        return await action(state)
    finally:
        await state.cache.close()
        await state.storage.close()


@click.group()
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Extra YAML configuration file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging and debug output")
@click.pass_context
def cli(ctx, config, verbose):
    """Multi-Cloud Cost Dashboard - unified month-to-date spend across Azure, AWS, GCP and MongoDB Atlas."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    try:
        ctx.obj["config"] = load_config_file(config) if config else get_config()
    except Exception as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--host", help="Bind address (default: server.host)")
@click.option("--port", type=int, help="Port (default: server.port)")
@click.pass_context
def serve(ctx, host, port):
    """Run the cost dashboard API server."""
    from .api.data_service import run

    config = ctx.obj["config"]
    setup_logging(ctx.obj["verbose"], quiet=False)
    server = config.server
    run(host=host or server.get("host", "0.0.0.0"), port=port or int(server.get("port", 9003)))


@cli.command()
@click.option("--month", "-m", help="Month as YYYY-MM (default: current UTC month)")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.pass_context
def total(ctx, month, output_format):
    """Print the unified month-to-date total."""
    window = _month_window(month)

    async def _total(state):
        return await state.aggregator.compute_unified_total(window)

    unified = asyncio.run(_with_state(ctx.obj["config"], _total))

    if output_format == "json":
        click.echo(json.dumps(unified.to_response(), indent=2))
        return

    click.echo(f"💰 Month-to-date spend {window.start_date} to {window.end_date} (exclusive), USD")
    click.echo("-" * 52)
    for name, summary in unified.components.items():
        click.echo(f"  {name:<10} ${summary.amount_usd:>12,.2f}  [{summary.source.value}]")
    click.echo("-" * 52)
    click.echo(f"  {'total':<10} ${unified.total:>12,.2f}")
    for name, error in unified.diagnostics.items():
        click.echo(f"⚠️  {name}: {error}", err=True)


@cli.command()
@click.option("--month", "-m", help="Month as YYYY-MM (default: current UTC month)")
@click.pass_context
def refresh(ctx, month):
    """Re-ingest stateful providers (Azure, MongoDB) into storage."""
    window = _month_window(month)

    async def _refresh(state):
        return await state.orchestrator.refresh(window)

    report = asyncio.run(_with_state(ctx.obj["config"], _refresh))
    for result in report.results:
        if result.success:
            click.echo(f"✅ {result.provider}: {result.records} records, ${result.amount_usd:,.2f}")
        else:
            click.echo(f"❌ {result.provider}: {result.error}", err=True)
    click.echo(report.message)
    if not report.success:
        sys.exit(1)


@cli.command()
@click.option("--month", "-m", help="Month as YYYY-MM (default: current UTC month)")
def window(month):
    """Show the UTC billing window."""
    click.echo(json.dumps(_month_window(month).to_dict(), indent=2))


@cli.command()
def version():
    """Display version information."""
    from . import __version__

    click.echo(f"Multi-Cloud Cost Dashboard v{__version__}")


if __name__ == "__main__":
    cli()
