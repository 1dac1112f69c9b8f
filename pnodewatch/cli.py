"""CLI entry point for the pnodewatch crawler."""

import asyncio
import logging
import sys

import click

from pnodewatch.config import ConfigError, load_config
from pnodewatch.discovery import run_crawl
from pnodewatch.output import render

logger = logging.getLogger(__name__)

FORMATS = ("table", "json")


@click.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    default=None,
    type=click.Path(exists=False),
    help="Path to YAML config file (default: ~/.pnodewatch/config.yaml).",
)
@click.option(
    "--format",
    "-f",
    "output_format",
    default="table",
    type=click.Choice(FORMATS, case_sensitive=False),
    show_default=True,
    help="Output format.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option(
    "--force-registry",
    is_flag=True,
    help="Refetch the official registries even if the cache is valid.",
)
@click.option("--no-nodes", is_flag=True, help="Omit the per-node table in table output.")
def main(
    config_path: str | None,
    output_format: str,
    verbose: bool,
    force_registry: bool,
    no_nodes: bool,
) -> None:
    """Crawl the pNode network once and store classified node records."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        cfg = load_config(config_path)
    except (ConfigError, FileNotFoundError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    logger.debug("Config loaded: %s", cfg)

    summary = asyncio.run(run_crawl(cfg, force_registry=force_registry))

    if output_format == "table":
        render(summary, output_format, show_nodes=not no_nodes)
    else:
        render(summary, output_format)
