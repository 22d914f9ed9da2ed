"""Command-line interface for PaceCore."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import click
import structlog
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from pacecore import __version__
from pacecore.config.config import Config, SchedulerConfig, find_config_file
from pacecore.crawler.http_client import HttpFetcher, robots_fetch_adapter
from pacecore.crawler.orchestrator import RequestOrchestrator
from pacecore.crawler.robots_parser import RobotsPolicyEngine
from pacecore.exceptions import PaceCoreError
from pacecore.observability import configure_logging, start_metrics_server
from pacecore.protocols import FetchResponse

console = Console()
logger = structlog.get_logger(__name__)


def load_config(config_path: Optional[Path], log_level: Optional[str]) -> Config:
    path = config_path or find_config_file()
    config = Config.from_yaml(path) if path else Config()
    if log_level:
        config.monitoring.log_level = log_level
    return config


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], log_level: Optional[str]) -> None:
    """PaceCore - polite, adaptive request orchestration."""
    ctx.ensure_object(dict)
    config = load_config(Path(config_path) if config_path else None, log_level)
    configure_logging(config.monitoring)
    ctx.obj["config"] = config


@cli.command()
@click.argument("url")
@click.option("--agent", default=None, help="User agent to match against robots.txt groups")
@click.pass_context
def robots(ctx: click.Context, url: str, agent: Optional[str]) -> None:
    """Check whether URL may be fetched and show its crawl delay."""
    config: Config = ctx.obj["config"]

    async def check() -> tuple[bool, Optional[int]]:
        async with HttpFetcher(config.http) as fetcher:
            engine = RobotsPolicyEngine(config.robots, robots_fetch_adapter(fetcher))
            allowed = await engine.is_allowed(url, agent)
            delay = await engine.crawl_delay(url, agent)
            await engine.close()
            return allowed, delay

    allowed, delay = asyncio.run(check())
    table = Table(title="robots.txt")
    table.add_column("URL")
    table.add_column("Agent")
    table.add_column("Allowed")
    table.add_column("Crawl delay")
    table.add_row(
        url,
        agent or config.robots.user_agent,
        "[green]yes[/green]" if allowed else "[red]no[/red]",
        f"{delay} ms" if delay is not None else "-",
    )
    console.print(table)
    if not allowed:
        sys.exit(2)


@cli.command()
@click.argument("urls", nargs=-1, required=True)
@click.option("--concurrency", default=None, type=click.IntRange(min=1), help="Maximum tasks in flight")
@click.option("--priority", default=0, help="Priority for all URLs (higher runs first)")
@click.option("--agent", default=None, help="User agent for robots.txt matching")
@click.pass_context
def fetch(ctx: click.Context, urls: tuple[str, ...], concurrency: Optional[int], priority: int, agent: Optional[str]) -> None:
    """Fetch one or more URLs through the orchestrator."""
    config: Config = ctx.obj["config"]
    if concurrency is not None:
        config = config.model_copy(update={"scheduler": SchedulerConfig(max_concurrent_tasks=concurrency)})
    start_metrics_server(config.monitoring)

    async def run() -> List[FetchResponse | BaseException]:
        async with RequestOrchestrator.from_config(config) as orchestrator:
            return await orchestrator.fetch_many(list(urls), priority=priority, agent=agent)

    results = asyncio.run(run())

    table = Table(title="Fetch results")
    table.add_column("URL")
    table.add_column("Status")
    table.add_column("Size", justify="right")
    table.add_column("Time", justify="right")
    failures = 0
    for url, result in zip(urls, results):
        if isinstance(result, FetchResponse):
            table.add_row(url, str(result.status), str(len(result.body)), f"{result.elapsed_ms:.0f} ms")
            continue
        failures += 1
        if isinstance(result, PaceCoreError):
            label = f"[red]{result.kind.value}[/red]"
            detail = result.last_error
        else:
            label = f"[red]{type(result).__name__}[/red]"
            detail = str(result)
        table.add_row(url, label, "-", detail)
    console.print(table)
    logger.info("Fetch finished", urls=len(urls), failures=failures)
    if failures:
        sys.exit(1)


@cli.command("config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the resolved configuration as YAML."""
    config: Config = ctx.obj["config"]
    console.print(Syntax(config.to_yaml(), "yaml"))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
