"""Command-line interface for Vortex."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vortex import __version__
from vortex.config.config import Config, CrawlStrategy, load_config
from vortex.engine import CrawlSummary, Crawler
from vortex.exceptions import VortexError
from vortex.observability.manager import ObservabilityManager
from vortex.parser.extractors import CssField, FieldSet
from vortex.parser.rules import Condition, ParseRule, UrlPattern
from vortex.sinks import LoggingSink
from vortex.spider import Spider

console = Console(stderr=True)
logger = structlog.get_logger(__name__)


class ShutdownManager:
    """First SIGINT/SIGTERM drains the crawl, the second cancels it."""

    def __init__(self, crawler: Crawler) -> None:
        self.crawler = crawler
        self.signals_received = 0
        self._shutdown_signals = (signal.SIGINT, signal.SIGTERM)
        self._originals: Dict[int, Any] = {}

    def _signal_handler(self, signum: int, frame: Any) -> None:
        self.signals_received += 1
        loop = self._loop
        if self.signals_received == 1:
            console.print(f"\n[yellow]Received signal {signum}, draining in-flight requests...[/yellow]")
            loop.call_soon_threadsafe(self.crawler.request_stop)
        else:
            console.print(f"\n[red]Received signal {signum} again, cancelling crawl[/red]")
            loop.call_soon_threadsafe(self.crawler.cancel)

    def install(self) -> None:
        self._loop = asyncio.get_running_loop()
        for sig in self._shutdown_signals:
            self._originals[sig] = signal.signal(sig, self._signal_handler)

    def uninstall(self) -> None:
        for sig, handler in self._originals.items():
            signal.signal(sig, handler)
        self._originals.clear()


def _parse_fields(fields: Tuple[str, ...]) -> Optional[FieldSet]:
    parsed = []
    for option in fields:
        name, sep, selector = option.partition("=")
        if not sep or not name or not selector:
            raise click.BadParameter(f"expected NAME=CSS, got {option!r}", param_hint="--field")
        attr = None
        if "@" in selector:
            selector, attr = selector.rsplit("@", 1)
        parsed.append(CssField(name.strip(), selector.strip(), attr=attr))
    return FieldSet(*parsed) if parsed else None


def build_rules(
    follow: Tuple[str, ...], deny: Tuple[str, ...], parse: Tuple[str, ...], fields: Tuple[str, ...]
) -> List[ParseRule]:
    """Translate command-line options into a rule set."""
    rules: List[ParseRule] = []
    if follow:
        rules.append(ParseRule(UrlPattern(follow, deny), Condition.FOLLOW, name="follow"))

    extractor = _parse_fields(fields)
    if extractor is not None:
        rules.append(ParseRule(UrlPattern(parse or None, deny), Condition.PARSE, extractor=extractor, name="fields"))
    return rules


def render_summary(summary: CrawlSummary) -> None:
    table = Table(title=f"Crawl {summary.spider} ({summary.crawl_id})", show_header=True)
    table.add_column("Metric")
    table.add_column("Value", justify="right")

    stats = summary.stats
    table.add_row("Reason", summary.reason)
    table.add_row("Duration", f"{summary.duration:.2f}s")
    table.add_row("Dispatched", str(stats["dispatched"]))
    for kind, count in sorted(stats["outcomes"].items()):
        table.add_row(f"Outcome: {kind}", str(count))
    table.add_row("Retries", str(stats["retries"]))
    table.add_row("Records", str(stats["records"]))
    table.add_row("Extraction failures", str(stats["extraction_failures"]))
    table.add_row("Sink failures", str(stats["sink_failures"]))
    table.add_row("Pending in frontier", str(summary.scheduler["frontier_size"]))
    for reason, count in sorted(summary.scheduler["rejected"].items()):
        table.add_row(f"Rejected: {reason}", str(count))
    console.print(table)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Vortex - an asynchronous, rule-driven web crawler."""


@cli.command()
@click.argument("seeds", nargs=-1, required=True)
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False), help="YAML config file")
@click.option("--name", default="cli", help="Spider name")
@click.option("--follow", multiple=True, help="Regex of links to follow (repeatable)")
@click.option("--deny", multiple=True, help="Regex of URLs never followed or parsed (repeatable)")
@click.option("--parse", multiple=True, help="Regex of page URLs to extract fields from (repeatable)")
@click.option("--field", "fields", multiple=True, help="Extracted field as NAME=CSS or NAME=CSS@attr (repeatable)")
@click.option("--strategy", type=click.Choice([s.value for s in CrawlStrategy]), help="Frontier ordering")
@click.option("--max-depth", type=int, help="Maximum link depth")
@click.option("--concurrency", type=int, help="Global concurrency limit")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]), help="Logging level")
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON on stdout")
def crawl(
    seeds: Tuple[str, ...],
    config_path: Optional[str],
    name: str,
    follow: Tuple[str, ...],
    deny: Tuple[str, ...],
    parse: Tuple[str, ...],
    fields: Tuple[str, ...],
    strategy: Optional[str],
    max_depth: Optional[int],
    concurrency: Optional[int],
    log_level: Optional[str],
    as_json: bool,
) -> None:
    """Crawl from SEEDS using rules given as options."""
    try:
        config = _resolve_config(config_path, strategy, max_depth, concurrency, log_level)
        rules = build_rules(follow, deny, parse, fields)
        if not rules:
            raise click.UsageError("give at least one --follow pattern or --field")
        spider = Spider.from_urls(name, seeds, rules, config)
        spider.validate()
    except VortexError as exc:
        raise click.ClickException(str(exc)) from exc

    try:
        summary = asyncio.run(_run(spider))
    except VortexError as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        click.echo(json.dumps(summary.to_dict(), indent=2, default=str))
    else:
        render_summary(summary)
    if summary.failures:
        sys.exit(2)


@cli.command("config")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False), help="YAML config file")
def show_config(config_path: Optional[str]) -> None:
    """Print the resolved configuration."""
    try:
        config = load_config(Path(config_path) if config_path else None)
    except VortexError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(Panel(json.dumps(config.model_dump(mode="json"), indent=2), title="Vortex configuration"))


def _resolve_config(
    config_path: Optional[str],
    strategy: Optional[str],
    max_depth: Optional[int],
    concurrency: Optional[int],
    log_level: Optional[str],
) -> Config:
    config = load_config(Path(config_path) if config_path else None)
    scheduler: Dict[str, Any] = {}
    if strategy:
        scheduler["strategy"] = strategy
    if max_depth is not None:
        scheduler["max_depth"] = max_depth
    downloader: Dict[str, Any] = {}
    if concurrency is not None:
        downloader["concurrency"] = concurrency
    monitoring: Dict[str, Any] = {}
    if log_level:
        monitoring["log_level"] = log_level
    return config.with_overrides(scheduler=scheduler, downloader=downloader, monitoring=monitoring)


async def _run(spider: Spider) -> CrawlSummary:
    async with ObservabilityManager(spider.config.monitoring) as observability:
        crawler = Crawler(
            spider.config,
            LoggingSink(),
            logger=observability.bind_logger(component="engine"),
        )
        shutdown = ShutdownManager(crawler)
        shutdown.install()
        try:
            return await crawler.run(spider)
        finally:
            shutdown.uninstall()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
