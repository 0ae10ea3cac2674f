#!/usr/bin/env python3
"""
Command line interface for notesearch.

Usage:
    ns search "query"           - Search the notes folder
    ns analyze "query"          - Show intent and filters for a query
    ns explain "query" FILE     - Ask the model why a note matches
"""

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from ..engine.cancellation import CancellationToken
from ..engine.config import Config
from ..engine.errors import SearchError
from ..engine.query_analyzer import QueryAnalyzer
from ..engine.service import SearchService

console = Console()

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logging(verbose: bool, log_file: Optional[str]) -> None:
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level="DEBUG" if verbose else "WARNING")
    if log_file:
        logger.add(log_file, rotation="1 day", retention="7 days", level="DEBUG")


def load_config(config_path: Optional[str], notes_path: Optional[str]) -> Config:
    if notes_path:
        if config_path:
            base = Config.load(Path(config_path))
            return base.model_copy(update={"notes_path": Config(notes_path=notes_path).notes_path})
        return Config(notes_path=notes_path)
    return Config.load(Path(config_path) if config_path else None)


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="Config file path")
@click.option("--notes", "-n", "notes_path", type=click.Path(exists=True, file_okay=False), help="Notes folder")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--log-file", type=click.Path(), help="Also log to this file")
@click.pass_context
def cli(ctx, config_path: Optional[str], notes_path: Optional[str], verbose: bool, log_file: Optional[str]):
    """notesearch - hybrid keyword and semantic search over a notes folder."""
    setup_logging(verbose, log_file)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["notes_path"] = notes_path


def _config_from(ctx) -> Config:
    try:
        return load_config(ctx.obj["config_path"], ctx.obj["notes_path"])
    except (FileNotFoundError, ValidationError) as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        console.print("Pass [cyan]--notes PATH[/cyan] or create [cyan]notesearch.yaml[/cyan]")
        sys.exit(2)


@cli.command()
@click.argument("query")
@click.option("--limit", "-l", type=int, help="Max results")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON")
@click.pass_context
def search(ctx, query: str, limit: Optional[int], as_json: bool):
    """Search notes for QUERY."""
    config = _config_from(ctx)
    if limit:
        config.search.max_results = limit
    sys.exit(asyncio.run(run_search(config, query, as_json)))


async def run_search(config: Config, query: str, as_json: bool) -> int:
    token = CancellationToken()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: token.cancel())

    try:
        async with SearchService(config) as service:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                transient=True,
                console=console,
            ) as progress:
                task = progress.add_task(description="Searching...", total=100)

                def on_progress(message: str, percent: Optional[int]) -> None:
                    if percent is None:
                        progress.update(task, description=message)
                    else:
                        progress.update(task, description=message, completed=percent)

                def on_notice(message: str) -> None:
                    progress.console.print(f"[yellow]{message}[/yellow]")

                results = await service.search(
                    query,
                    progress_callback=on_progress,
                    cancellation=token,
                    notify=on_notice,
                )
    except SearchError as e:
        console.print(f"[red]Search failed:[/red] {e.message}")
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if token.is_cancelled:
        console.print("[yellow]Search cancelled; showing partial results[/yellow]")

    if as_json:
        click.echo(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        display_search_results(results)
    return 0


def display_search_results(results) -> None:
    """Display search results in a table."""
    if not results:
        console.print("[yellow]No results found[/yellow]")
        return

    table = Table(title=f"Search Results ({len(results)})")
    table.add_column("Note", style="cyan", no_wrap=False)
    table.add_column("Match", style="magenta")
    table.add_column("Score", justify="right")
    table.add_column("Preview", no_wrap=False)

    for r in results:
        preview = r.preview if len(r.preview) <= 100 else r.preview[:100] + "..."
        table.add_row(r.file_name, r.match_type.value, f"{r.score:.2f}", preview)

    console.print(table)


@cli.command()
@click.argument("query")
def analyze(query: str):
    """Show how QUERY is classified and which filters it carries."""
    analyzed = QueryAnalyzer().analyze(query)
    console.print(f"Intent:  [magenta]{analyzed.intent.value}[/magenta]")
    console.print(f"Cleaned: [cyan]{analyzed.cleaned_query or '(empty)'}[/cyan]")
    if analyzed.semantic_query:
        console.print(f"Semantic query: [cyan]{analyzed.semantic_query}[/cyan]")
    console.print("Filters:")
    console.print_json(json.dumps(analyzed.filters.to_dict()))


@cli.command()
@click.argument("query")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def explain(ctx, query: str, file: str):
    """Ask the model why FILE is relevant to QUERY."""
    config = _config_from(ctx)
    explanation = asyncio.run(run_explain(config, query, file))
    console.print(explanation)


async def run_explain(config: Config, query: str, file: str) -> str:
    service = SearchService(config)
    try:
        return await service.explain(query, file)
    finally:
        await service.close()


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
