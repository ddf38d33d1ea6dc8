from __future__ import annotations

import asyncio
import logging
import sys
from typing import List, Optional

import typer
from dotenv import load_dotenv

from .workflows.crawl import Crawl
from .workflows.crawl_config import CrawlConfig
from .workflows.database import Database
from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.storage import Storage, StorageError

app = typer.Typer(add_help_option=False, no_args_is_help=False)


def _minimal_help() -> str:
    return """slowcrawl (archiving crawler)

Usage:
  slowcrawl crawl <seed>... [--steps N] [-v]
  slowcrawl seed <url>
  slowcrawl record <record-id> [--headers]
  slowcrawl doctor

Discoverability:
  --find <query>  Search commands and env vars.
  --doctor        Run environment diagnostics and exit.
"""


_FIND_INDEX = [
    ("command", "crawl", "Seed URLs (optional) and run the crawl loop."),
    ("command", "seed", "Add a seed without crawling."),
    ("command", "record", "Print an archived response payload."),
    ("command", "doctor", "Print environment diagnostics."),
    ("env", "SLOWCRAWL_DB_URL", "SQLAlchemy URL of the frontier/index database."),
    ("env", "SLOWCRAWL_WARC_FILENAME", "Archive file template ({prefix}, {timestamp}, {seqno})."),
    ("env", "SLOWCRAWL_WARC_MAX_LENGTH_BYTES", "Rotate archive files beyond this size."),
    ("env", "SLOWCRAWL_USER_AGENT", "User-Agent sent with every request."),
    ("env", "SLOWCRAWL_IGNORE_ROBOTS", "Skip robots.txt checks."),
    ("env", "SLOWCRAWL_MAX_DELAY_MILLIS", "Upper bound on the per-origin politeness delay."),
    ("env", "SLOWCRAWL_DEDUPE_SERVER", "Send conditional requests and archive 304s as revisits."),
    ("env", "SLOWCRAWL_DEDUPE_DIGEST", "Archive repeated payloads as revisits."),
    ("env", "SLOWCRAWL_BROWSER", "Render pages that contain script."),
    ("env", "SLOWCRAWL_BROWSER_EXECUTABLE", "Chromium binary to launch."),
    ("env", "SLOWCRAWL_RECORD_MODE", "Capture missing subresources during rendering."),
]


def _run_find(query: str) -> str:
    needle = (query or "").strip().lower()
    if not needle:
        return ""
    lines = []
    for category, name, desc in _FIND_INDEX:
        haystack = f"{category} {name} {desc}".lower()
        if needle in haystack:
            lines.append(f"{category} {name} - {desc}")
    return "\n".join(lines)


def _setup(verbose: int) -> CrawlConfig:
    load_dotenv()
    level = logging.WARNING if verbose < 0 else logging.DEBUG if verbose > 1 else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return CrawlConfig.from_env()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    help: bool = typer.Option(False, "--help", "-h", is_eager=True, help="Show minimal help."),
    find: Optional[str] = typer.Option(None, "--find", is_eager=True, help="Search commands and env vars."),
    doctor: bool = typer.Option(False, "--doctor", is_eager=True, help="Run environment diagnostics and exit."),
) -> None:
    if find is not None:
        output = _run_find(find)
        if output:
            typer.echo(output)
        raise typer.Exit(code=0)
    if doctor:
        doctor_cmd()
    if help or ctx.invoked_subcommand is None:
        typer.echo(_minimal_help())
        raise typer.Exit(code=0)


@app.command("doctor", add_help_option=True)
def doctor_cmd() -> None:
    """Print environment and dependency diagnostics."""
    load_dotenv()
    report = build_doctor_report(CrawlConfig.from_env())
    typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.get("ok", True) else 2)


@app.command("seed", add_help_option=True)
def seed_cmd(
    url: str = typer.Argument(..., help="Seed URL."),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="More logging."),
) -> None:
    """Add a seed without crawling."""
    config = _setup(verbose)
    crawl = Crawl(config)
    try:
        seed = crawl.add_seed(url)
    except ValueError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    finally:
        asyncio.run(crawl.close())
    typer.echo(str(seed))


async def _crawl(config: CrawlConfig, seeds: List[str], steps: Optional[int]) -> int:
    async with Crawl(config) as crawl:
        for url in seeds:
            crawl.add_seed(url)
        return await crawl.run(max_steps=steps)


@app.command("crawl", add_help_option=True)
def crawl_cmd(
    seeds: Optional[List[str]] = typer.Argument(None, help="Seed URLs to add before crawling."),
    steps: Optional[int] = typer.Option(None, "--steps", help="Stop after this many exchanges."),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="More logging."),
) -> None:
    """Run the crawl loop until interrupted."""
    config = _setup(verbose)
    try:
        count = asyncio.run(_crawl(config, seeds or [], steps))
    except ValueError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    except KeyboardInterrupt:
        typer.echo("interrupted", err=True)
        raise typer.Exit(code=130)
    typer.echo(f"{count} exchanges")


@app.command("record", add_help_option=True)
def record_cmd(
    record_id: str = typer.Argument(..., help="Response or revisit record id."),
    headers: bool = typer.Option(False, "--headers", help="Print the status line and headers instead of the payload."),
) -> None:
    """Print an archived response."""
    config = _setup(-1)
    db = Database(config.db_url)
    storage = Storage(config, db)
    try:
        response = storage.read_response(record_id)
    except StorageError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    finally:
        db.close()
    if headers:
        typer.echo(f"{response.status} {response.reason}".rstrip())
        for name, value in response.headers:
            typer.echo(f"{name}: {value}")
        return
    sys.stdout.buffer.write(response.payload)
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    app()
