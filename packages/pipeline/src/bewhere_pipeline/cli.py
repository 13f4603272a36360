"""
cli.py — Click CLI entrypoint for the bewhere ETL.

Usage:
    bewhere-etl run --all --dry-run
    bewhere-etl run --dataset departements --metropolitan-only
    bewhere-etl run --dataset crime-monthly --source etat4001_2024-01.csv
    bewhere-etl run --dataset crime-yearly --source ./data/etat4001 --year 2023
    bewhere-etl status --dataset population --limit 5
    bewhere-etl validate
    bewhere-etl cache stats
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any

import click
from sqlalchemy.exc import SQLAlchemyError

from bewhere_pipeline.core.pipeline import RunResult
from bewhere_pipeline.errors import EtlError
from bewhere_pipeline.orchestrator import Orchestrator
from bewhere_pipeline.pipelines import dataset_names
from bewhere_pipeline.utils.download import Fetcher
from bewhere_pipeline.utils.logging import configure_logging
from bewhere_shared.config import settings
from bewhere_shared.db import Database

DATASET_CHOICE = click.Choice(dataset_names(), case_sensitive=False)


def _database(ctx: click.Context) -> Database:
    """Open the database once per invocation; closed when the command exits."""
    db = Database(settings.database_url)
    ctx.call_on_close(db.close)
    return db.open()


def _echo_result(result: RunResult) -> None:
    stats = result.stats
    click.echo(
        f"{result.name}: {result.status.value} "
        f"(extracted={stats.rows_extracted} transformed={stats.rows_transformed} "
        f"loaded={stats.rows_loaded} skipped={stats.rows_skipped} "
        f"errors={stats.error_count} warnings={stats.warning_count} "
        f"{result.duration_ms}ms{' dry-run' if result.dry_run else ''})"
    )
    for message in result.errors[:10]:
        click.echo(f"  error: {message}", err=True)
    for message in result.warnings[:10]:
        click.echo(f"  warning: {message}")


@click.group()
@click.option(
    "--log-level",
    default=settings.log_level,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level",
)
@click.option(
    "--log-format",
    default=settings.log_format,
    type=click.Choice(["console", "json"]),
    help="Log renderer",
)
def main(log_level: str, log_format: str) -> None:
    """bewhere ETL: French boundaries, population and crime statistics."""
    configure_logging(log_level=log_level, log_format=log_format)


@main.command()
@click.option("--all", "run_all", is_flag=True, help="Run every dataset in dependency order.")
@click.option("--dataset", type=DATASET_CHOICE, help="Run a single dataset.")
@click.option(
    "--dry-run",
    is_flag=True,
    default=settings.etl_dry_run,
    help="Extract and transform but do not write.",
)
@click.option("--force", is_flag=True, help="Bypass the download cache.")
@click.option(
    "--include-overseas/--metropolitan-only",
    default=True,
    help="Keep or drop the overseas départements (97x).",
)
@click.option("--source", help="Override the dataset source URL or path (with --dataset).")
@click.option("--start-year", type=int, help="First population year to keep.")
@click.option("--end-year", type=int, help="Last population year to keep.")
@click.option("--year", type=int, help="Report year for crime-monthly and crime-yearly.")
@click.option("--month", type=click.IntRange(1, 12), help="Report month for crime-monthly.")
@click.option(
    "--min-months",
    type=click.IntRange(1, 12),
    help="Months of data crime-yearly needs before loading a year.",
)
@click.option("--skip-prerequisites", is_flag=True, help="Do not check dependency datasets.")
@click.pass_context
def run(
    ctx: click.Context,
    run_all: bool,
    dataset: str | None,
    dry_run: bool,
    force: bool,
    include_overseas: bool,
    source: str | None,
    start_year: int | None,
    end_year: int | None,
    year: int | None,
    month: int | None,
    min_months: int | None,
    skip_prerequisites: bool,
) -> None:
    """Run one dataset or all of them."""
    if run_all == bool(dataset):
        raise click.UsageError("Pass exactly one of --all or --dataset NAME")
    if source and run_all:
        raise click.UsageError("--source applies to a single --dataset")

    options: dict[str, Any] = {"force": force, "include_overseas": include_overseas}
    for key, value in (
        ("source", source),
        ("start_year", start_year),
        ("end_year", end_year),
        ("year", year),
        ("month", month),
        ("min_months", min_months),
    ):
        if value is not None:
            options[key] = value

    orchestrator = Orchestrator(_database(ctx))
    try:
        if run_all:
            results = asyncio.run(orchestrator.run_all(dry_run=dry_run, **options))
        else:
            results = [
                asyncio.run(
                    orchestrator.run_dataset(
                        dataset,
                        dry_run=dry_run,
                        check_prerequisites=not skip_prerequisites,
                        **options,
                    )
                )
            ]
    except EtlError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    except SQLAlchemyError as exc:
        click.echo(f"Database error: {exc}", err=True)
        sys.exit(1)

    for result in results:
        _echo_result(result)
    if any(r.failed for r in results):
        sys.exit(1)


@main.command()
@click.option("--dataset", type=DATASET_CHOICE, help="Only show runs of this dataset.")
@click.option("--limit", default=10, show_default=True, type=click.IntRange(min=1))
@click.pass_context
def status(ctx: click.Context, dataset: str | None, limit: int) -> None:
    """Show recent ETL runs, newest first."""
    try:
        click.echo(Orchestrator(_database(ctx)).show_status(dataset=dataset, limit=limit))
    except SQLAlchemyError as exc:
        click.echo(f"Database error: {exc}", err=True)
        sys.exit(1)


@main.command()
@click.option("--dataset", type=DATASET_CHOICE, help="Validate a single dataset.")
@click.pass_context
def validate(ctx: click.Context, dataset: str | None) -> None:
    """Check sources, database and tables without extracting."""
    orchestrator = Orchestrator(_database(ctx))
    if dataset:
        checks = {dataset: asyncio.run(orchestrator.validate_dataset(dataset))}
    else:
        checks = asyncio.run(orchestrator.validate_all())

    for name, ok in checks.items():
        click.echo(f"  {'✓' if ok else '✗'} {name}")
    if not all(checks.values()):
        sys.exit(1)


@main.group()
def cache() -> None:
    """Inspect or clear the download cache."""


@cache.command("stats")
def cache_stats() -> None:
    stats = Fetcher().cache_stats()
    for key, value in stats.items():
        click.echo(f"{key}: {value}")


@cache.command("clear")
@click.confirmation_option(prompt="Delete every cached download?")
def cache_clear() -> None:
    removed = Fetcher().clear_cache()
    click.echo(f"Removed {removed} cached file(s)")


if __name__ == "__main__":
    main()
