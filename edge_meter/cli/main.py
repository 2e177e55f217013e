"""
CLI interface for Edge Meter.

Runs the transform over local log files, triggers rollups and reports on the
stored usage aggregates.
"""

import sys
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from edge_meter.config.loader import MeterConfig, load_config, load_config_from_env
from edge_meter.core.pricing import PricingPolicy
from edge_meter.core.queries import Granularity
from edge_meter.core.rollup import RollupSummary
from edge_meter.core.transformer import BatchReport, InboundUnit, Verdict
from edge_meter.core.usage import UsageSummary, select_buckets, validate_date_prefix
from edge_meter.factory import (
    build_aggregator,
    build_store,
    build_transform_service,
    build_usage_reader,
)
from edge_meter.logs import configure_logging
from edge_meter.storage.models import UsageAggregate
from edge_meter.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML config (defaults to $EDGE_METER_CONFIG)"
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Override the configured log level"
    ),
):
    """Edge Meter CLI."""
    ctx.obj = {"config_path": config, "log_level": log_level}
    if ctx.invoked_subcommand is None:
        console.print("Edge Meter - Use --help to see available commands")


def _load(ctx: typer.Context) -> MeterConfig:
    """Load config for a command and set up console logging."""
    options = ctx.obj or {}
    config_path = options.get("config_path")
    config = load_config(str(config_path)) if config_path else load_config_from_env()
    configure_logging(options.get("log_level") or config.logging.level, "console")
    return config


def _fail(e: Exception) -> None:
    console.print(f"[red]{type(e).__name__}:[/] {escape(str(e))}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def init(ctx: typer.Context):
    """Initialize the local SQLite counter store."""
    try:
        config = _load(ctx)
        initialize_schema(config.storage.sqlite_path)
        console.print(f"[green]✓[/] Counter store initialized at {escape(config.storage.sqlite_path)}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail(e)


@app.command()
def transform(
    ctx: typer.Context,
    log_file: Path = typer.Argument(..., help="Tab-delimited real-time log file, one record per line"),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Write delivered JSON records here instead of stdout"
    ),
    strict: bool = typer.Option(
        False,
        "--strict",
        "-s",
        help="Exit with error code if any record fails"
    ),
):
    """
    Transform a local log file into JSON records.

    Each line is one unit; delivered records are written as JSON lines and a
    verdict summary is printed at the end.
    """
    try:
        config = _load(ctx)
        if not log_file.exists():
            raise FileNotFoundError(f"Log file not found: {log_file}")

        lines = log_file.read_bytes().splitlines()
        units = [InboundUnit(str(number), line) for number, line in enumerate(lines, start=1)]
        outbound = build_transform_service(config).process(units)

        delivered = [unit.payload for unit in outbound if unit.verdict is Verdict.DELIVERED]
        if output is not None:
            output.write_bytes(b"".join(delivered))
        else:
            for payload in delivered:
                typer.echo(payload.decode("utf-8"), nl=False)

        report = BatchReport.from_units(outbound)
        _display_batch_report(report)
        for unit in outbound:
            if unit.verdict is Verdict.FAILED:
                console.print(f"[yellow]Line {unit.correlation_id} failed[/]")

        if strict and report.failed:
            sys.exit(EXIT_CODE_FAIL)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail(e)


@app.command()
def rollup(
    ctx: typer.Context,
    date: Optional[str] = typer.Option(
        None,
        "--date",
        "-d",
        help="Day to roll up, YYYY-MM-DD (defaults to yesterday UTC)"
    ),
    policy: str = typer.Option(
        PricingPolicy.DEFAULT.value,
        "--policy",
        "-p",
        help="Pricing policy: default, geography or cacheDiscount"
    ),
    granularity: str = typer.Option(
        Granularity.DAY.value,
        "--granularity",
        "-g",
        help="Bucket width for the default policy: day or hour"
    ),
):
    """Run one usage rollup against the query engine."""
    try:
        config = _load(ctx)
        pricing_policy = PricingPolicy.parse(policy)
        bucket_width = Granularity(granularity.lower())
        summary = build_aggregator(config).run(date, policy=pricing_policy, granularity=bucket_width)
        _display_rollup_summary(summary)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail(e)


@app.command()
def usage(
    ctx: typer.Context,
    identity: str = typer.Argument(..., help="Identity token (API key)"),
    date_prefix: str = typer.Argument(..., help="YYYY-MM, YYYY-MM-DD or YYYY-MM-DDTHH"),
):
    """Show usage of one identity for a month, day or hour."""
    try:
        config = _load(ctx)
        summary = build_usage_reader(config).get_usage(identity, date_prefix)
        _display_usage_summary(summary)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail(e)


@app.command()
def report(
    ctx: typer.Context,
    date_prefix: str = typer.Option(
        ...,
        "--date",
        "-d",
        help="YYYY-MM, YYYY-MM-DD or YYYY-MM-DDTHH"
    ),
    identity: Optional[str] = typer.Option(
        None,
        "--identity",
        "-i",
        help="Limit the report to one identity"
    ),
):
    """Report per-identity usage and estimated cost for a period."""
    try:
        config = _load(ctx)
        validate_date_prefix(date_prefix)
        store = build_store(config)
        if identity:
            rows = select_buckets(store.get_by_prefix(identity, date_prefix))
        else:
            rows = select_buckets(store.list_by_prefix(date_prefix))

        if not rows:
            console.print(f"\n[bold yellow]No usage recorded for {escape(date_prefix)}[/]")
            sys.exit(EXIT_CODE_PASS)

        _display_usage_report(date_prefix, rows)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail(e)


def _format_bytes(count: int) -> str:
    """Format a byte count with a binary unit."""
    size = float(count)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:,.0f} {unit}" if unit == "B" else f"{size:,.2f} {unit}"
        size /= 1024
    return f"{size:,.2f} GiB"


def _format_currency(amount: Decimal) -> str:
    return f"${amount:,.4f}"


def _display_batch_report(report: BatchReport):
    table = Table(title="Transform Result")
    table.add_column("Verdict")
    table.add_column("Records", justify="right")
    table.add_row(Verdict.DELIVERED.value, str(report.delivered))
    table.add_row(Verdict.DROPPED.value, str(report.dropped))
    table.add_row(Verdict.FAILED.value, str(report.failed))
    console.print(table)


def _display_rollup_summary(summary: RollupSummary):
    console.print("\n[bold]Rollup Result[/bold]")
    console.print("-" * 40)
    console.print(f"Date: {summary.date}")
    console.print(f"Pricing policy: {summary.policy.value}")
    console.print(f"Granularity: {summary.granularity.value}")
    console.print(f"Identities processed: {summary.identities_processed}")
    console.print(f"Rows merged: {summary.rows_merged}")
    if summary.query_id:
        console.print(f"Query id: {summary.query_id}")

    if not summary.sample_rows:
        return
    table = Table(title="Sample Rows")
    columns = list(summary.sample_rows[0].keys())
    for column in columns:
        table.add_column(column)
    for row in summary.sample_rows:
        table.add_row(*(escape(str(row.get(column, ""))) for column in columns))
    console.print(table)


def _display_usage_summary(summary: UsageSummary):
    table = Table(title=f"Usage for {escape(summary.identity)} ({summary.date_prefix})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Requests", f"{summary.request_count:,}")
    table.add_row("Bytes sent", _format_bytes(summary.bytes_sent))
    table.add_row("Bytes received", _format_bytes(summary.bytes_received))
    table.add_row("Successful requests", f"{summary.successful_requests:,}")
    table.add_row("Error requests", f"{summary.error_requests:,}")
    table.add_row("Cache hit rate", f"{summary.cache_hit_rate}%")
    table.add_row("Avg response time", f"{summary.avg_response_time_ms:,.2f} ms")
    table.add_row("Countries served", str(summary.countries_served))
    table.add_row("Estimated cost", _format_currency(summary.estimated_cost))
    table.add_row("Buckets", str(summary.records))
    console.print(table)


def _display_usage_report(date_prefix: str, rows: List[UsageAggregate]):
    totals: Dict[str, Dict[str, object]] = {}
    for row in rows:
        entry = totals.setdefault(row.identity, {"requests": 0, "bytes": 0, "cost": Decimal("0.0000")})
        entry["requests"] += row.request_count
        entry["bytes"] += row.bytes_sent
        entry["cost"] += row.estimated_cost

    table = Table(title=f"Usage Report {date_prefix}")
    table.add_column("Identity")
    table.add_column("Requests", justify="right")
    table.add_column("Bytes sent", justify="right")
    table.add_column("Estimated cost", justify="right")
    ordered = sorted(totals.items(), key=lambda item: (-item[1]["cost"], item[0]))
    for identity, entry in ordered:
        table.add_row(
            escape(identity),
            f"{entry['requests']:,}",
            _format_bytes(entry["bytes"]),
            _format_currency(entry["cost"]),
        )
    grand_total = sum((entry["cost"] for entry in totals.values()), Decimal("0.0000"))
    console.print(table)
    console.print(f"Total estimated cost: {_format_currency(grand_total)}")


if __name__ == "__main__":
    app()
