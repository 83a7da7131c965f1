"""
cli.py — Click CLI entrypoint for the acquisition pipeline.

Usage:
    cnc-pipeline run icec
    cnc-pipeline run peic --region BR --region SP --period 01/2024:> --mode full
    cnc-pipeline retry icf --tuple ES:07/2025 --tuple BR:08/2025
    cnc-pipeline delete icec --region ES --period 03/2012
    cnc-pipeline status

Exit codes for run/retry:
    0  every tuple succeeded or was skipped
    1  at least one tuple failed
    2  a batch for the indicator is already running
"""

from __future__ import annotations

import asyncio
import sys

import click
import structlog

from cnc_pipeline.errors import BatchAlreadyRunning, ConfigurationError, PersistenceError
from cnc_pipeline.utils.logging import configure_logging
from cnc_shared.config import settings
from cnc_shared.constants import Indicator
from cnc_shared.models.indicators import NaturalKey
from cnc_shared.time_utils import Period

log = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_ALREADY_RUNNING = 2

_INDICATOR = click.Choice([i.value for i in Indicator], case_sensitive=False)


def _echo_report(report) -> None:
    counts = report.counts
    click.echo(
        f"{report.indicator.value.upper()} [{report.mode}] {report.period_label} "
        f"regions={','.join(report.regions)}"
    )
    click.echo(
        f"  success={counts['success']} skipped={counts['skipped']} "
        f"failed={counts['failed']} by_method={report.by_method} "
        f"({report.duration_ms} ms)"
    )
    if report.cancelled:
        click.echo("  ⚠ cancelled before all tuples were processed")
    for outcome in report.failed:
        click.echo(f"  ✗ {outcome.label:12s} {outcome.error_kind}: {outcome.error}")
    if report.schema_drift:
        click.echo(
            "  ⚠ schema drift (both sources unreadable): "
            + ", ".join(o.label for o in report.schema_drift)
        )
    if report.failed:
        retry_args = " ".join(f"--tuple {label}" for label in report.failed_tuples)
        click.echo(f"  retry: cnc-pipeline retry {report.indicator.value} {retry_args}")


def _parse_tuple(raw: str) -> tuple[str, Period]:
    region, sep, period = raw.partition(":")
    if not sep:
        raise click.BadParameter(f"{raw!r} — expected REGION:MM/YYYY")
    try:
        return region.strip().upper(), Period.parse(period)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def _run_to_exit(coro) -> int:
    """Await a batch coroutine and map its result to an exit code."""
    try:
        report = asyncio.run(coro)
    except BatchAlreadyRunning as exc:
        click.echo(f"✗ {exc}", err=True)
        return EXIT_ALREADY_RUNNING
    except ConfigurationError as exc:
        raise click.UsageError(str(exc)) from exc
    except PersistenceError as exc:
        click.echo(f"✗ store failure, batch aborted: {exc}", err=True)
        return EXIT_FAILURES
    _echo_report(report)
    return EXIT_FAILURES if report.failed else EXIT_OK


@click.group()
@click.option(
    "--log-level",
    default=settings.log_level,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Log level",
)
def main(log_level: str) -> None:
    """CNC indicators (ICEC, ICF, PEIC) acquisition pipeline."""
    configure_logging(log_level=log_level)


@main.command()
@click.argument("indicator", type=_INDICATOR)
@click.option("--region", "regions", multiple=True, help="Region code (repeatable; default from settings)")
@click.option("--period", "period_spec", default=None, help="MM/YYYY:MM/YYYY, MM/YYYY:> or MM/YYYY:-NM")
@click.option(
    "--mode",
    "processing_method",
    type=click.Choice(["incremental", "full"]),
    default=None,
    help="incremental skips stored periods; full reprocesses them",
)
@click.option("--forced", is_flag=True, help="Mark as an ad-hoc run")
@click.option("--concurrent-regions", is_flag=True, help="Process regions concurrently")
def run(
    indicator: str,
    regions: tuple[str, ...],
    period_spec: str | None,
    processing_method: str | None,
    forced: bool,
    concurrent_regions: bool,
) -> None:
    """Acquire INDICATOR for the configured (or given) regions and periods."""
    from cnc_pipeline.pipelines.acquisition import run as run_acquisition

    log.info("cli_run", indicator=indicator, regions=list(regions), period=period_spec)
    sys.exit(
        _run_to_exit(
            run_acquisition(
                indicator.lower(),
                regions=[r.upper() for r in regions] or None,
                period_spec=period_spec,
                processing_method=processing_method,  # type: ignore[arg-type]
                forced=forced,
                concurrent_regions=concurrent_regions,
            )
        )
    )


@main.command()
@click.argument("indicator", type=_INDICATOR)
@click.option(
    "--tuple",
    "tuples",
    multiple=True,
    required=True,
    help="REGION:MM/YYYY to re-run (repeatable)",
)
def retry(indicator: str, tuples: tuple[str, ...]) -> None:
    """Re-run only the given (region, period) tuples of INDICATOR."""
    from cnc_pipeline.pipelines.acquisition import build_orchestrator, resolve_regions

    parsed = [_parse_tuple(t) for t in tuples]
    ind = Indicator(indicator.lower())
    try:
        resolve_regions(ind, [region for region, _ in parsed])
    except ConfigurationError as exc:
        raise click.BadParameter(str(exc), param_hint="--tuple") from exc

    sys.exit(_run_to_exit(build_orchestrator().run_tuples(ind, parsed, mode="forced")))


@main.command()
@click.argument("indicator", type=_INDICATOR)
@click.option("--region", required=True, help="Region code")
@click.option("--period", required=True, help="MM/YYYY")
def delete(indicator: str, region: str, period: str) -> None:
    """Delete one stored period (and its breakdowns) by natural key."""
    from cnc_pipeline.loaders.duckdb_loader import DuckDBGateway

    try:
        key = NaturalKey.of(Indicator(indicator.lower()), region.upper(), Period.parse(period))
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--period") from exc

    if DuckDBGateway().delete_by_natural_key(key):
        click.echo(f"✓ deleted {key}")
    else:
        click.echo(f"  nothing stored for {key}")


@main.command()
@click.option("--limit", default=20, show_default=True, help="Number of runs to show")
def status(limit: int) -> None:
    """Show the most recent pipeline runs."""
    from cnc_pipeline.loaders.duckdb_loader import DuckDBGateway

    click.echo("Pipeline status:")
    rows = DuckDBGateway().recent_runs(limit)
    if not rows:
        click.echo("  No pipeline runs found.")
        return
    for row in rows:
        status_emoji = {"success": "✓", "failure": "✗", "running": "⟳", "partial_failure": "⚠"}.get(
            row["status"], "?"
        )
        started = str(row.get("started_at") or "")[:19]
        click.echo(
            f"  {status_emoji} {row['indicator']:5s} {row['execution_mode']:9s} "
            f"{row['status']:16s} "
            f"{row.get('records_loaded') if row.get('records_loaded') is not None else '?'} loaded  "
            f"{started}"
        )


if __name__ == "__main__":
    main()
