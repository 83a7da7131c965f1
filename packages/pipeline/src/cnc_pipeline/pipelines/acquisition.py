"""
pipelines/acquisition.py — ICEC / ICF / PEIC acquisition pipeline.

Orchestrates, per (indicator, region, period) tuple:
  1. Spreadsheet source (primary) → normalize → validate
  2. On a recoverable failure: survey-site scrape (fallback) → normalize → validate
  3. Upsert header + replace breakdowns in one DuckDB transaction
  4. Record the outcome in the BatchReport

Tuple state machine:
  Pending → TryingPrimary → TryingFallback → Succeeded | Failed

  NotAvailable from the primary is terminal (reported as skipped, nothing
  persisted or deleted). Transient, shape, normalization, validation and
  configuration failures fall back to the scrape source; any fallback
  failure is terminal. A PersistenceError aborts the whole batch.

Batches hold the indicator's lock for their whole duration, process the
periods of each region in chronological order and check for cancellation
between tuples only.

Usage:
    from cnc_pipeline.pipelines.acquisition import run
    report = await run("icec", regions=["BR", "ES"], period_spec="03/2012:12/2012")
    print(report.counts, report.failed_tuples)
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any

import structlog

from cnc_pipeline.errors import (
    AcquisitionError,
    ConfigurationError,
    NormalizationError,
    NotAvailable,
    PersistenceError,
    ShapeUnrecognized,
    TransientNetworkError,
    ValidationError,
)
from cnc_pipeline.loaders.duckdb_loader import DuckDBGateway
from cnc_pipeline.sources.base import BaseSource
from cnc_pipeline.sources.scrape import ScrapeSource
from cnc_pipeline.sources.spreadsheet import SpreadsheetSource
from cnc_pipeline.transforms.normalize import RowNormalizer
from cnc_pipeline.transforms.validate import validate
from cnc_pipeline.utils.locking import indicator_lock
from cnc_pipeline.utils.logging import configure_logging, get_logger
from cnc_shared.config import parse_regions, settings
from cnc_shared.constants import (
    END_POLICIES,
    ICF_CHANGE_SOURCES,
    ExecutionMode,
    Indicator,
    Method,
    OutcomeStatus,
    ProcessingMethod,
)
from cnc_shared.models.indicators import BreakdownRecord, IndicatorPeriodRecord, NaturalKey
from cnc_shared.time_utils import Period, missing_periods, parse_period_config

log = get_logger(__name__, pipeline="acquisition")

PIPELINE_NAME = "cnc_acquisition"

# Errors that end one attempt but never the batch
_TUPLE_ERRORS = (AcquisitionError, NormalizationError, ValidationError, ConfigurationError)
_SHAPE_ERRORS = (ShapeUnrecognized, NormalizationError)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AcquisitionOutcome:
    """Result of processing one (indicator, region, period) tuple."""

    indicator: Indicator
    region: str
    period: Period
    status: OutcomeStatus
    method: Method | None = None        # method that produced the record, or last tried
    error: str | None = None
    error_kind: str | None = None
    primary_error: str | None = None
    schema_drift: bool = False
    record_id: str | None = None
    breakdowns: int = 0

    @property
    def key(self) -> NaturalKey:
        return NaturalKey.of(self.indicator, self.region, self.period)

    @property
    def label(self) -> str:
        return f"{self.region}:{self.period.label}"


@dataclass
class BatchReport:
    """Aggregated outcomes of one batch run."""

    indicator: Indicator
    mode: ExecutionMode = "scheduled"
    regions: tuple[str, ...] = ()
    period_label: str = ""
    outcomes: list[AcquisitionOutcome] = field(default_factory=list)
    cancelled: bool = False
    duration_ms: int = 0
    run_id: str | None = None

    def record(self, outcome: AcquisitionOutcome) -> None:
        self.outcomes.append(outcome)

    def _with_status(self, status: OutcomeStatus) -> list[AcquisitionOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> list[AcquisitionOutcome]:
        return self._with_status("success")

    @property
    def skipped(self) -> list[AcquisitionOutcome]:
        return self._with_status("skipped")

    @property
    def failed(self) -> list[AcquisitionOutcome]:
        return self._with_status("failed")

    @property
    def failed_tuples(self) -> list[str]:
        """``REGION:MM/YYYY`` labels, ready to be passed back to a retry."""
        return [o.label for o in self.failed]

    @property
    def schema_drift(self) -> list[AcquisitionOutcome]:
        return [o for o in self.outcomes if o.schema_drift]

    @property
    def counts(self) -> dict[str, int]:
        return {
            "success": len(self.succeeded),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }

    @property
    def by_method(self) -> dict[str, int]:
        return dict(Counter(o.method.value for o in self.succeeded if o.method is not None))

    @property
    def status(self) -> str:
        if not self.failed:
            return "success"
        if self.succeeded or self.skipped:
            return "partial_failure"
        return "failure"

    def summary(self) -> dict[str, Any]:
        return {
            "indicator": self.indicator.value,
            "mode": self.mode,
            "regions": list(self.regions),
            "periods": self.period_label,
            "status": self.status,
            **self.counts,
            "by_method": self.by_method,
            "failed_tuples": self.failed_tuples,
            "schema_drift": [o.label for o in self.schema_drift],
            "cancelled": self.cancelled,
            "duration_ms": self.duration_ms,
        }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class AcquisitionOrchestrator:
    """
    Drives tuples through primary → fallback → persistence.

    Depends only on the BaseSource capability; which adapter is primary is
    decided by the caller.
    """

    def __init__(
        self,
        primary: BaseSource,
        fallback: BaseSource,
        gateway: DuckDBGateway,
        *,
        normalizer: RowNormalizer | None = None,
        fetch_timeout: float | None = None,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._gateway = gateway
        self._normalizer = normalizer or RowNormalizer()
        self._fetch_timeout = fetch_timeout or settings.fetch_timeout

    # ------------------------------------------------------------------
    # One tuple
    # ------------------------------------------------------------------

    async def process_tuple(
        self, indicator: Indicator, region: str, period: Period
    ) -> AcquisitionOutcome:
        """
        Run the state machine for one tuple and persist on success.

        Raises:
            PersistenceError: the store failed; fatal for the batch.
        """
        tuple_log = log.bind(indicator=indicator.value, region=region, period=period.label)
        tuple_log.debug("tuple_start")

        try:
            header, breakdowns = await self._attempt(self._primary, indicator, region, period)
        except NotAvailable as exc:
            tuple_log.info("tuple_skipped", reason=str(exc))
            return AcquisitionOutcome(
                indicator, region, period, "skipped",
                method=self._primary.method, error=str(exc), error_kind=type(exc).__name__,
            )
        except _TUPLE_ERRORS as primary_exc:
            tuple_log.warning(
                "primary_failed",
                source=self._primary.name,
                error_kind=type(primary_exc).__name__,
                error=str(primary_exc),
            )
            try:
                header, breakdowns = await self._attempt(
                    self._fallback, indicator, region, period
                )
            except _TUPLE_ERRORS as fallback_exc:
                drift = isinstance(primary_exc, _SHAPE_ERRORS) and isinstance(
                    fallback_exc, _SHAPE_ERRORS
                )
                tuple_log.warning(
                    "fallback_failed",
                    source=self._fallback.name,
                    error_kind=type(fallback_exc).__name__,
                    error=str(fallback_exc),
                )
                tuple_log.error("tuple_failed", schema_drift=drift)
                return AcquisitionOutcome(
                    indicator, region, period, "failed",
                    method=self._fallback.method,
                    error=str(fallback_exc),
                    error_kind=type(fallback_exc).__name__,
                    primary_error=f"{type(primary_exc).__name__}: {primary_exc}",
                    schema_drift=drift,
                )

        record_id = self._gateway.save_period(header, breakdowns)
        tuple_log.info(
            "tuple_succeeded",
            method=header.method.value if header.method else None,
            record_id=record_id,
            breakdowns=len(breakdowns),
        )
        return AcquisitionOutcome(
            indicator, region, period, "success",
            method=header.method, record_id=record_id, breakdowns=len(breakdowns),
        )

    async def _attempt(
        self,
        source: BaseSource,
        indicator: Indicator,
        region: str,
        period: Period,
    ) -> tuple[IndicatorPeriodRecord, list[BreakdownRecord]]:
        """Fetch, normalize and validate with one source. Nothing is written."""
        try:
            payload = await asyncio.wait_for(
                source.fetch(indicator, region, period), timeout=self._fetch_timeout
            )
        except asyncio.TimeoutError as exc:
            raise TransientNetworkError(
                f"{source.name} did not answer within {self._fetch_timeout:g}s"
            ) from exc

        header, breakdowns = self._normalizer.normalize(payload)
        if indicator is Indicator.ICF:
            header = self._derive_icf_changes(header)
        validate(header, breakdowns).raise_for_invalid()
        return header, breakdowns

    def _derive_icf_changes(self, header: IndicatorPeriodRecord) -> IndicatorPeriodRecord:
        """
        Fill missing ICF monthly variations from the previous stored month.

        variation = (points / previous points - 1) * 100, one decimal. Left
        missing when the previous month is not stored.
        """
        missing = [
            change
            for change, points in ICF_CHANGE_SOURCES.items()
            if header.measures.get(change) is None and header.measures.get(points) is not None
        ]
        if not missing:
            return header

        previous = self._gateway.get_period(
            NaturalKey.of(header.indicator, header.region, header.key.period.previous())
        )
        if previous is None:
            return header

        measures = dict(header.measures)
        for change in missing:
            before = previous.measures.get(ICF_CHANGE_SOURCES[change])
            if before:
                current = measures[ICF_CHANGE_SOURCES[change]]
                measures[change] = round((current / before - 1) * 100, 1)

        log.debug(
            "icf_changes_derived",
            region=header.region,
            period=header.key.period.label,
            derived=[c for c in missing if measures.get(c) is not None],
        )
        return header.model_copy(update={"measures": measures})

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def run_batch(
        self,
        indicator: Indicator,
        regions: Sequence[str],
        periods: Iterable[Period],
        *,
        mode: ExecutionMode = "scheduled",
        incremental: bool = False,
        concurrent_regions: bool = False,
        cancel_event: asyncio.Event | None = None,
        lock_dir: str | Path | None = None,
    ) -> BatchReport:
        """
        Process every (region × period) tuple for one indicator.

        Args:
            regions:             Region codes; each is processed independently.
            periods:             Periods to process (re-iterated per region).
            mode:                "scheduled" or "forced" (ad-hoc) run.
            incremental:         Skip periods already stored for the region.
            concurrent_regions:  Process regions concurrently instead of in order.
            cancel_event:        Set to stop the batch between tuples.

        Raises:
            BatchAlreadyRunning: the indicator's lock is held elsewhere.
            PersistenceError:    the store failed; the run is recorded as failed.
        """
        period_list = sorted(set(periods))
        label = (
            f"{period_list[0].label}:{period_list[-1].label}" if period_list else ""
        )
        with indicator_lock(indicator, lock_dir=lock_dir):
            plan = {
                region: (
                    self._pending(indicator, region, period_list)
                    if incremental
                    else period_list
                )
                for region in regions
            }
            return await self._execute(
                indicator,
                plan,
                mode=mode,
                period_label=label,
                concurrent_regions=concurrent_regions,
                cancel_event=cancel_event,
            )

    async def run_tuples(
        self,
        indicator: Indicator,
        tuples: Iterable[tuple[str, Period]],
        *,
        mode: ExecutionMode = "forced",
        cancel_event: asyncio.Event | None = None,
        lock_dir: str | Path | None = None,
    ) -> BatchReport:
        """Targeted re-run of specific (region, period) tuples, e.g. a report's failures."""
        grouped: dict[str, set[Period]] = defaultdict(set)
        for region, period in tuples:
            grouped[region].add(period)
        plan = {region: sorted(periods) for region, periods in grouped.items()}

        with indicator_lock(indicator, lock_dir=lock_dir):
            return await self._execute(
                indicator,
                plan,
                mode=mode,
                period_label=", ".join(f"{r}:{p.label}" for r, ps in plan.items() for p in ps),
                concurrent_regions=False,
                cancel_event=cancel_event,
            )

    def _pending(self, indicator: Indicator, region: str, periods: list[Period]) -> list[Period]:
        pending = missing_periods(periods, self._gateway.stored_periods(indicator, region))
        log.info(
            "incremental_plan",
            indicator=indicator.value,
            region=region,
            requested=len(periods),
            pending=len(pending),
        )
        return pending

    async def _execute(
        self,
        indicator: Indicator,
        plan: dict[str, list[Period]],
        *,
        mode: ExecutionMode,
        period_label: str,
        concurrent_regions: bool,
        cancel_event: asyncio.Event | None,
    ) -> BatchReport:
        report = BatchReport(
            indicator=indicator,
            mode=mode,
            regions=tuple(plan),
            period_label=period_label,
        )
        batch_log = log.bind(indicator=indicator.value, mode=mode)
        report.run_id = self._gateway.start_pipeline_run(
            PIPELINE_NAME,
            indicator,
            execution_mode=mode,
            metadata={"regions": list(plan), "periods": period_label},
        )
        batch_log.info(
            "batch_start",
            regions=list(plan),
            periods=period_label,
            tuples=sum(len(p) for p in plan.values()),
        )

        t0 = time.monotonic()
        try:
            async with AsyncExitStack() as stack:
                await stack.enter_async_context(self._primary)
                await stack.enter_async_context(self._fallback)
                if concurrent_regions:
                    await self._gather_regions(indicator, plan, report, cancel_event)
                else:
                    for region, periods in plan.items():
                        await self._run_region(indicator, region, periods, report, cancel_event)
        except PersistenceError as exc:
            report.duration_ms = int((time.monotonic() - t0) * 1000)
            batch_log.error("batch_aborted", error=str(exc), exc_info=True)
            try:
                self._gateway.fail_pipeline_run(report.run_id, str(exc))
            except PersistenceError:
                batch_log.warning("pipeline_run_not_recorded", run_id=report.run_id)
            raise
        except asyncio.CancelledError:
            # interrupted (Ctrl-C): the run row must not stay "running"
            report.duration_ms = int((time.monotonic() - t0) * 1000)
            batch_log.warning(
                "batch_cancelled_abruptly",
                succeeded=len(report.succeeded),
                failed=len(report.failed),
            )
            try:
                self._gateway.fail_pipeline_run(report.run_id, "interrupted")
            except PersistenceError:
                batch_log.warning("pipeline_run_not_recorded", run_id=report.run_id)
            raise

        report.duration_ms = int((time.monotonic() - t0) * 1000)
        self._gateway.finish_pipeline_run(
            report.run_id,
            status=report.status,
            records_loaded=len(report.succeeded),
            records_skipped=len(report.skipped),
            records_failed=len(report.failed),
            metadata=report.summary(),
        )
        if report.schema_drift:
            batch_log.error(
                "schema_drift_detected",
                tuples=[o.label for o in report.schema_drift],
            )
        batch_log.info(
            "batch_complete",
            status=report.status,
            **report.counts,
            by_method=report.by_method,
            cancelled=report.cancelled,
            duration_ms=report.duration_ms,
        )
        return report

    async def _gather_regions(
        self,
        indicator: Indicator,
        plan: dict[str, list[Period]],
        report: BatchReport,
        cancel_event: asyncio.Event | None,
    ) -> None:
        tasks = [
            asyncio.create_task(
                self._run_region(indicator, region, periods, report, cancel_event)
            )
            for region, periods in plan.items()
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            # one region hit a fatal error: stop the others at their next await
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run_region(
        self,
        indicator: Indicator,
        region: str,
        periods: list[Period],
        report: BatchReport,
        cancel_event: asyncio.Event | None,
    ) -> None:
        for period in periods:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                log.warning(
                    "batch_cancelled",
                    indicator=indicator.value,
                    region=region,
                    next_period=period.label,
                )
                return
            report.record(await self.process_tuple(indicator, region, period))


# ---------------------------------------------------------------------------
# Entry points for the scheduler and CLI
# ---------------------------------------------------------------------------


def resolve_regions(indicator: Indicator, regions: Sequence[str] | None = None) -> list[str]:
    """Explicit regions, else the indicator's configured list."""
    try:
        if regions:
            return parse_regions(",".join(regions))
        return settings.regions_for(indicator)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc


def resolve_periods(
    indicator: Indicator,
    period_spec: str | None = None,
    *,
    today: date | None = None,
) -> list[Period]:
    """Expand a period spec (default: the indicator's configured spec)."""
    spec = period_spec if period_spec is not None else settings.period_spec_for(indicator)
    try:
        return list(parse_period_config(spec, END_POLICIES[indicator], today=today))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid period spec {spec!r}: {exc}") from exc


def build_orchestrator(gateway: DuckDBGateway | None = None) -> AcquisitionOrchestrator:
    """Spreadsheet first, survey-site scrape as fallback."""
    return AcquisitionOrchestrator(
        SpreadsheetSource(),
        ScrapeSource(),
        gateway or DuckDBGateway(),
    )


async def run(
    indicator: Indicator | str,
    *,
    regions: Sequence[str] | None = None,
    period_spec: str | None = None,
    processing_method: ProcessingMethod | None = None,
    forced: bool = False,
    concurrent_regions: bool = False,
    cancel_event: asyncio.Event | None = None,
    orchestrator: AcquisitionOrchestrator | None = None,
    today: date | None = None,
) -> BatchReport:
    """
    Run the acquisition pipeline for one indicator end-to-end.

    Args:
        indicator:          "icec", "icf" or "peic".
        regions:            Region codes (None = configured list).
        period_spec:        "MM/YYYY:MM/YYYY", "MM/YYYY:>" or "MM/YYYY:-NM"
                            (None = configured spec).
        processing_method:  "incremental" skips stored periods; "full"
                            reprocesses everything (None = configured).
        forced:             Mark the run as ad-hoc rather than scheduled.

    Returns:
        BatchReport with per-tuple outcomes.

    Raises:
        ConfigurationError:  unknown indicator, region or malformed period spec.
        BatchAlreadyRunning: the indicator is already being processed.
        PersistenceError:    the store failed mid-batch.
    """
    if not structlog.is_configured():
        configure_logging()
    try:
        indicator = Indicator(indicator)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown indicator {indicator!r}") from exc

    region_list = resolve_regions(indicator, regions)
    periods = resolve_periods(indicator, period_spec, today=today)
    method = processing_method or settings.processing_method

    log.info(
        "acquisition_start",
        indicator=indicator.value,
        regions=region_list,
        periods=len(periods),
        processing_method=method,
        forced=forced,
    )
    orchestrator = orchestrator or build_orchestrator()
    return await orchestrator.run_batch(
        indicator,
        region_list,
        periods,
        mode="forced" if forced else "scheduled",
        incremental=method == "incremental",
        concurrent_regions=concurrent_regions,
        cancel_event=cancel_event,
    )
