"""
sources/base.py — Abstract base class for the two acquisition adapters.

Each concrete source must implement:
  extract()     — obtain the raw table for one (indicator, region, period)
                  as a polars DataFrame of strings, uninterpreted
  source_url()  — where that table comes from (for logs and reports)

The fetch() method wraps extract() with timing/logging and packs the frame
into a RawPayload. The orchestrator calls fetch() and depends on nothing
else: both adapters fail with NotAvailable, TransientNetworkError or
ShapeUnrecognized, and both are async context managers owning their
transport for the duration of a batch.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import polars as pl
import structlog

from cnc_pipeline.errors import AcquisitionError, NotAvailable
from cnc_shared.constants import FIRST_PUBLISHED, Indicator, Method
from cnc_shared.time_utils import Period

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RawPayload:
    """Raw rows for one tuple, in the shape the source published them."""

    indicator: Indicator
    region: str
    period: Period
    method: Method
    frame: pl.DataFrame
    source_url: str | None = None

    @property
    def rows(self) -> list[tuple[Any, ...]]:
        return self.frame.rows()


class BaseSource(ABC):
    """Abstract base for the spreadsheet and scrape adapters."""

    # Override in subclass: used for logging
    name: str = "unknown"
    method: Method

    def __init__(self) -> None:
        self._log = log.bind(source_name=self.name)

    # ------------------------------------------------------------------
    # Resource lifetime
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Acquire transport resources. Default: nothing to do."""

    async def close(self) -> None:
        """Release transport resources. Must be safe to call twice."""

    async def __aenter__(self) -> BaseSource:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Abstract interface
    # ------------------------------------------------------------------

    @abstractmethod
    async def extract(
        self, indicator: Indicator, region: str, period: Period
    ) -> pl.DataFrame:
        """
        Fetch the raw table for one tuple.

        Returns:
            polars DataFrame with String columns, one row per source row.

        Raises:
            NotAvailable:           the period has no published data.
            TransientNetworkError:  timeout, connection or server failure.
            ShapeUnrecognized:      the response is not a readable table.
        """
        ...

    @abstractmethod
    def source_url(self, indicator: Indicator, region: str, period: Period) -> str:
        ...

    # ------------------------------------------------------------------
    # Orchestration: the acquisition pipeline calls this
    # ------------------------------------------------------------------

    async def fetch(
        self, indicator: Indicator, region: str, period: Period
    ) -> RawPayload:
        """
        extract() with timing and structured logging.

        Raises:
            Any AcquisitionError from extract(), after logging it.
        """
        fetch_log = self._log.bind(
            indicator=indicator.value, region=region, period=period.label
        )
        fetch_log.debug("fetch_start")

        t0 = time.monotonic()
        try:
            frame = await self.extract(indicator, region, period)
        except NotAvailable as exc:
            fetch_log.info(
                "fetch_not_available",
                reason=str(exc),
                duration_ms=int((time.monotonic() - t0) * 1000),
            )
            raise
        except AcquisitionError as exc:
            fetch_log.warning(
                "fetch_failed",
                error_kind=type(exc).__name__,
                error=str(exc),
                duration_ms=int((time.monotonic() - t0) * 1000),
            )
            raise

        fetch_log.info(
            "fetch_complete",
            raw_rows=len(frame),
            raw_cols=frame.width,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return RawPayload(
            indicator=indicator,
            region=region,
            period=period,
            method=self.method,
            frame=frame,
            source_url=self.source_url(indicator, region, period),
        )

    # ------------------------------------------------------------------
    # Shared helpers available to all subclasses
    # ------------------------------------------------------------------

    @staticmethod
    def _check_published(indicator: Indicator, period: Period) -> None:
        first = Period(*FIRST_PUBLISHED[indicator])
        if period < first:
            raise NotAvailable(
                f"{indicator.value.upper()} was first published in {first.label}"
            )

    @staticmethod
    def rows_to_frame(rows: Sequence[Sequence[str | None]]) -> pl.DataFrame:
        """Build a String-typed frame (column_1..column_n) from ragged rows."""
        width = max((len(r) for r in rows), default=0)
        if width == 0:
            return pl.DataFrame()
        padded = [list(r) + [None] * (width - len(r)) for r in rows]
        return pl.DataFrame(
            padded,
            schema=[(f"column_{i + 1}", pl.String) for i in range(width)],
            orient="row",
        )
