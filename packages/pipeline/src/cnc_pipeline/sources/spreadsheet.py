"""
sources/spreadsheet.py — Primary adapter: CNC's monthly workbook downloads.

CNC uploads one .xls per (indicator, month, region) to a predictable path:

    {base}/{month}_{year}/{ICEC|ICF|PEIC}/{region}.xls     (month not padded)

The workbook is read in memory with polars' calamine engine, every cell as
a string and no header row, so the layout reaches the normalizer untouched.

Status mapping:
  404                         → NotAvailable (nothing published for that month)
  timeout / connection error  → TransientNetworkError (after bounded retries)
  other non-2xx               → TransientNetworkError
  unreadable / empty workbook → ShapeUnrecognized
"""

from __future__ import annotations

import io

import httpx
import polars as pl

from cnc_pipeline.errors import NotAvailable, ShapeUnrecognized, TransientNetworkError
from cnc_pipeline.sources.base import BaseSource
from cnc_pipeline.utils.retry import with_retry
from cnc_shared.config import settings
from cnc_shared.constants import Indicator, Method
from cnc_shared.time_utils import Period

_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "application/vnd.ms-excel,application/octet-stream,*/*",
}


def read_workbook(content: bytes) -> pl.DataFrame:
    """
    Read the first sheet of a workbook into a String-typed frame.

    Raises:
        ShapeUnrecognized: if the bytes are empty, not a workbook, or the
                           sheet has no rows.
    """
    if not content:
        raise ShapeUnrecognized("Empty workbook download")
    try:
        frame = pl.read_excel(
            io.BytesIO(content),
            engine="calamine",
            has_header=False,
            infer_schema_length=0,
        )
    except Exception as exc:  # calamine/fastexcel raise their own error types
        raise ShapeUnrecognized(f"Unreadable workbook: {exc}") from exc

    if frame.is_empty():
        raise ShapeUnrecognized("Workbook has no rows")
    return frame.select(pl.all().cast(pl.String))


class SpreadsheetSource(BaseSource):
    """Downloads and reads the published workbook for a tuple."""

    name = "cnc_spreadsheet"
    method = Method.SPREADSHEET

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        self._base_url = (base_url or settings.spreadsheet_base_url).rstrip("/")
        self._timeout = timeout or settings.http_timeout
        self._client = client
        self._owns_client = client is None
        self._get = with_retry(
            max_attempts=max_attempts or settings.http_max_attempts,
            retry_on=httpx.TransportError,
        )(self._get_once)

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers=_HEADERS,
                follow_redirects=True,
            )
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def source_url(self, indicator: Indicator, region: str, period: Period) -> str:
        return f"{self._base_url}/{period.month}_{period.year}/{indicator.folder}/{region}.xls"

    async def _get_once(self, url: str) -> httpx.Response:
        assert self._client is not None
        return await self._client.get(url)

    async def extract(
        self, indicator: Indicator, region: str, period: Period
    ) -> pl.DataFrame:
        self._check_published(indicator, period)
        if self._client is None:
            await self.open()

        url = self.source_url(indicator, region, period)
        try:
            response = await self._get(url)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"Timed out downloading {url}") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"Could not download {url}: {exc}") from exc

        if response.status_code == 404:
            raise NotAvailable(f"No workbook published at {url}")
        if response.status_code != 200:
            raise TransientNetworkError(f"HTTP {response.status_code} from {url}")

        self._log.debug(
            "spreadsheet_downloaded",
            url=url,
            bytes=len(response.content),
        )
        return read_workbook(response.content)
