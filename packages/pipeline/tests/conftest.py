"""
tests/conftest.py — Shared pytest fixtures for the pipeline test suite.

Provides:
  gateway           — DuckDBGateway on a fresh in-memory database
  lock_dir          — per-test directory for the indicator locks
  FakeSource        — scripted BaseSource (no network, no browser)
  icec_frame, ...   — raw frames shaped like the published workbooks
  icec_site_frame   — raw frame shaped like the survey-site result table
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

import duckdb
import polars as pl
import pytest

from cnc_pipeline.loaders.duckdb_loader import DuckDBGateway
from cnc_pipeline.sources.base import BaseSource, RawPayload
from cnc_shared.constants import Indicator, Method
from cnc_shared.time_utils import Period


def frame(rows: Sequence[Sequence[str | None]]) -> pl.DataFrame:
    """String frame in the shape the adapters return."""
    return BaseSource.rows_to_frame(rows)


def payload(
    rows: Sequence[Sequence[str | None]] | pl.DataFrame,
    *,
    indicator: Indicator = Indicator.ICEC,
    region: str = "BR",
    period: Period = Period(2012, 3),
    method: Method = Method.SPREADSHEET,
) -> RawPayload:
    return RawPayload(
        indicator=indicator,
        region=region,
        period=period,
        method=method,
        frame=rows if isinstance(rows, pl.DataFrame) else frame(rows),
    )


# ---------------------------------------------------------------------------
# Scripted source
# ---------------------------------------------------------------------------


class FakeSource(BaseSource):
    """
    BaseSource whose extract() replays a script.

    *script* maps (region, period) to a DataFrame, an exception instance or
    a callable returning either; *default* answers every other tuple.
    """

    def __init__(
        self,
        method: Method,
        *,
        script: Mapping[tuple[str, Period], Any] | None = None,
        default: Any = None,
        name: str | None = None,
    ) -> None:
        self.name = name or f"fake_{method.value}"
        self.method = method
        super().__init__()
        self.script = dict(script or {})
        self.default = default
        self.calls: list[tuple[Indicator, str, Period]] = []
        self.opened = 0
        self.closed = 0

    async def open(self) -> None:
        self.opened += 1

    async def close(self) -> None:
        self.closed += 1

    def source_url(self, indicator: Indicator, region: str, period: Period) -> str:
        return f"fake://{self.method.value}/{indicator.value}/{region}/{period.label}"

    async def extract(self, indicator: Indicator, region: str, period: Period) -> pl.DataFrame:
        self.calls.append((indicator, region, period))
        result = self.script.get((region, period), self.default)
        if callable(result):
            result = result()
        if hasattr(result, "__await__"):
            result = await result
        if isinstance(result, BaseException):
            raise result
        if result is None:
            raise AssertionError(f"{self.name}: no scripted answer for {region} {period}")
        return result


@pytest.fixture
def fake_source() -> Callable[..., FakeSource]:
    return FakeSource


# ---------------------------------------------------------------------------
# Persistence / locking
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway() -> DuckDBGateway:
    conn = duckdb.connect(":memory:")
    yield DuckDBGateway(conn)
    conn.close()


@pytest.fixture
def lock_dir(tmp_path: Path) -> Path:
    return tmp_path / "locks"


# ---------------------------------------------------------------------------
# Sample raw frames
# ---------------------------------------------------------------------------

ICEC_HEADER = [
    "total - em %",
    "Empresas com até 50 empregados",
    "Empresas com mais de 50 empregados",
    None,
    None,
    None,
]

ICEC_ROWS: list[list[str | None]] = [
    ["Confiança do Empresário do Comércio", None, None, None, None, None, None, None],
    ["Condições Atuais do Empresário do Comércio", *ICEC_HEADER, "ICAEC"],
    ["Melhoraram muito", "10,2", "9,8", "15,1", "11,0", "9,5", "10,7", None],
    ["Pioraram muito", "8,1", "8,4", "5,0", "7,9", "8,8", "7,2", None],
    ["Índice (em Pontos)", "95,4", "95,1", "101,3", "96,0", "94,2", "97,3", None],
    ["Intenções de Investimento do Empresário", *ICEC_HEADER, "IIEC"],
    ["Índice (em Pontos)", "104,1", "104,0", "106,9", "103,2", "104,9", "104,5", None],
]

ICF_HEADER = ["total - %", "até 10sm - %", "mais de 10sm - %"]

ICF_ROWS: list[list[str | None]] = [
    ["Emprego Atual", *ICF_HEADER],
    ["Mais Seguro", "35,1", "34,0", "40,2"],
    ["Índice", "120,5", "118,2", "130,4"],
    ["ICF (em pontos)", *ICF_HEADER],
    ["Índice (Em Pontos)", "100,4", "98,3", "111,5"],
    ["Índice (Variação Mensal)", "1,2", "1,0", "2,1"],
]

PEIC_ROWS: list[list[str | None]] = [
    ["PEIC (Percentual)", "total - %", "até 10sm - %", "mais de 10sm - %"],
    ["Famílias endividadas", "77,1", "78,0", "73,2"],
    ["Famílias com contas em atraso", "28,5", "31,0", "18,1"],
    ["Não terão condições de pagar", "12,2", "13,9", "5,3"],
    ["PEIC (Síntese)", "Numero Absoluto", None, None],
    ["Famílias endividadas", "13.155.000", None, None],
    ["Famílias com contas em atraso", "4.860.000", None, None],
    ["Não terão condições de pagar", "2.080.000", None, None],
]

ICEC_SITE_ROWS: list[list[str | None]] = [
    ["Período", "ICEC", "Até 50 empregados", "Mais de 50 empregados",
     "Semiduráveis", "Não duráveis", "Duráveis"],
    ["FEV 12", "100,2", "99,9", "103,0", "101,1", "99,5", "100,0"],
    ["MAR 12", "101,5", "101,2", "104,4", "102,0", "100,8", "101,9"],
]


@pytest.fixture
def icec_frame() -> pl.DataFrame:
    return frame(ICEC_ROWS)


@pytest.fixture
def icf_frame() -> pl.DataFrame:
    return frame(ICF_ROWS)


@pytest.fixture
def peic_frame() -> pl.DataFrame:
    return frame(PEIC_ROWS)


@pytest.fixture
def icec_site_frame() -> pl.DataFrame:
    return frame(ICEC_SITE_ROWS)


@pytest.fixture
def icec_frame_without_total() -> pl.DataFrame:
    """A workbook whose headers lost the general-index column."""
    return frame([[row[0], None, *row[2:]] for row in ICEC_ROWS])


@pytest.fixture
def make_frame() -> Callable[..., pl.DataFrame]:
    return frame


@pytest.fixture
def make_payload() -> Callable[..., RawPayload]:
    return payload
