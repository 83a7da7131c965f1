"""
models/indicators.py — Pydantic models for the indicator_periods and
indicator_breakdowns tables.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from cnc_shared.constants import Indicator, Method
from cnc_shared.time_utils import Period


class NaturalKey(BaseModel):
    """(indicator, region, month, year) — the identity of a stored period."""

    model_config = ConfigDict(frozen=True)

    indicator: Indicator
    region: str
    month: int
    year: int

    @classmethod
    def of(cls, indicator: Indicator, region: str, period: Period) -> NaturalKey:
        return cls(indicator=indicator, region=region, month=period.month, year=period.year)

    @property
    def period(self) -> Period:
        return Period(self.year, self.month)

    def __str__(self) -> str:
        return f"{self.indicator.value}/{self.region}/{self.month:02d}/{self.year}"


class IndicatorPeriodRecord(BaseModel):
    """
    Matches the indicator_periods table row.

    Natural key is (indicator, region, month, year). `measures` holds the
    indicator-specific named values (general index first); a measure the
    source did not provide is absent or None.
    """

    indicator: Indicator
    region: str
    month: int
    year: int
    measures: dict[str, float | None] = Field(default_factory=dict)
    method: Method | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> NaturalKey:
        return NaturalKey(
            indicator=self.indicator, region=self.region, month=self.month, year=self.year
        )

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> IndicatorPeriodRecord:
        data = dict(row)
        if isinstance(data.get("measures"), str):
            data["measures"] = json.loads(data["measures"])
        return cls(**data)


class BreakdownRecord(BaseModel):
    """
    Matches the indicator_breakdowns table row.

    One line of a source table: the section it belongs to (`category`), the
    row label (`measure`) and its numeric cells keyed by canonical column
    name. Owned by exactly one IndicatorPeriodRecord.
    """

    category: str
    measure: str
    values: dict[str, float | None] = Field(default_factory=dict)
    is_index: bool = False
    sub_index: str | None = None    # ICEC: ICAEC / IEEC / IIEC / ICEC
    position: int = 0

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> BreakdownRecord:
        data = {k: v for k, v in row.items() if k not in ("id", "period_id", "cell_values")}
        cells = row.get("cell_values")
        data["values"] = json.loads(cells) if isinstance(cells, str) else (cells or {})
        return cls(**data)

    def to_insert_dict(self, period_id: str) -> dict[str, Any]:
        return {
            "period_id": period_id,
            "position": self.position,
            "category": self.category,
            "measure": self.measure,
            "cell_values": json.dumps(self.values),
            "is_index": self.is_index,
            "sub_index": self.sub_index,
        }
