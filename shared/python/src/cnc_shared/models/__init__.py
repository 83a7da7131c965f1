"""
cnc_shared.models — Pydantic models matching each database table.
"""

from cnc_shared.models.indicators import (
    BreakdownRecord,
    IndicatorPeriodRecord,
    NaturalKey,
)

__all__ = ["BreakdownRecord", "IndicatorPeriodRecord", "NaturalKey"]
