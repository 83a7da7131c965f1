"""
transforms/validate.py — Completeness checks before anything is persisted.

A record is only written when every mandatory field is present: region,
month, year and the indicator's full set of header measures (the general
index among them). Breakdown rows must each carry a category, a measure
label and at least one numeric value.

Usage:
    result = validate(header, breakdowns)
    if not result.ok:
        print(result.missing_fields)   # ("measures.icec", "breakdowns[3].values")
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from cnc_pipeline.errors import ValidationError
from cnc_shared.constants import GENERAL_INDEX, HEADER_MEASURES, REGIONS
from cnc_shared.models.indicators import BreakdownRecord, IndicatorPeriodRecord


@dataclass(frozen=True)
class ValidationResult:
    missing_fields: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.missing_fields

    def raise_for_invalid(self) -> None:
        if self.missing_fields:
            raise ValidationError(self.missing_fields)


OK = ValidationResult()


def mandatory_measures(header: IndicatorPeriodRecord) -> tuple[str, ...]:
    """General index first, then the rest of the indicator's measures."""
    general = GENERAL_INDEX[header.indicator]
    return (general, *(m for m in HEADER_MEASURES[header.indicator] if m != general))


def _is_number(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def validate(
    header: IndicatorPeriodRecord,
    breakdowns: Sequence[BreakdownRecord],
) -> ValidationResult:
    missing: list[str] = []

    if header.region not in REGIONS:
        missing.append("region")
    if not 1 <= header.month <= 12:
        missing.append("month")
    if header.year <= 0:
        missing.append("year")

    for measure in mandatory_measures(header):
        if not _is_number(header.measures.get(measure)):
            missing.append(f"measures.{measure}")

    for i, row in enumerate(breakdowns):
        if not row.category.strip():
            missing.append(f"breakdowns[{i}].category")
        if not row.measure.strip():
            missing.append(f"breakdowns[{i}].measure")
        if not any(_is_number(v) for v in row.values.values()):
            missing.append(f"breakdowns[{i}].values")

    return ValidationResult(tuple(missing)) if missing else OK
