"""
time_utils.py — Monthly periods, period ranges and operator period specs.

CNC publishes one table per (indicator, region, month). A run walks an
ascending, inclusive range of months bounded by the indicator's end policy:
ICEC and ICF through the current month, PEIC through the previous one.

Period specs (env PERIOD_<INDICATOR>) accept:
- "01/2010:>"        — from January 2010 through the end-policy bound
- "01/2010:-3M"      — from January 2010 through three months ago
- "01/2010:08/2025"  — explicit inclusive range
- "03/2012"          — a single month

Usage:
    from cnc_shared.time_utils import Period, generate, parse_period_config

    periods = generate(2012, 3, EndPolicy.THROUGH_CURRENT_MONTH)
    for period in periods:            # restartable: iterate as often as needed
        print(period.label)           # "03/2012"

    periods = parse_period_config("01/2010:-1M", EndPolicy.THROUGH_PREVIOUS_MONTH)
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import date

from dateutil.relativedelta import relativedelta

from cnc_shared.constants import MONTH_ABBREVIATIONS, EndPolicy

_MIN_YEAR = 2000
_MAX_YEAR = 2100

_PERIOD_RE = re.compile(r"^\s*(\d{1,2})\s*/\s*(\d{4})\s*$")
_MONTHS_BACK_RE = re.compile(r"^-(\d+)M$", re.IGNORECASE)


@dataclass(frozen=True, order=True)
class Period:
    """A calendar month. Ordered chronologically (year first)."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Month must be between 1 and 12, got {self.month}")

    @classmethod
    def from_date(cls, d: date) -> Period:
        return cls(d.year, d.month)

    @classmethod
    def parse(cls, text: str) -> Period:
        """
        Parse "MM/YYYY" (or "M/YYYY") into a Period.

        Raises:
            ValueError: on malformed text, month outside 1–12 or year
                        outside 2000–2100.
        """
        m = _PERIOD_RE.match(text)
        if not m:
            raise ValueError(f"Invalid period {text!r}; expected MM/YYYY")
        month, year = int(m.group(1)), int(m.group(2))
        if not 1 <= month <= 12:
            raise ValueError(f"Invalid month in {text!r}; must be between 01 and 12")
        if not _MIN_YEAR <= year <= _MAX_YEAR:
            raise ValueError(
                f"Invalid year in {text!r}; must be between {_MIN_YEAR} and {_MAX_YEAR}"
            )
        return cls(year, month)

    def to_date(self) -> date:
        return date(self.year, self.month, 1)

    def shift(self, months: int) -> Period:
        return Period.from_date(self.to_date() + relativedelta(months=months))

    def next(self) -> Period:
        return self.shift(1)

    def previous(self) -> Period:
        return self.shift(-1)

    @property
    def label(self) -> str:
        """Zero-padded "MM/YYYY"."""
        return f"{self.month:02d}/{self.year}"

    @property
    def scrape_label(self) -> str:
        """Period label used by the survey site's result table, e.g. "JUL 25"."""
        return f"{MONTH_ABBREVIATIONS[self.month - 1]} {self.year % 100:02d}"

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class PeriodRange:
    """
    Inclusive, ascending range of months.

    Iteration is lazy and restartable; a range whose start lies after its
    end is empty.
    """

    start: Period
    end: Period

    def __iter__(self) -> Iterator[Period]:
        current = self.start
        while current <= self.end:
            yield current
            current = current.next()

    def __len__(self) -> int:
        span = (self.end.year - self.start.year) * 12 + (self.end.month - self.start.month)
        return max(0, span + 1)

    def __contains__(self, item: object) -> bool:
        return isinstance(item, Period) and self.start <= item <= self.end

    @property
    def label(self) -> str:
        return f"{self.start.label}–{self.end.label}"


def end_bound(end_policy: EndPolicy, today: date | None = None) -> Period:
    """Return the last month a run may ask for under *end_policy*."""
    current = Period.from_date(today or date.today())
    if end_policy is EndPolicy.THROUGH_PREVIOUS_MONTH:
        return current.previous()
    return current


def generate(
    start_year: int,
    start_month: int,
    end_policy: EndPolicy,
    *,
    today: date | None = None,
) -> PeriodRange:
    """
    Build the ascending range from (start_year, start_month) to the policy bound.

    The bound is fixed at call time from *today* (default: the current date).
    """
    return PeriodRange(Period(start_year, start_month), end_bound(end_policy, today))


def parse_period_config(
    text: str,
    end_policy: EndPolicy,
    *,
    today: date | None = None,
) -> PeriodRange:
    """
    Parse an operator period spec into a PeriodRange.

    Open-ended and relative ends never go past the end-policy bound.

    Raises:
        ValueError: if the spec is malformed or its start lies after its end.
    """
    bound = end_bound(end_policy, today)
    spec = text.strip()

    if ":" not in spec:
        single = Period.parse(spec)
        return PeriodRange(single, single)

    start_text, end_text = (part.strip() for part in spec.split(":", 1))
    start = Period.parse(start_text)

    if end_text in ("", ">"):
        periods = generate(start.year, start.month, end_policy, today=today)
        if not periods:
            raise ValueError(f"Period spec {text!r} starts after {periods.end}")
        return periods
    if m := _MONTHS_BACK_RE.match(end_text):
        end = min(Period.from_date(today or date.today()).shift(-int(m.group(1))), bound)
    else:
        end = Period.parse(end_text)

    if start > end:
        raise ValueError(f"Period spec {text!r} starts after it ends ({start} > {end})")
    return PeriodRange(start, end)


def missing_periods(periods: Iterable[Period], stored: Iterable[Period]) -> list[Period]:
    """Return the periods of *periods* not present in *stored*, in input order."""
    existing = set(stored)
    return [p for p in periods if p not in existing]
