"""
transforms/normalize.py — Raw source rows → canonical period record.

Two payload shapes reach the normalizer:

Spreadsheet (one sheet, many sections):

    | <section title>    | total - em % | Empresas com até 50 … | … | <sub-index title> |
    | Melhoraram muito   | 10,2         | 9,8                   | … |
    | Índice (em Pontos) | 104,1        | 104,0                 | … |
    | <next section>     | total - em % | …

  A row whose cells match known column headers opens a section; labelled
  rows below it become breakdowns. Header measures are then picked from
  well-known rows (e.g. the last "Índice (em Pontos)").

Scrape (one table, one row per period):

    | Período | ICEC  | Até 50 empregados | … |
    | JUL 25  | 104,1 | 104,0             | … |

  The row for the requested period supplies the header measures; scrape
  payloads carry no breakdowns.

A structure we cannot recognize at all raises NormalizationError. A
recognized structure missing a particular measure yields a record without
it, and the validator reports the gap.

Usage:
    from cnc_pipeline.transforms.normalize import RowNormalizer

    header, breakdowns = RowNormalizer().normalize(payload)
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any

import structlog

from cnc_pipeline.errors import NormalizationError
from cnc_pipeline.sources.base import RawPayload
from cnc_pipeline.transforms.aliases import (
    ICF_CHANGE_TITLE,
    ICF_COMPOSITE_ROWS,
    ICF_MOMENTO_ANSWERS,
    ICF_MOMENTO_SECTION,
    LAYOUTS,
    HeaderRule,
    IndicatorLayout,
    normalize_label,
)
from cnc_shared.constants import MONTH_ABBREVIATIONS, Indicator, Method
from cnc_shared.models.indicators import BreakdownRecord, IndicatorPeriodRecord
from cnc_shared.time_utils import Period

log = structlog.get_logger(__name__)

_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_THOUSANDS_DOT_RE = re.compile(r"^[+-]?\d{1,3}(\.\d{3})+$")

# Portuguese abbreviations seen in older site tables, alongside the English ones
_PT_MONTHS = ("JAN", "FEV", "MAR", "ABR", "MAI", "JUN", "JUL", "AGO", "SET", "OUT", "NOV", "DEZ")
_MONTH_LOOKUP: dict[str, int] = {
    **{abbr: i + 1 for i, abbr in enumerate(_PT_MONTHS)},
    **{abbr: i + 1 for i, abbr in enumerate(MONTH_ABBREVIATIONS)},
}
_SCRAPE_PERIOD_RE = re.compile(r"^([A-Za-z]{3})[A-Za-z]*[\s/.\-]*(\d{4}|\d{2})$")

# Placeholders the tables use for "no value"
_BLANKS = frozenset({"", "-", "--", "...", "..", "x", "nan", "none", "null"})


# ---------------------------------------------------------------------------
# Numeric coercion
# ---------------------------------------------------------------------------


def _is_blank(raw: Any) -> bool:
    return raw is None or str(raw).strip().lower() in _BLANKS


def coerce_number(raw: Any, *, grouped_dot: bool = False) -> float:
    """
    Parse a locale-formatted number.

    Accepts decimal comma or dot and strips thousands separators:
    "104,1" → 104.1, "1.234,5" → 1234.5, "1,234.5" → 1234.5,
    "1.234.567" → 1234567. A lone dot followed by exactly three digits
    ("12.345") is a decimal point unless *grouped_dot* is set, as it is for
    Brazilian-formatted site tables.

    Raises:
        ValueError: if *raw* is not a finite number.
    """
    if isinstance(raw, bool):
        raise ValueError(f"Not a number: {raw!r}")
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = str(raw).replace("\xa0", "").replace(" ", "").replace("%", "").strip()
        has_comma, has_dot = "," in text, "." in text
        if has_comma and has_dot:
            if text.rfind(",") > text.rfind("."):
                text = text.replace(".", "").replace(",", ".")
            else:
                text = text.replace(",", "")
        elif has_comma:
            text = text.replace(",", "") if text.count(",") > 1 else text.replace(",", ".")
        elif has_dot and (
            text.count(".") > 1 or (grouped_dot and _THOUSANDS_DOT_RE.match(text))
        ):
            text = text.replace(".", "")

        if not _NUMBER_RE.match(text):
            raise ValueError(f"Not a number: {raw!r}")
        value = float(text)

    if not math.isfinite(value):
        raise ValueError(f"Not a finite number: {raw!r}")
    return value


def coerce_optional(raw: Any, *, grouped_dot: bool = False) -> float | None:
    """coerce_number() for optional cells: blanks and text become None."""
    if _is_blank(raw):
        return None
    try:
        return coerce_number(raw, grouped_dot=grouped_dot)
    except ValueError:
        return None


def parse_scrape_period(raw: Any) -> Period | None:
    """Parse a site period label ("JUL 25", "jul/2025", "AGO-25") or return None."""
    if raw is None:
        return None
    m = _SCRAPE_PERIOD_RE.match(str(raw).strip())
    if not m:
        return None
    month = _MONTH_LOOKUP.get(m.group(1).upper())
    if month is None:
        return None
    year = int(m.group(2))
    return Period(year + 2000 if year < 100 else year, month)


# ---------------------------------------------------------------------------
# Spreadsheet structure
# ---------------------------------------------------------------------------


@dataclass
class _Line:
    label: str
    cells: dict[str, Any]


@dataclass
class _Section:
    label: str
    columns: dict[int, str]
    sub_index: str | None = None
    lines: list[_Line] = field(default_factory=list)


class RowNormalizer:
    """Maps RawPayloads to (IndicatorPeriodRecord, [BreakdownRecord])."""

    def __init__(self, layouts: dict[Indicator, IndicatorLayout] | None = None) -> None:
        self._layouts = layouts or LAYOUTS

    def normalize(
        self, payload: RawPayload
    ) -> tuple[IndicatorPeriodRecord, list[BreakdownRecord]]:
        """
        Normalize one payload.

        Raises:
            NormalizationError: if the layout is unrecognizable or a header
                                measure holds non-numeric content.
        """
        layout = self._layouts[payload.indicator]
        rows = payload.rows
        if not rows:
            raise NormalizationError("payload has no rows")

        if payload.method is Method.SCRAPE:
            measures = self._scrape_measures(layout, rows, payload.period)
            breakdowns: list[BreakdownRecord] = []
        else:
            sections = self._sections(layout, rows)
            if not sections:
                raise NormalizationError(
                    f"no recognizable {payload.indicator.value.upper()} section header"
                )
            if payload.indicator is Indicator.ICF:
                sections = _split_icf_composite(sections)
            measures = self._header_measures(layout, sections)
            breakdowns = self._breakdowns(layout, sections)

        header = IndicatorPeriodRecord(
            indicator=payload.indicator,
            region=payload.region,
            month=payload.period.month,
            year=payload.period.year,
            measures=measures,
            method=payload.method,
        )
        log.debug(
            "payload_normalized",
            indicator=payload.indicator.value,
            region=payload.region,
            period=payload.period.label,
            method=payload.method.value,
            measures=len(measures),
            breakdowns=len(breakdowns),
        )
        return header, breakdowns

    # ------------------------------------------------------------------
    # Spreadsheet
    # ------------------------------------------------------------------

    def _sections(self, layout: IndicatorLayout, rows: list[tuple[Any, ...]]) -> list[_Section]:
        sections: list[_Section] = []
        current: _Section | None = None
        sub_index: str | None = None

        for row in rows:
            columns = self._match_columns(layout, row)
            if columns:
                sub_index = self._sub_index(layout, row) or sub_index
                if not _is_blank(row[0]):
                    label = str(row[0]).strip()
                else:
                    # untitled header: continuation of the previous section
                    label = sections[-1].label if sections else layout.indicator.value.upper()
                current = _Section(label=label, columns=columns, sub_index=sub_index)
                sections.append(current)
                continue

            if current is None:
                continue
            cells = {
                name: row[idx] if idx < len(row) else None
                for idx, name in current.columns.items()
            }
            if _is_blank(row[0]):
                if all(_is_blank(raw) for raw in cells.values()):
                    continue
                # unlabelled data row, only reachable by position
                current.lines.append(_Line(label="", cells=cells))
                continue
            current.lines.append(_Line(label=str(row[0]).strip(), cells=cells))
        return sections

    @staticmethod
    def _match_columns(layout: IndicatorLayout, row: tuple[Any, ...]) -> dict[int, str]:
        columns: dict[int, str] = {}
        for idx in range(1, len(row)):
            name = layout.columns.match(row[idx])
            if name and name not in columns.values():
                columns[idx] = name
        if not columns:
            return columns

        # Unlabelled trailing columns (ICEC's three retail segments)
        tail = [name for name in layout.positional_tail if name not in columns.values()]
        idx = max(columns) + 1
        for name in tail:
            if idx >= len(row):
                break
            columns[idx] = name
            idx += 1
        return columns

    @staticmethod
    def _sub_index(layout: IndicatorLayout, row: tuple[Any, ...]) -> str | None:
        if not layout.sub_index_tokens:
            return None
        for cell in row[1:]:
            words = normalize_label(cell).split()
            for token in layout.sub_index_tokens:
                if token.lower() in words:
                    return token
        return None

    def _header_measures(
        self, layout: IndicatorLayout, sections: list[_Section]
    ) -> dict[str, float]:
        measures: dict[str, float] = {}
        for rule in layout.header_rules:
            raw = _locate(rule, sections)
            if _is_blank(raw):
                continue
            try:
                measures[rule.measure] = coerce_number(raw)
            except ValueError as exc:
                raise NormalizationError(
                    f"{rule.measure}: non-numeric value {raw!r}"
                ) from exc
        return measures

    @staticmethod
    def _breakdowns(layout: IndicatorLayout, sections: list[_Section]) -> list[BreakdownRecord]:
        records: list[BreakdownRecord] = []
        for section in sections:
            for line in section.lines:
                if not line.label:
                    continue
                values = {name: coerce_optional(raw) for name, raw in line.cells.items()}
                if all(v is None for v in values.values()):
                    continue
                records.append(
                    BreakdownRecord(
                        category=section.label,
                        measure=line.label,
                        values=values,
                        is_index=line.label in layout.index_labels,
                        sub_index=section.sub_index,
                        position=len(records),
                    )
                )
        return records

    # ------------------------------------------------------------------
    # Scrape
    # ------------------------------------------------------------------

    def _scrape_measures(
        self,
        layout: IndicatorLayout,
        rows: list[tuple[Any, ...]],
        period: Period,
    ) -> dict[str, float]:
        target = next((row for row in rows if parse_scrape_period(row[0]) == period), None)
        if target is None:
            raise NormalizationError(f"period {period.scrape_label} not found in site table")

        mapping = self._scrape_header(layout, rows)
        if mapping is None:
            # no header row at all: the site's fixed column order
            mapping = {i + 1: measure for i, measure in enumerate(layout.measures)}
        else:
            missing = [m for m in layout.measures if m not in mapping.values()]
            if missing:
                raise NormalizationError(
                    f"site table header has no column for: {', '.join(missing)}"
                )

        measures: dict[str, float] = {}
        for idx, measure in mapping.items():
            raw = target[idx] if idx < len(target) else None
            if _is_blank(raw):
                continue
            try:
                measures[measure] = coerce_number(raw, grouped_dot=True)
            except ValueError as exc:
                raise NormalizationError(f"{measure}: non-numeric value {raw!r}") from exc
        return measures

    @staticmethod
    def _scrape_header(
        layout: IndicatorLayout, rows: list[tuple[Any, ...]]
    ) -> dict[int, str] | None:
        """
        Column map from the header row naming the most measures.

        None when no row above the first period row names any measure.
        """
        best: dict[int, str] | None = None
        for row in rows:
            if parse_scrape_period(row[0]) is not None:
                break
            mapping: dict[int, str] = {}
            for idx in range(1, len(row)):
                measure = layout.scrape_columns.match(row[idx])
                if measure and measure not in mapping.values():
                    mapping[idx] = measure
            if mapping and (best is None or len(mapping) > len(best)):
                best = mapping
        return best


def _locate(rule: HeaderRule, sections: list[_Section]) -> Any:
    candidates = [
        s for s in sections if rule.section is None or s.label in rule.section
    ]
    found: Any = None
    if rule.rows is not None:
        for section in candidates:
            for line in section.lines:
                if rule.column in line.cells and line.label in rule.rows:
                    found = line.cells[rule.column]
    if found is None and rule.position is not None:
        for section in reversed(candidates):
            if rule.column not in section.columns.values() or len(section.lines) <= rule.position:
                continue
            # labelled rows that match no alias are not guessed at
            if any(line.label for line in section.lines):
                continue
            return section.lines[rule.position].cells.get(rule.column)
    return found


def _split_icf_composite(sections: list[_Section]) -> list[_Section]:
    """
    Move ICF composite rows out of "Momento para Duráveis".

    2012–2020 workbooks print the composite block (Emprego Atual …
    Índice (Em Pontos)) without its own section header, so it lands inside
    the preceding "Momento para Duráveis" section.
    """
    momento = next((s for s in sections if s.label in ICF_MOMENTO_SECTION), None)
    if momento is None:
        return sections

    misplaced = [
        line for line in momento.lines
        if line.label not in ICF_MOMENTO_ANSWERS
        and (line.label in ICF_COMPOSITE_ROWS or line.label in ICF_CHANGE_TITLE)
    ]
    if not misplaced:
        return sections

    has_change = any(
        normalize_label(line.label) == "indice variacao mensal"
        for section in sections
        for line in section.lines
    )
    target_label = "ICF (Variação Mensal)" if has_change else "ICF (em pontos)"

    moved = {id(line) for line in misplaced}
    momento.lines = [line for line in momento.lines if id(line) not in moved]
    composite = next((s for s in sections if s.label == target_label), None)
    if composite is None:
        composite = _Section(label=target_label, columns=dict(momento.columns))
        sections.append(composite)

    existing = {normalize_label(line.label) for line in composite.lines}
    for line in misplaced:
        if line.label in ICF_CHANGE_TITLE:
            continue
        if normalize_label(line.label) not in existing:
            composite.lines.append(line)

    log.debug("icf_composite_split", moved=len(misplaced), section=target_label)
    return sections
