"""
transforms/aliases.py — Versioned header-alias tables for the CNC layouts.

CNC reworded its table headers several times between 2010 and today. Rather
than hard-coding column positions, the normalizer looks every header and
row label up in these tables. Each spelling is tagged with the layout era
that introduced it; supporting a newly found historical format means adding
one spelling here.

Spellings are compared after normalize_label(): case, diacritics,
punctuation and spacing are ignored, so "Índice (em Pontos)",
"indice(em pontos)" and "ÍNDICE - EM PONTOS" are the same key. A spelling
ending in "*" matches any label starting with it.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Final

from cnc_shared.constants import HEADER_MEASURES, Indicator

_NON_WORD = re.compile(r"[^0-9a-z%]+")


def normalize_label(value: object) -> str:
    """Casefold, strip diacritics and collapse punctuation/whitespace."""
    if value is None:
        return ""
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return _NON_WORD.sub(" ", text.casefold()).strip()


class AliasTable:
    """
    Canonical name → accepted spellings, each tagged with its layout era.

    Exact matches win over prefix ("*") matches; among prefix matches the
    longest spelling wins.
    """

    def __init__(self, entries: Mapping[str, Iterable[tuple[str, str]]]) -> None:
        self._exact: dict[str, str] = {}
        self._prefix: list[tuple[str, str]] = []
        self._eras: dict[str, dict[str, str]] = {}
        for canonical, spellings in entries.items():
            eras = self._eras.setdefault(canonical, {})
            for spelling, era in spellings:
                eras[spelling] = era
                if spelling.endswith("*"):
                    self._prefix.append((normalize_label(spelling[:-1]), canonical))
                else:
                    self._exact[normalize_label(spelling)] = canonical
        self._prefix.sort(key=lambda item: len(item[0]), reverse=True)

    def match(self, value: object) -> str | None:
        key = normalize_label(value)
        if not key:
            return None
        if key in self._exact:
            return self._exact[key]
        for prefix, canonical in self._prefix:
            if key == prefix or key.startswith(prefix + " "):
                return canonical
        return None

    def __contains__(self, value: object) -> bool:
        return self.match(value) is not None

    def eras(self, canonical: str) -> dict[str, str]:
        """Spelling → era for *canonical* (for diagnostics)."""
        return dict(self._eras.get(canonical, {}))


def _labels(*spellings: tuple[str, str]) -> AliasTable:
    """Single-entry table used for plain label sets."""
    return AliasTable({"label": spellings})


@dataclass(frozen=True)
class HeaderRule:
    """
    Where one header measure lives in a spreadsheet layout.

    The value is the cell in canonical *column* of the last row whose label
    matches *rows*, searched within sections matching *section* (any section
    when None). When the section's rows carry no labels at all, *position*
    selects the n-th row of the last matching section instead.
    """

    measure: str
    column: str
    rows: AliasTable | None = None
    section: AliasTable | None = None
    position: int | None = None


@dataclass(frozen=True)
class IndicatorLayout:
    """Everything the normalizer knows about one indicator's tables."""

    indicator: Indicator
    # spreadsheet section-header cells → canonical breakdown column
    columns: AliasTable
    # columns published without a header, right after the last named one
    positional_tail: tuple[str, ...]
    # row labels that mark an "index" line rather than a raw percentage
    index_labels: AliasTable
    header_rules: tuple[HeaderRule, ...]
    # scrape table header cells → header measure
    scrape_columns: AliasTable
    sub_index_tokens: tuple[str, ...] = ()
    measures: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        if not self.measures:
            object.__setattr__(self, "measures", HEADER_MEASURES[self.indicator])


# ---------------------------------------------------------------------------
# ICEC: business confidence
# ---------------------------------------------------------------------------
_ICEC_POINTS_ROW = _labels(("Índice (em Pontos)", "2012"))

ICEC_LAYOUT = IndicatorLayout(
    indicator=Indicator.ICEC,
    columns=AliasTable(
        {
            "total": [
                ("total - em %", "2012"),
                ("Total", "2012 monthly variation"),
                ("total - %", "2021"),
            ],
            "up_to_50_employees": [
                ("Empresas com até 50 empregados", "2012"),
                ("até 50 empregados", "2021"),
            ],
            "over_50_employees": [
                ("Empresas com mais de 50 empregados", "2012"),
                ("mais de 50 empregados", "2021"),
            ],
            "semi_durables": [("Semiduráveis", "2021"), ("Semi-duráveis", "2021")],
            "non_durables": [("Não duráveis", "2021"), ("Não-duráveis", "2021")],
            "durables": [("Duráveis", "2021")],
        }
    ),
    positional_tail=("semi_durables", "non_durables", "durables"),
    index_labels=_labels(("Índice", "2012"), ("Índice (em Pontos)", "2012")),
    header_rules=tuple(
        HeaderRule(measure=measure, column=column, rows=_ICEC_POINTS_ROW)
        for measure, column in (
            ("icec", "total"),
            ("up_to_50_employees", "up_to_50_employees"),
            ("over_50_employees", "over_50_employees"),
            ("semi_durables", "semi_durables"),
            ("non_durables", "non_durables"),
            ("durables", "durables"),
        )
    ),
    scrape_columns=AliasTable(
        {
            "icec": [("ICEC", "site"), ("Índice", "site")],
            "up_to_50_employees": [
                ("Até 50 empregados", "site"),
                ("Empresas com até 50 empregados", "site"),
            ],
            "over_50_employees": [
                ("Mais de 50 empregados", "site"),
                ("Empresas com mais de 50 empregados", "site"),
            ],
            "semi_durables": [("Semiduráveis", "site")],
            "non_durables": [("Não duráveis", "site")],
            "durables": [("Duráveis", "site")],
        }
    ),
    sub_index_tokens=("ICAEC", "IEEC", "IIEC", "ICEC"),
)

# ---------------------------------------------------------------------------
# ICF: consumer confidence
# ---------------------------------------------------------------------------
_ICF_POINTS_ROW = _labels(("Índice (Em Pontos)", "2012"))
_ICF_CHANGE_ROW = _labels(("Índice (Variação Mensal)", "2012"))

ICF_LAYOUT = IndicatorLayout(
    indicator=Indicator.ICF,
    columns=AliasTable(
        {
            "total": [
                ("total - %", "2012"),
                ("total - % (em pontos)", "2012 points"),
                ("TOTAL", "2021"),
            ],
            "up_to_10_mw": [
                ("até 10sm - %", "2012"),
                ("até 10sm - % (em pontos)", "2012 points"),
                ("até 10 sm", "2016"),
            ],
            "over_10_mw": [
                ("mais de 10sm*", "2012"),
                ("mais de 10 sm*", "2016"),
            ],
        }
    ),
    positional_tail=(),
    index_labels=_labels(("Índice", "2012"), ("Índice (Em Pontos)", "2012")),
    header_rules=(
        HeaderRule("icf_points", "total", rows=_ICF_POINTS_ROW),
        HeaderRule("up_to_10_mw_points", "up_to_10_mw", rows=_ICF_POINTS_ROW),
        HeaderRule("over_10_mw_points", "over_10_mw", rows=_ICF_POINTS_ROW),
        HeaderRule("icf_monthly_change", "total", rows=_ICF_CHANGE_ROW),
        HeaderRule("up_to_10_mw_monthly_change", "up_to_10_mw", rows=_ICF_CHANGE_ROW),
        HeaderRule("over_10_mw_monthly_change", "over_10_mw", rows=_ICF_CHANGE_ROW),
    ),
    scrape_columns=AliasTable(
        {
            "icf_points": [("ICF (em pontos)", "site"), ("ICF - pontos", "site")],
            "up_to_10_mw_points": [("Até 10 SM (em pontos)", "site")],
            "over_10_mw_points": [("Mais de 10 SM (em pontos)", "site")],
            "icf_monthly_change": [("ICF (variação mensal)", "site"), ("ICF - %", "site")],
            "up_to_10_mw_monthly_change": [("Até 10 SM (variação mensal)", "site")],
            "over_10_mw_monthly_change": [("Mais de 10 SM (variação mensal)", "site")],
        }
    ),
)

# Rows of the ICF composite that 2012–2020 workbooks print inside the
# "Momento para Duráveis" section
ICF_MOMENTO_SECTION = _labels(("Momento para Duráveis", "2012"))
ICF_MOMENTO_ANSWERS = _labels(
    ("Bom", "2012"),
    ("Mau", "2012"),
    ("Não Sabe", "2012"),
    ("Não Respondeu", "2012"),
    ("Índice", "2012"),
)
ICF_COMPOSITE_ROWS = _labels(
    ("Emprego Atual", "2012"),
    ("Perspectiva Profissional", "2012"),
    ("Renda Atual", "2012"),
    ("Acesso ao crédito", "2012"),
    ("Compra a Prazo (Acesso ao crédito)", "2012"),
    ("Nível de Consumo Atual", "2012"),
    ("Perspectiva de Consumo", "2012"),
    ("Momento para Duráveis", "2012"),
    ("ICF (em pontos)", "2012"),
    ("Índice (Em Pontos)", "2012"),
    ("Índice (Variação Mensal)", "2012"),
)
# Title line of the composite block; carries no values of its own
ICF_CHANGE_TITLE = _labels(("ICF (Variação Mensal)", "2012"))

# ---------------------------------------------------------------------------
# PEIC: household indebtedness
# ---------------------------------------------------------------------------
_PEIC_PERCENT_SECTION = _labels(("PEIC (Percentual)*", "2012"))
_PEIC_SYNTHESIS_SECTION = _labels(("PEIC (Síntese)*", "2012"))
_PEIC_INDEBTED = _labels(
    ("Famílias endividadas", "2012"),
    ("Endividados", "2016"),
    ("Total de endividados", "2021"),
)
_PEIC_ARREARS = _labels(
    ("Famílias com contas em atraso", "2012"),
    ("Contas em atraso", "2016"),
    ("Com contas em atraso", "2021"),
)
_PEIC_UNABLE = _labels(
    ("Não terão condições de pagar", "2012"),
    ("Não terão condições de pagar suas contas", "2016"),
    ("Sem condições de pagar", "2021"),
)

PEIC_LAYOUT = IndicatorLayout(
    indicator=Indicator.PEIC,
    columns=AliasTable(
        {
            "total": [("total - %", "2021"), ("total", "2016")],
            "up_to_10_mw": [("até 10sm - %", "2021"), ("até 10 sm", "2016")],
            "over_10_mw": [("mais de 10sm*", "2021"), ("mais de 10 sm*", "2016")],
            "absolute": [
                ("Numero Absoluto", "2021"),
                ("Total (absoluto)", "2016"),
            ],
        }
    ),
    positional_tail=(),
    index_labels=_labels(),
    header_rules=(
        HeaderRule("indebted_pct", "total", _PEIC_INDEBTED, _PEIC_PERCENT_SECTION, 0),
        HeaderRule("arrears_pct", "total", _PEIC_ARREARS, _PEIC_PERCENT_SECTION, 1),
        HeaderRule("unable_to_pay_pct", "total", _PEIC_UNABLE, _PEIC_PERCENT_SECTION, 2),
        HeaderRule("indebted_abs", "absolute", _PEIC_INDEBTED, _PEIC_SYNTHESIS_SECTION, 0),
        HeaderRule("arrears_abs", "absolute", _PEIC_ARREARS, _PEIC_SYNTHESIS_SECTION, 1),
        HeaderRule("unable_to_pay_abs", "absolute", _PEIC_UNABLE, _PEIC_SYNTHESIS_SECTION, 2),
    ),
    scrape_columns=AliasTable(
        {
            "indebted_pct": [("Endividados (%)", "site"), ("Famílias endividadas (%)", "site")],
            "arrears_pct": [("Contas em atraso (%)", "site")],
            "unable_to_pay_pct": [("Não terão condições de pagar (%)", "site")],
            "indebted_abs": [("Endividados (absoluto)", "site")],
            "arrears_abs": [("Contas em atraso (absoluto)", "site")],
            "unable_to_pay_abs": [("Não terão condições de pagar (absoluto)", "site")],
        }
    ),
)

LAYOUTS: Final[dict[Indicator, IndicatorLayout]] = {
    Indicator.ICEC: ICEC_LAYOUT,
    Indicator.ICF: ICF_LAYOUT,
    Indicator.PEIC: PEIC_LAYOUT,
}
