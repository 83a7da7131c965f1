"""
constants.py — shared constants used across the pipeline.

Indicator codes, region codes, acquisition methods and per-indicator
publication facts are defined here so every module agrees on them.
"""

from __future__ import annotations

from enum import Enum
from typing import Final, Literal


class Indicator(str, Enum):
    """The three CNC survey series."""

    ICEC = "icec"   # Índice de Confiança do Empresário do Comércio
    ICF = "icf"     # Intenção de Consumo das Famílias
    PEIC = "peic"   # Pesquisa de Endividamento e Inadimplência do Consumidor

    @property
    def folder(self) -> str:
        """Folder name used by the spreadsheet download URL."""
        return self.value.upper()


class Method(str, Enum):
    """How a stored record was acquired."""

    SPREADSHEET = "spreadsheet"
    SCRAPE = "scrape"


class EndPolicy(str, Enum):
    THROUGH_CURRENT_MONTH = "through_current_month"
    THROUGH_PREVIOUS_MONTH = "through_previous_month"


# ---------------------------------------------------------------------------
# Regions: national aggregate + the 27 federative units
# ---------------------------------------------------------------------------
REGIONS: Final[dict[str, str]] = {
    "BR": "Brasil",
    "AC": "Acre",
    "AL": "Alagoas",
    "AP": "Amapá",
    "AM": "Amazonas",
    "BA": "Bahia",
    "CE": "Ceará",
    "DF": "Distrito Federal",
    "ES": "Espírito Santo",
    "GO": "Goiás",
    "MA": "Maranhão",
    "MT": "Mato Grosso",
    "MS": "Mato Grosso do Sul",
    "MG": "Minas Gerais",
    "PA": "Pará",
    "PB": "Paraíba",
    "PR": "Paraná",
    "PE": "Pernambuco",
    "PI": "Piauí",
    "RJ": "Rio de Janeiro",
    "RN": "Rio Grande do Norte",
    "RS": "Rio Grande do Sul",
    "RO": "Rondônia",
    "RR": "Roraima",
    "SC": "Santa Catarina",
    "SP": "São Paulo",
    "SE": "Sergipe",
    "TO": "Tocantins",
}

DEFAULT_REGIONS: Final[tuple[str, ...]] = ("BR", "ES")

# ---------------------------------------------------------------------------
# Historical range
# ---------------------------------------------------------------------------
# (year, month) of the earliest period any run will ask for
HISTORICAL_START: Final[tuple[int, int]] = (2010, 1)

# (year, month) of each indicator's first published table; earlier periods
# are reported as not available without touching the network
FIRST_PUBLISHED: Final[dict[Indicator, tuple[int, int]]] = {
    Indicator.ICEC: (2012, 3),
    Indicator.ICF: (2012, 4),
    Indicator.PEIC: (2012, 3),
}

END_POLICIES: Final[dict[Indicator, EndPolicy]] = {
    Indicator.ICEC: EndPolicy.THROUGH_CURRENT_MONTH,
    Indicator.ICF: EndPolicy.THROUGH_CURRENT_MONTH,
    # indebtedness is published for the last complete month only
    Indicator.PEIC: EndPolicy.THROUGH_PREVIOUS_MONTH,
}

# ---------------------------------------------------------------------------
# Canonical header measures per indicator (order = scrape column order)
# ---------------------------------------------------------------------------
HEADER_MEASURES: Final[dict[Indicator, tuple[str, ...]]] = {
    Indicator.ICEC: (
        "icec",
        "up_to_50_employees",
        "over_50_employees",
        "semi_durables",
        "non_durables",
        "durables",
    ),
    Indicator.ICF: (
        "icf_points",
        "up_to_10_mw_points",
        "over_10_mw_points",
        "icf_monthly_change",
        "up_to_10_mw_monthly_change",
        "over_10_mw_monthly_change",
    ),
    Indicator.PEIC: (
        "indebted_pct",
        "arrears_pct",
        "unable_to_pay_pct",
        "indebted_abs",
        "arrears_abs",
        "unable_to_pay_abs",
    ),
}

GENERAL_INDEX: Final[dict[Indicator, str]] = {
    Indicator.ICEC: "icec",
    Indicator.ICF: "icf_points",
    Indicator.PEIC: "indebted_pct",
}

# ICF monthly-change measures and the point measures they derive from
ICF_CHANGE_SOURCES: Final[dict[str, str]] = {
    "icf_monthly_change": "icf_points",
    "up_to_10_mw_monthly_change": "up_to_10_mw_points",
    "over_10_mw_monthly_change": "over_10_mw_points",
}

# English abbreviations used by the survey site's period column ("JUL 25")
MONTH_ABBREVIATIONS: Final[tuple[str, ...]] = (
    "JAN", "FEB", "MAR", "APR", "MAY", "JUN",
    "JUL", "AUG", "SEP", "OCT", "NOV", "DEC",
)

ProcessingMethod = Literal["incremental", "full"]
ExecutionMode = Literal["scheduled", "forced"]
OutcomeStatus = Literal["success", "skipped", "failed"]
