"""
config.py — pydantic-settings Settings class.

All environment variables for the CNC indicators pipeline are declared here.

Usage:
    from cnc_shared.config import settings
    print(settings.spreadsheet_base_url)
    print(settings.regions_for(Indicator.ICEC))
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cnc_shared.constants import DEFAULT_REGIONS, HISTORICAL_START, REGIONS, Indicator

# every indicator runs from the historical start up to the end-policy bound
_DEFAULT_PERIODS = f"{HISTORICAL_START[1]:02d}/{HISTORICAL_START[0]}:>"


def _find_dotenv() -> Path | None:
    """Walk up from CWD to find the nearest .env file."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        candidate = parent / ".env"
        if candidate.is_file():
            return candidate
    return None


def parse_regions(raw: str | None) -> list[str]:
    """
    Parse a comma-separated region list ("BR, es,SP") into upper-case codes.

    Empty input yields the default regions. Duplicates are dropped while
    keeping the first occurrence's order.

    Raises:
        ValueError: if any code is not BR or one of the 27 UF codes.
    """
    if raw is None or not raw.strip():
        return list(DEFAULT_REGIONS)

    codes: list[str] = []
    for part in raw.split(","):
        code = part.strip().upper()
        if not code:
            continue
        if code not in REGIONS:
            raise ValueError(f"Unknown region code: {part.strip()!r}")
        if code not in codes:
            codes.append(code)
    return codes or list(DEFAULT_REGIONS)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=_find_dotenv() or ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # DuckDB
    # -------------------------------------------------------------------------
    duckdb_path: str = Field(default="./data/cnc_indicators.duckdb")

    # -------------------------------------------------------------------------
    # Data sources
    # -------------------------------------------------------------------------
    spreadsheet_base_url: str = Field(
        default="https://backend.pesquisascnc.com.br/admin/4/upload"
    )
    site_url_icec: str = Field(default="https://pesquisascnc.com.br/pesquisa-icec/")
    site_url_icf: str = Field(default="https://pesquisascnc.com.br/pesquisa-icf/")
    site_url_peic: str = Field(default="https://pesquisascnc.com.br/pesquisa-peic/")

    credentials_user: str = Field(default="")
    credentials_password: str = Field(default="")

    http_timeout: float = Field(default=30.0)
    http_max_attempts: int = Field(default=2, ge=1)
    browser_timeout: float = Field(default=10.0)
    browser_headless: bool = Field(default=True)
    # Upper bound for a single adapter fetch, end to end
    fetch_timeout: float = Field(default=120.0)

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------
    regions_icec: str = Field(default=",".join(DEFAULT_REGIONS))
    regions_icf: str = Field(default=",".join(DEFAULT_REGIONS))
    regions_peic: str = Field(default=",".join(DEFAULT_REGIONS))

    period_icec: str = Field(default=_DEFAULT_PERIODS)
    period_icf: str = Field(default=_DEFAULT_PERIODS)
    period_peic: str = Field(default=_DEFAULT_PERIODS)

    processing_method: Literal["incremental", "full"] = Field(default="incremental")

    lock_dir: str = Field(default="./data/locks")

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    log_format: Literal["json", "console"] = Field(default="console")

    # -------------------------------------------------------------------------
    # Derived / computed
    # -------------------------------------------------------------------------
    def regions_for(self, indicator: Indicator) -> list[str]:
        return parse_regions(getattr(self, f"regions_{indicator.value}"))

    def period_spec_for(self, indicator: Indicator) -> str:
        return getattr(self, f"period_{indicator.value}")

    def site_url_for(self, indicator: Indicator) -> str:
        return getattr(self, f"site_url_{indicator.value}")

    @field_validator("processing_method", mode="before")
    @classmethod
    def normalize_processing_method(cls, v: str) -> str:
        if not isinstance(v, str):
            return v
        key = v.strip().lower()
        if key in ("truncate and load", "truncate", "full"):
            return "full"
        return key

    @field_validator("spreadsheet_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/") if isinstance(v, str) else v


# ---------------------------------------------------------------------------
# Module-level singleton: import this everywhere
# ---------------------------------------------------------------------------
settings = Settings()
