"""
tests/test_shared/test_config.py — Settings parsing and region validation.
"""

from __future__ import annotations

import pytest

from cnc_shared.config import Settings, parse_regions
from cnc_shared.constants import HISTORICAL_START, REGIONS, Indicator


class TestParseRegions:
    def test_normalizes_case_and_spacing(self):
        assert parse_regions(" br, es ,SP") == ["BR", "ES", "SP"]

    def test_drops_duplicates_keeping_order(self):
        assert parse_regions("ES,BR,ES") == ["ES", "BR"]

    @pytest.mark.parametrize("raw", [None, "", "  ", ","])
    def test_empty_falls_back_to_defaults(self, raw):
        assert parse_regions(raw) == ["BR", "ES"]

    def test_unknown_code_raises(self):
        with pytest.raises(ValueError, match="XX"):
            parse_regions("BR,XX")

    def test_known_codes(self):
        assert len(REGIONS) == 28
        assert "BR" in REGIONS and "DF" in REGIONS


class TestSettings:
    def test_per_indicator_lookups(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("REGIONS_PEIC", "BR,RJ")
        monkeypatch.setenv("PERIOD_ICF", "01/2020:>")
        cfg = Settings()
        assert cfg.regions_for(Indicator.PEIC) == ["BR", "RJ"]
        assert cfg.regions_for(Indicator.ICEC) == ["BR", "ES"]
        assert cfg.period_spec_for(Indicator.ICF) == "01/2020:>"
        assert cfg.site_url_for(Indicator.ICEC).endswith("pesquisa-icec/")

    def test_default_periods_start_at_historical_start(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("PERIOD_PEIC", raising=False)
        year, month = HISTORICAL_START
        assert Settings().period_spec_for(Indicator.PEIC) == f"{month:02d}/{year}:>"

    @pytest.mark.parametrize("raw", ["Truncate and Load", "FULL", "truncate"])
    def test_truncate_and_load_means_full(self, monkeypatch: pytest.MonkeyPatch, raw: str):
        monkeypatch.setenv("PROCESSING_METHOD", raw)
        assert Settings().processing_method == "full"

    def test_base_url_trailing_slash_stripped(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SPREADSHEET_BASE_URL", "https://example.test/upload/")
        assert Settings().spreadsheet_base_url == "https://example.test/upload"
