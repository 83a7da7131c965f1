"""
tests/test_transforms/test_normalize.py — RowNormalizer, numeric coercion and aliases.
"""

from __future__ import annotations

import polars as pl
import pytest

from cnc_pipeline.errors import NormalizationError
from cnc_pipeline.transforms.aliases import ICEC_LAYOUT, PEIC_LAYOUT, AliasTable, normalize_label
from cnc_pipeline.transforms.normalize import (
    RowNormalizer,
    coerce_number,
    coerce_optional,
    parse_scrape_period,
)
from cnc_shared.constants import Indicator, Method
from cnc_shared.time_utils import Period


@pytest.fixture
def normalizer() -> RowNormalizer:
    return RowNormalizer()


# ---------------------------------------------------------------------------
# Numeric coercion
# ---------------------------------------------------------------------------

class TestCoerceNumber:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("104,1", 104.1),
            ("104.1", 104.1),
            ("1.234,5", 1234.5),
            ("1,234.5", 1234.5),
            ("13.155.000", 13155000.0),
            ("1,234,567", 1234567.0),
            (" -2,3 ", -2.3),
            ("77,1%", 77.1),
            ("1\xa0234,5", 1234.5),
            (42, 42.0),
        ],
    )
    def test_locale_formats(self, raw, expected):
        assert coerce_number(raw) == pytest.approx(expected)

    def test_single_dot_group_is_decimal_by_default(self):
        assert coerce_number("12.345") == pytest.approx(12.345)

    def test_single_dot_group_as_thousands_for_site_tables(self):
        assert coerce_number("12.345", grouped_dot=True) == 12345.0

    @pytest.mark.parametrize("raw", ["abc", "", "n/d", "1,2,3x", True, float("nan")])
    def test_non_numeric_fails_instead_of_defaulting(self, raw):
        with pytest.raises(ValueError):
            coerce_number(raw)

    def test_optional_blanks_and_text_are_none(self):
        assert coerce_optional(None) is None
        assert coerce_optional("-") is None
        assert coerce_optional("n/d") is None
        assert coerce_optional("3,5") == 3.5


class TestParseScrapePeriod:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("JUL 25", Period(2025, 7)),
            ("jul/2025", Period(2025, 7)),
            ("AGO-25", Period(2025, 8)),
            ("FEV 12", Period(2012, 2)),
            ("Dec 2019", Period(2019, 12)),
        ],
    )
    def test_labels(self, raw: str, expected: Period):
        assert parse_scrape_period(raw) == expected

    @pytest.mark.parametrize("raw", [None, "Período", "XYZ 25", "07/2025"])
    def test_not_a_period(self, raw):
        assert parse_scrape_period(raw) is None


# ---------------------------------------------------------------------------
# Alias tables
# ---------------------------------------------------------------------------

class TestAliases:
    def test_normalize_label_ignores_case_diacritics_punctuation(self):
        assert normalize_label("Índice (em Pontos)") == normalize_label("INDICE - EM PONTOS")

    def test_prefix_match(self):
        table = AliasTable({"over": [("mais de 10sm*", "2012")]})
        assert table.match("Mais de 10 SM") is None
        assert table.match("mais de 10sm - %") == "over"
        assert table.match("mais de 10sm") == "over"

    def test_exact_match_wins(self):
        table = AliasTable({"a": [("total*", "x")], "b": [("total - %", "y")]})
        assert table.match("Total - %") == "b"
        assert table.match("Total geral") == "a"

    def test_every_era_spelling_maps_to_total(self):
        for spelling in ICEC_LAYOUT.columns.eras("total"):
            assert ICEC_LAYOUT.columns.match(spelling) == "total"

    def test_peic_section_prefix(self):
        rule = PEIC_LAYOUT.header_rules[0]
        assert rule.section is not None
        assert "PEIC (Percentual) - Famílias" in rule.section


# ---------------------------------------------------------------------------
# Spreadsheet payloads
# ---------------------------------------------------------------------------

class TestNormalizeSpreadsheet:
    def test_icec_header_from_last_points_row(self, normalizer, make_payload, icec_frame):
        header, _ = normalizer.normalize(make_payload(icec_frame))
        assert header.measures == {
            "icec": 104.1,
            "up_to_50_employees": 104.0,
            "over_50_employees": 106.9,
            "semi_durables": 103.2,
            "non_durables": 104.9,
            "durables": 104.5,
        }
        assert (header.region, header.month, header.year) == ("BR", 3, 2012)
        assert header.method is Method.SPREADSHEET

    def test_icec_breakdowns(self, normalizer, make_payload, icec_frame):
        _, breakdowns = normalizer.normalize(make_payload(icec_frame))
        assert len(breakdowns) == 4
        first = breakdowns[0]
        assert first.category == "Condições Atuais do Empresário do Comércio"
        assert first.measure == "Melhoraram muito"
        assert first.values["total"] == 10.2
        assert first.values["durables"] == 10.7
        assert first.sub_index == "ICAEC"
        assert not first.is_index
        assert breakdowns[2].is_index
        assert breakdowns[3].sub_index == "IIEC"
        assert [b.position for b in breakdowns] == [0, 1, 2, 3]

    def test_icec_missing_total_column_leaves_general_index_out(
        self, normalizer, make_payload, icec_frame_without_total
    ):
        header, breakdowns = normalizer.normalize(make_payload(icec_frame_without_total))
        assert "icec" not in header.measures
        assert header.measures["up_to_50_employees"] == 104.0
        assert breakdowns

    def test_icf(self, normalizer, make_payload, icf_frame):
        header, breakdowns = normalizer.normalize(
            make_payload(icf_frame, indicator=Indicator.ICF, period=Period(2012, 5))
        )
        assert header.measures["icf_points"] == 100.4
        assert header.measures["over_10_mw_points"] == 111.5
        assert header.measures["icf_monthly_change"] == 1.2
        assert header.measures["up_to_10_mw_monthly_change"] == 1.0
        assert len(breakdowns) == 4
        assert [b.is_index for b in breakdowns] == [False, True, True, False]

    def test_icf_composite_moved_out_of_momento_section(self, normalizer, make_payload, make_frame):
        header_cells = ["total - %", "até 10sm - %", "mais de 10sm - %"]
        rows = [
            ["Momento para Duráveis", *header_cells],
            ["Bom", "40,0", "38,0", "50,0"],
            ["Índice", "90,0", "88,0", "99,0"],
            ["Emprego Atual", "130,0", "128,0", "140,0"],
            ["Índice (Em Pontos)", "100,4", "98,3", "111,5"],
            ["Índice (Variação Mensal)", "1,2", "1,0", "2,1"],
        ]
        header, breakdowns = normalizer.normalize(
            make_payload(make_frame(rows), indicator=Indicator.ICF)
        )
        momento = [b.measure for b in breakdowns if b.category == "Momento para Duráveis"]
        composite = [b.measure for b in breakdowns if b.category == "ICF (Variação Mensal)"]
        assert momento == ["Bom", "Índice"]
        assert composite == ["Emprego Atual", "Índice (Em Pontos)", "Índice (Variação Mensal)"]
        assert header.measures["icf_points"] == 100.4

    def test_peic_by_row_alias(self, normalizer, make_payload, peic_frame):
        header, breakdowns = normalizer.normalize(
            make_payload(peic_frame, indicator=Indicator.PEIC)
        )
        assert header.measures == {
            "indebted_pct": 77.1,
            "arrears_pct": 28.5,
            "unable_to_pay_pct": 12.2,
            "indebted_abs": 13155000.0,
            "arrears_abs": 4860000.0,
            "unable_to_pay_abs": 2080000.0,
        }
        assert len(breakdowns) == 6
        assert not any(b.is_index for b in breakdowns)

    def test_peic_unlabelled_rows_read_by_position(self, normalizer, make_payload, make_frame):
        rows = [
            ["PEIC (Percentual) - Total", "total - %", "até 10sm - %"],
            [None, "70,0", "71,0"],
            [None, "25,0", "26,0"],
            [None, "10,0", "11,0"],
            ["PEIC (Síntese) - Total", "Total (absoluto)"],
            [None, "12.000.000"],
            [None, "4.000.000"],
            [None, "1.500.000"],
        ]
        header, breakdowns = normalizer.normalize(
            make_payload(make_frame(rows), indicator=Indicator.PEIC)
        )
        assert header.measures["indebted_pct"] == 70.0
        assert header.measures["unable_to_pay_pct"] == 10.0
        assert header.measures["arrears_abs"] == 4000000.0
        assert breakdowns == []

    def test_peic_unknown_row_labels_are_not_read_by_position(
        self, normalizer, make_payload, make_frame
    ):
        rows = [
            ["PEIC (Percentual) - Total", "total - %", "até 10sm - %"],
            ["Inadimplentes", "25,0", "26,0"],
            ["Endividadas no mês", "70,0", "71,0"],
            ["Sem pagar", "10,0", "11,0"],
            ["PEIC (Síntese) - Total", "Total (absoluto)"],
            ["Famílias endividadas", "12.000.000"],
            ["Inadimplentes", "4.000.000"],
        ]
        header, _ = normalizer.normalize(
            make_payload(make_frame(rows), indicator=Indicator.PEIC)
        )
        assert header.measures == {"indebted_abs": 12000000.0}

    def test_header_value_not_numeric_is_error(self, normalizer, make_payload, make_frame):
        rows = [
            ["Situação", "total - em %"],
            ["Índice (em Pontos)", "em revisão"],
        ]
        with pytest.raises(NormalizationError, match="icec"):
            normalizer.normalize(make_payload(make_frame(rows)))

    def test_no_recognizable_section(self, normalizer, make_payload, make_frame):
        rows = [["Relatório", "Coluna A", "Coluna B"], ["Linha", "1", "2"]]
        with pytest.raises(NormalizationError, match="section"):
            normalizer.normalize(make_payload(make_frame(rows)))

    def test_empty_payload(self, normalizer, make_payload):
        with pytest.raises(NormalizationError, match="no rows"):
            normalizer.normalize(make_payload(pl.DataFrame()))

    def test_header_only_table_has_zero_breakdowns(self, normalizer, make_payload, make_frame):
        rows = [
            ["Situação", "total - em %", "Empresas com até 50 empregados"],
            ["Índice (em Pontos)", "-", "-"],
        ]
        header, breakdowns = normalizer.normalize(make_payload(make_frame(rows)))
        assert breakdowns == []
        assert header.measures == {}


# ---------------------------------------------------------------------------
# Scrape payloads
# ---------------------------------------------------------------------------

class TestNormalizeScrape:
    def test_picks_requested_period_row(self, normalizer, make_payload, icec_site_frame):
        header, breakdowns = normalizer.normalize(
            make_payload(icec_site_frame, method=Method.SCRAPE)
        )
        assert header.measures["icec"] == 101.5
        assert header.measures["durables"] == 101.9
        assert header.method is Method.SCRAPE
        assert breakdowns == []

    def test_partial_header_names_unmatched_columns(self, normalizer, make_payload, make_frame):
        rows = [
            ["Período", "ICEC", "Variação (%)", "Até 50 empregados", "Mais de 50 empregados",
             "Semiduráveis", "Não duráveis", "Bens duráveis"],
            ["MAR 12", "101,5", "0,4", "101,2", "104,4", "102,0", "100,8", "101,9"],
        ]
        with pytest.raises(NormalizationError, match="no column for: durables"):
            normalizer.normalize(make_payload(make_frame(rows), method=Method.SCRAPE))

    def test_header_naming_no_measure_uses_site_column_order(
        self, normalizer, make_payload, make_frame
    ):
        rows = [
            ["Mês", "Índice geral"],
            ["MAR 12", "101,5", "101,2", "104,4", "102,0", "100,8", "101,9"],
        ]
        header, _ = normalizer.normalize(
            make_payload(make_frame(rows), method=Method.SCRAPE)
        )
        assert header.measures["icec"] == 101.5
        assert header.measures["over_50_employees"] == 104.4

    def test_reordered_header_maps_by_name(self, normalizer, make_payload, make_frame):
        rows = [
            ["Período", "Duráveis", "ICEC", "Até 50 empregados", "Mais de 50 empregados",
             "Semiduráveis", "Não duráveis"],
            ["MAR 12", "101,9", "101,5", "101,2", "104,4", "102,0", "100,8"],
        ]
        header, _ = normalizer.normalize(
            make_payload(make_frame(rows), method=Method.SCRAPE)
        )
        assert header.measures["icec"] == 101.5
        assert header.measures["durables"] == 101.9

    def test_site_thousands_separator(self, normalizer, make_payload, make_frame):
        rows = [["MAR 12", "77,1", "28,5", "12,2", "13.155", "4.860", "2.080"]]
        header, _ = normalizer.normalize(
            make_payload(make_frame(rows), indicator=Indicator.PEIC, method=Method.SCRAPE)
        )
        assert header.measures["indebted_abs"] == 13155.0

    def test_missing_period_row(self, normalizer, make_payload, icec_site_frame):
        with pytest.raises(NormalizationError, match="MAR 13"):
            normalizer.normalize(
                make_payload(icec_site_frame, method=Method.SCRAPE, period=Period(2013, 3))
            )
