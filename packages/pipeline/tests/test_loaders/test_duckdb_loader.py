"""
tests/test_loaders/test_duckdb_loader.py — DuckDBGateway on an in-memory database.
"""

from __future__ import annotations

from unittest.mock import patch

import duckdb
import pytest

from cnc_pipeline.errors import PersistenceError
from cnc_pipeline.loaders.duckdb_loader import DuckDBGateway
from cnc_shared.constants import Indicator, Method
from cnc_shared.models.indicators import BreakdownRecord, IndicatorPeriodRecord, NaturalKey
from cnc_shared.time_utils import Period

KEY = NaturalKey(indicator=Indicator.ICEC, region="BR", month=3, year=2012)


def make_header(value: float = 104.1, method: Method = Method.SPREADSHEET) -> IndicatorPeriodRecord:
    return IndicatorPeriodRecord(
        indicator=Indicator.ICEC,
        region="BR",
        month=3,
        year=2012,
        measures={"icec": value, "durables": 99.0},
        method=method,
    )


def make_breakdowns(n: int, base: float = 10.0) -> list[BreakdownRecord]:
    return [
        BreakdownRecord(
            category="Condições Atuais",
            measure=f"linha {i}",
            values={"total": base + i, "durables": None},
            is_index=i == n - 1,
            sub_index="ICAEC",
        )
        for i in range(n)
    ]


# ---------------------------------------------------------------------------
# Upsert / replace
# ---------------------------------------------------------------------------

class TestSavePeriod:
    def test_round_trip(self, gateway: DuckDBGateway):
        record_id = gateway.save_period(make_header(), make_breakdowns(3))

        stored = gateway.get_period(KEY)
        assert stored is not None
        assert stored.id == record_id
        assert stored.measures == {"icec": 104.1, "durables": 99.0}
        assert stored.method is Method.SPREADSHEET
        assert stored.created_at is not None

        rows = gateway.list_breakdowns(record_id)
        assert [r.measure for r in rows] == ["linha 0", "linha 1", "linha 2"]
        assert rows[0].values == {"total": 10.0, "durables": None}
        assert rows[2].is_index and not rows[0].is_index
        assert rows[0].sub_index == "ICAEC"

    def test_rerun_updates_in_place(self, gateway: DuckDBGateway):
        first_id = gateway.save_period(make_header(100.0), make_breakdowns(5))
        second_id = gateway.save_period(make_header(104.1, Method.SCRAPE), make_breakdowns(2, 50.0))

        assert first_id == second_id
        stored = gateway.get_period(KEY)
        assert stored.measures["icec"] == 104.1
        assert stored.method is Method.SCRAPE
        rows = gateway.list_breakdowns(first_id)
        assert [r.values["total"] for r in rows] == [50.0, 51.0]
        assert gateway.count_breakdowns() == 2

    def test_identical_rerun_is_idempotent(self, gateway: DuckDBGateway):
        gateway.save_period(make_header(), make_breakdowns(3))
        before = gateway.get_period(KEY)
        gateway.save_period(make_header(), make_breakdowns(3))
        after = gateway.get_period(KEY)

        assert after.measures == before.measures
        assert after.created_at == before.created_at
        assert gateway.count_breakdowns() == 3
        assert gateway.stored_periods(Indicator.ICEC, "BR") == [Period(2012, 3)]

    def test_header_without_method_rejected(self, gateway: DuckDBGateway):
        header = make_header().model_copy(update={"method": None})
        with pytest.raises(ValueError):
            gateway.save_period(header, [])

    def test_stored_periods_sorted_and_scoped(self, gateway: DuckDBGateway):
        for month in (5, 3, 4):
            header = make_header().model_copy(update={"month": month})
            gateway.save_period(header, [])
        es = make_header().model_copy(update={"region": "ES", "month": 9})
        gateway.save_period(es, [])

        assert gateway.stored_periods(Indicator.ICEC, "BR") == [
            Period(2012, 3),
            Period(2012, 4),
            Period(2012, 5),
        ]
        assert gateway.stored_periods(Indicator.ICF, "BR") == []


# ---------------------------------------------------------------------------
# Atomicity
# ---------------------------------------------------------------------------

class TestAtomicity:
    def test_failure_mid_write_keeps_previous_state(self, gateway: DuckDBGateway):
        record_id = gateway.save_period(make_header(100.0), make_breakdowns(3))

        with patch.object(
            gateway,
            "replace_breakdowns",
            side_effect=PersistenceError("disk full"),
        ):
            with pytest.raises(PersistenceError):
                gateway.save_period(make_header(200.0), make_breakdowns(1))

        stored = gateway.get_period(KEY)
        assert stored.measures["icec"] == 100.0
        assert len(gateway.list_breakdowns(record_id)) == 3

    def test_failure_on_first_write_leaves_nothing(self, gateway: DuckDBGateway):
        with patch.object(
            gateway,
            "replace_breakdowns",
            side_effect=PersistenceError("disk full"),
        ):
            with pytest.raises(PersistenceError):
                gateway.save_period(make_header(), make_breakdowns(2))

        assert gateway.get_period(KEY) is None
        assert gateway.count_breakdowns() == 0
        assert gateway.count_orphan_breakdowns() == 0

    def test_duckdb_errors_are_wrapped(self, gateway: DuckDBGateway):
        with pytest.raises(PersistenceError):
            with gateway.transaction():
                gateway._conn.execute("INSERT INTO no_such_table VALUES (1)")

    def test_closed_connection_is_persistence_error(self):
        conn = duckdb.connect(":memory:")
        gw = DuckDBGateway(conn)
        conn.close()
        with pytest.raises(PersistenceError):
            gw.save_period(make_header(), [])


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

class TestDelete:
    def test_delete_cascades_to_breakdowns(self, gateway: DuckDBGateway):
        gateway.save_period(make_header(), make_breakdowns(4))

        assert gateway.delete_by_natural_key(KEY) is True
        assert gateway.get_period(KEY) is None
        assert gateway.count_breakdowns() == 0

    def test_delete_missing_key(self, gateway: DuckDBGateway):
        assert gateway.delete_by_natural_key(KEY) is False

    def test_primitives_share_one_atomic_scope(self, gateway: DuckDBGateway):
        gateway.save_period(make_header(100.0), make_breakdowns(2))
        es_key = KEY.model_copy(update={"region": "ES"})

        with pytest.raises(RuntimeError):
            with gateway.transaction():
                gateway.delete_by_natural_key(KEY)
                record_id = gateway.upsert_period(es_key, {"icec": 101.0}, Method.SCRAPE)
                gateway.replace_breakdowns(record_id, make_breakdowns(1))
                raise RuntimeError("interrupted")

        assert gateway.get_period(KEY).measures["icec"] == 100.0
        assert gateway.get_period(es_key) is None
        assert gateway.count_breakdowns() == 2


# ---------------------------------------------------------------------------
# Pipeline runs
# ---------------------------------------------------------------------------

class TestPipelineRuns:
    def test_start_and_finish(self, gateway: DuckDBGateway):
        run_id = gateway.start_pipeline_run(
            "cnc_acquisition", Indicator.PEIC, execution_mode="scheduled"
        )
        gateway.finish_pipeline_run(
            run_id, status="success", records_loaded=3, records_skipped=1, records_failed=0
        )
        (run,) = gateway.recent_runs()
        assert run["status"] == "success"
        assert run["records_loaded"] == 3
        assert run["indicator"] == "peic"
        assert run["completed_at"] is not None

    def test_fail(self, gateway: DuckDBGateway):
        run_id = gateway.start_pipeline_run(
            "cnc_acquisition", Indicator.ICF, execution_mode="forced"
        )
        gateway.fail_pipeline_run(run_id, "store unreachable")
        (run,) = gateway.recent_runs()
        assert run["status"] == "failure"
        assert run["error_message"] == "store unreachable"
