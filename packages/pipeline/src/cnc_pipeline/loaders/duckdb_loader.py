"""
loaders/duckdb_loader.py — Idempotent persistence of indicator periods in DuckDB.

All acquisition results funnel through this module. The gateway:
  - Upserts one indicator_periods row per natural key
    (indicator, region, month, year), keeping its id across re-runs
  - Replaces the period's breakdown rows wholesale (delete-then-insert)
  - Runs both steps in one transaction, so a failure mid-write leaves the
    previous state untouched
  - Records pipeline_runs rows for observability

Breakdowns reference their parent by period_id; the cascade on delete is
done here, inside the same transaction as the parent delete.

Usage:
    from cnc_pipeline.loaders.duckdb_loader import DuckDBGateway

    gateway = DuckDBGateway()
    record_id = gateway.save_period(header, breakdowns)

    # Or compose the primitives in one atomic scope:
    with gateway.transaction():
        record_id = gateway.upsert_period(header.key, header.measures, header.method)
        gateway.replace_breakdowns(record_id, breakdowns)
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

import duckdb
import structlog

from cnc_pipeline.errors import PersistenceError
from cnc_shared.constants import Indicator, Method
from cnc_shared.db import get_duckdb_connection
from cnc_shared.models.indicators import BreakdownRecord, IndicatorPeriodRecord, NaturalKey
from cnc_shared.time_utils import Period

log = structlog.get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS indicator_periods (
        id          VARCHAR PRIMARY KEY,
        indicator   VARCHAR NOT NULL,
        region      VARCHAR NOT NULL,
        month       INTEGER NOT NULL,
        year        INTEGER NOT NULL,
        measures    VARCHAR NOT NULL,
        method      VARCHAR NOT NULL,
        created_at  TIMESTAMP NOT NULL,
        updated_at  TIMESTAMP NOT NULL,
        UNIQUE (indicator, region, month, year)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS indicator_breakdowns (
        period_id    VARCHAR NOT NULL,
        position     INTEGER NOT NULL,
        category     VARCHAR NOT NULL,
        measure      VARCHAR NOT NULL,
        cell_values  VARCHAR NOT NULL,
        is_index     BOOLEAN NOT NULL,
        sub_index    VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pipeline_runs (
        id               VARCHAR PRIMARY KEY,
        pipeline_name    VARCHAR NOT NULL,
        indicator        VARCHAR NOT NULL,
        execution_mode   VARCHAR NOT NULL,
        status           VARCHAR NOT NULL,
        started_at       TIMESTAMP NOT NULL,
        completed_at     TIMESTAMP,
        records_loaded   INTEGER,
        records_skipped  INTEGER,
        records_failed   INTEGER,
        error_message    VARCHAR,
        metadata         VARCHAR
    )
    """,
)

_KEY_WHERE = "indicator = ? AND region = ? AND month = ? AND year = ?"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _key_params(key: NaturalKey) -> list[Any]:
    return [key.indicator.value, key.region, key.month, key.year]


class DuckDBGateway:
    """
    Handles all reads and writes of indicator data.

    Every public method converts duckdb.Error into PersistenceError, which
    the orchestrator treats as fatal for the batch.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection | None = None) -> None:
        self._conn = conn if conn is not None else get_duckdb_connection()
        self._in_transaction = False
        self.ensure_schema()

    # ------------------------------------------------------------------
    # Schema / transactions
    # ------------------------------------------------------------------

    def ensure_schema(self) -> None:
        with self._errors("ensure_schema"):
            for statement in _SCHEMA:
                self._conn.execute(statement)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Atomic scope for the write primitives.

        Commits on normal exit; rolls back on any exception and re-raises it
        (duckdb errors as PersistenceError). Nested use joins the outer scope.
        """
        if self._in_transaction:
            yield
            return

        with self._errors("begin"):
            self._conn.begin()
        self._in_transaction = True
        try:
            yield
        except BaseException:
            self._in_transaction = False
            with self._errors("rollback"):
                self._conn.rollback()
            raise
        self._in_transaction = False
        with self._errors("commit"):
            self._conn.commit()

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except duckdb.Error as exc:
            log.error("persistence_failed", operation=operation, error=str(exc))
            raise PersistenceError(f"{operation} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Write primitives
    # ------------------------------------------------------------------

    def upsert_period(
        self,
        key: NaturalKey,
        measures: dict[str, float | None],
        method: Method,
    ) -> str:
        """
        Insert or update the period row for *key* and return its id.

        An existing row keeps its id and created_at; measures, method and
        updated_at are replaced.
        """
        now = _utcnow()
        measures_json = json.dumps(measures, sort_keys=True)
        with self._errors("upsert_period"):
            row = self._conn.execute(
                f"SELECT id FROM indicator_periods WHERE {_KEY_WHERE}", _key_params(key)
            ).fetchone()
            if row is not None:
                record_id = row[0]
                self._conn.execute(
                    "UPDATE indicator_periods SET measures = ?, method = ?, updated_at = ? "
                    "WHERE id = ?",
                    [measures_json, method.value, now, record_id],
                )
            else:
                record_id = str(uuid.uuid4())
                self._conn.execute(
                    "INSERT INTO indicator_periods "
                    "(id, indicator, region, month, year, measures, method, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [record_id, *_key_params(key), measures_json, method.value, now, now],
                )
        log.debug("period_upserted", key=str(key), record_id=record_id, updated=row is not None)
        return record_id

    def replace_breakdowns(self, record_id: str, breakdowns: Sequence[BreakdownRecord]) -> int:
        """Delete every breakdown of *record_id*, then insert *breakdowns*."""
        with self._errors("replace_breakdowns"):
            self._conn.execute(
                "DELETE FROM indicator_breakdowns WHERE period_id = ?", [record_id]
            )
            rows = [
                list(b.model_copy(update={"position": i}).to_insert_dict(record_id).values())
                for i, b in enumerate(breakdowns)
            ]
            if rows:
                self._conn.executemany(
                    "INSERT INTO indicator_breakdowns "
                    "(period_id, position, category, measure, cell_values, is_index, sub_index) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )
        return len(rows)

    def delete_by_natural_key(self, key: NaturalKey) -> bool:
        """Delete the period for *key* and its breakdowns. Returns whether it existed."""
        with self.transaction(), self._errors("delete_by_natural_key"):
            row = self._conn.execute(
                f"SELECT id FROM indicator_periods WHERE {_KEY_WHERE}", _key_params(key)
            ).fetchone()
            if row is None:
                return False
            self._conn.execute("DELETE FROM indicator_breakdowns WHERE period_id = ?", [row[0]])
            self._conn.execute("DELETE FROM indicator_periods WHERE id = ?", [row[0]])
        log.info("period_deleted", key=str(key))
        return True

    def save_period(
        self,
        header: IndicatorPeriodRecord,
        breakdowns: Sequence[BreakdownRecord],
    ) -> str:
        """Upsert the header and replace its breakdowns atomically."""
        if header.method is None:
            raise ValueError("header.method must be set before saving")
        with self.transaction():
            record_id = self.upsert_period(header.key, header.measures, header.method)
            written = self.replace_breakdowns(record_id, breakdowns)
        log.info(
            "period_saved",
            key=str(header.key),
            record_id=record_id,
            method=header.method.value,
            breakdowns=written,
        )
        return record_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _fetch_dicts(self, sql: str, params: list[Any] | None = None) -> list[dict[str, Any]]:
        with self._errors("query"):
            cursor = self._conn.execute(sql, params or [])
            columns = [d[0] for d in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def get_period(self, key: NaturalKey) -> IndicatorPeriodRecord | None:
        rows = self._fetch_dicts(
            f"SELECT * FROM indicator_periods WHERE {_KEY_WHERE}", _key_params(key)
        )
        return IndicatorPeriodRecord.from_db_row(rows[0]) if rows else None

    def list_breakdowns(self, record_id: str) -> list[BreakdownRecord]:
        rows = self._fetch_dicts(
            "SELECT * FROM indicator_breakdowns WHERE period_id = ? ORDER BY position",
            [record_id],
        )
        return [BreakdownRecord.from_db_row(r) for r in rows]

    def stored_periods(self, indicator: Indicator, region: str) -> list[Period]:
        rows = self._fetch_dicts(
            "SELECT year, month FROM indicator_periods WHERE indicator = ? AND region = ? "
            "ORDER BY year, month",
            [indicator.value, region],
        )
        return [Period(r["year"], r["month"]) for r in rows]

    def count_breakdowns(self) -> int:
        return self._fetch_dicts("SELECT count(*) AS n FROM indicator_breakdowns")[0]["n"]

    def count_orphan_breakdowns(self) -> int:
        """Breakdown rows whose parent no longer exists (should always be 0)."""
        return self._fetch_dicts(
            "SELECT count(*) AS n FROM indicator_breakdowns b "
            "LEFT JOIN indicator_periods p ON p.id = b.period_id WHERE p.id IS NULL"
        )[0]["n"]

    # ------------------------------------------------------------------
    # Pipeline run tracking
    # ------------------------------------------------------------------

    def start_pipeline_run(
        self,
        pipeline_name: str,
        indicator: Indicator,
        *,
        execution_mode: str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Insert a 'running' pipeline_runs row and return its id."""
        run_id = str(uuid.uuid4())
        with self._errors("start_pipeline_run"):
            self._conn.execute(
                "INSERT INTO pipeline_runs "
                "(id, pipeline_name, indicator, execution_mode, status, started_at, metadata) "
                "VALUES (?, ?, ?, ?, 'running', ?, ?)",
                [
                    run_id,
                    pipeline_name,
                    indicator.value,
                    execution_mode,
                    _utcnow(),
                    json.dumps(metadata or {}),
                ],
            )
        log.info("pipeline_run_started", run_id=run_id, pipeline=pipeline_name)
        return run_id

    def finish_pipeline_run(
        self,
        run_id: str,
        *,
        status: str,
        records_loaded: int,
        records_skipped: int,
        records_failed: int,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Update a pipeline_runs row with the batch outcome."""
        with self._errors("finish_pipeline_run"):
            self._conn.execute(
                "UPDATE pipeline_runs SET status = ?, completed_at = ?, records_loaded = ?, "
                "records_skipped = ?, records_failed = ?, metadata = ? WHERE id = ?",
                [
                    status,
                    _utcnow(),
                    records_loaded,
                    records_skipped,
                    records_failed,
                    json.dumps(metadata or {}, default=str),
                    run_id,
                ],
            )
        log.info(
            "pipeline_run_finished",
            run_id=run_id,
            status=status,
            records_loaded=records_loaded,
        )

    def fail_pipeline_run(self, run_id: str, error_message: str) -> None:
        """Mark a pipeline run as failed with an error message."""
        with self._errors("fail_pipeline_run"):
            self._conn.execute(
                "UPDATE pipeline_runs SET status = 'failure', completed_at = ?, "
                "error_message = ? WHERE id = ?",
                [_utcnow(), error_message[:2000], run_id],
            )
        log.error("pipeline_run_failed", run_id=run_id, error=error_message[:200])

    def recent_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        return self._fetch_dicts(
            "SELECT * FROM pipeline_runs ORDER BY started_at DESC LIMIT ?", [limit]
        )
