"""
db.py — DuckDB connection singleton.

Usage:
    from cnc_shared.db import get_duckdb_connection

    duck = get_duckdb_connection()
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

import duckdb
import structlog

from cnc_shared.config import settings

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# DuckDB: single connection per process
# ---------------------------------------------------------------------------
_duckdb_lock = threading.Lock()
_duckdb_conn: Optional[duckdb.DuckDBPyConnection] = None


def get_duckdb_connection() -> duckdb.DuckDBPyConnection:
    """
    Return a singleton DuckDB connection to the indicators database.

    The file path is read from settings.duckdb_path (":memory:" is accepted).
    Creates parent directories if they don't exist.

    Returns:
        duckdb.DuckDBPyConnection
    """
    global _duckdb_conn

    with _duckdb_lock:
        if _duckdb_conn is None:
            if settings.duckdb_path == ":memory:":
                _duckdb_conn = duckdb.connect(":memory:")
            else:
                db_path = Path(settings.duckdb_path)
                db_path.parent.mkdir(parents=True, exist_ok=True)
                _duckdb_conn = duckdb.connect(str(db_path))

            logger.info("duckdb_connected", path=settings.duckdb_path)

        return _duckdb_conn

