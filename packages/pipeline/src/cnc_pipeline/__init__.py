"""
cnc_pipeline — acquisition pipeline for the CNC monthly indicators
(ICEC business confidence, ICF consumer confidence, PEIC household
indebtedness).

Architecture:
  sources/     — spreadsheet download (primary) and survey-site scrape (fallback)
  transforms/  — alias-based row normalization and record validation
  loaders/     — idempotent DuckDB upserts with per-tuple transactions
  pipelines/   — the orchestrator: fallback state machine and batch reports
  utils/       — structlog configuration, retry decorator, per-indicator lock

Quick start:
    from cnc_pipeline.pipelines.acquisition import run
    import asyncio
    report = asyncio.run(run("icec", regions=["BR"], period_spec="03/2012:12/2012"))

CLI:
    cnc-pipeline run icec --region BR --region ES --period 01/2024:>
    cnc-pipeline retry icf --tuple ES:07/2025
    cnc-pipeline status

Shared code from cnc_shared:
    from cnc_shared.config import settings
    from cnc_shared.db import get_duckdb_connection
    from cnc_shared.models.indicators import IndicatorPeriodRecord, BreakdownRecord
    from cnc_shared.time_utils import Period, parse_period_config
    from cnc_shared.constants import Indicator, REGIONS
"""

__version__ = "0.1.0"
