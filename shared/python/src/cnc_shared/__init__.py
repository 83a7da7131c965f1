"""
cnc_shared — shared configuration, constants, models and period utilities
for the CNC indicators pipeline.

Usage:
    from cnc_shared.config import settings
    from cnc_shared.db import get_duckdb_connection
    from cnc_shared.models.indicators import IndicatorPeriodRecord, BreakdownRecord
    from cnc_shared.time_utils import Period, generate, parse_period_config
    from cnc_shared.constants import Indicator, REGIONS
"""

__version__ = "0.1.0"
