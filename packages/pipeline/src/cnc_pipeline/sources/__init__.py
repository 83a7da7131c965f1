"""
cnc_pipeline.sources — acquisition adapters.

Both adapters share the BaseSource.fetch() contract:
  SpreadsheetSource — monthly .xls downloads (primary)
  ScrapeSource      — authenticated survey site, rendered table (fallback)
"""

from cnc_pipeline.sources.base import BaseSource, RawPayload
from cnc_pipeline.sources.scrape import ScrapeSource
from cnc_pipeline.sources.spreadsheet import SpreadsheetSource

__all__ = [
    "BaseSource",
    "RawPayload",
    "SpreadsheetSource",
    "ScrapeSource",
]
