"""
cnc_pipeline.loaders — persistence gateway (DuckDB).
"""
