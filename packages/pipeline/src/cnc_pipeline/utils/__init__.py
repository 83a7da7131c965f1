"""
cnc_pipeline.utils — logging, retry and locking helpers.
"""
