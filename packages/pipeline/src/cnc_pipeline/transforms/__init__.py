"""
cnc_pipeline.transforms — raw rows to validated records.

  aliases    — versioned header-alias tables per indicator
  normalize  — RowNormalizer: raw payload → header + breakdown records
  validate   — mandatory-field checks
"""
