"""
errors.py — Exception hierarchy for the acquisition pipeline.

Per-tuple errors (acquisition, normalization, validation) are caught by the
orchestrator and turned into outcomes; PersistenceError and
BatchAlreadyRunning reach the caller.
"""

from __future__ import annotations

from collections.abc import Sequence


class PipelineError(Exception):
    """Base exception for all pipeline errors."""


class ConfigurationError(PipelineError):
    """
    Raised when configuration is missing or invalid.

    Examples: an unknown region code, a malformed period spec, or scrape
    credentials that were never set.
    """


# ---------------------------------------------------------------------------
# Acquisition: raised by source adapters
# ---------------------------------------------------------------------------


class AcquisitionError(PipelineError):
    """Base for failures reported by a source adapter's fetch()."""


class NotAvailable(AcquisitionError):
    """The period legitimately has no published data. Terminal: no fallback."""


class TransientNetworkError(AcquisitionError):
    """Timeout, connection failure or server error. Recoverable via fallback."""


class ShapeUnrecognized(AcquisitionError):
    """The source answered, but not with a table we can read."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class NormalizationError(PipelineError):
    """Raw rows could not be mapped to the canonical record."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ValidationError(PipelineError):
    """A normalized record is missing mandatory fields."""

    def __init__(self, missing_fields: Sequence[str]) -> None:
        self.missing_fields = tuple(missing_fields)
        super().__init__("missing or invalid fields: " + ", ".join(self.missing_fields))


# ---------------------------------------------------------------------------
# Batch-level: never converted into outcomes
# ---------------------------------------------------------------------------


class PersistenceError(PipelineError):
    """The store rejected or could not complete a write. Fatal for the batch."""


class BatchAlreadyRunning(PipelineError):
    """Another invocation holds the indicator's lock."""

    def __init__(self, indicator: str) -> None:
        super().__init__(f"A batch for '{indicator}' is already running")
        self.indicator = indicator
